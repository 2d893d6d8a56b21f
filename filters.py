"""
Filters Module - 9-point velocity smoothing, zero-phase low-pass display filter.
"""

import numpy as np
from scipy.signal import butter, filtfilt


# Fixed smoothing kernel (9-point quadratic/cubic Savitzky-Golay)
SAVGOL9_COEFFS = np.array([-21, 14, 39, 54, 59, 54, 39, 14, -21], dtype=float)
SAVGOL9_NORM = 231.0
SAVGOL9_HALF = 4


def savgol9(values: np.ndarray) -> np.ndarray:
    """
    Smooth a series with the fixed 9-point Savitzky-Golay kernel.

    The first and last 4 samples are passed through unchanged.

    Args:
        values: Input series

    Returns:
        Smoothed series (same length)
    """
    values = np.asarray(values, dtype=float)
    result = values.copy()
    n = len(values)
    if n <= 2 * SAVGOL9_HALF:
        return result

    # Kernel is symmetric, so correlation == convolution
    smoothed = np.convolve(values, SAVGOL9_COEFFS / SAVGOL9_NORM, mode='valid')
    result[SAVGOL9_HALF:n - SAVGOL9_HALF] = smoothed
    return result


def centered_derivative(values: np.ndarray, t: np.ndarray) -> np.ndarray:
    """
    Centered finite difference of a series over [i-1, i+1].

    Args:
        values: Series to differentiate
        t: Sample times in seconds (strictly increasing)

    Returns:
        Derivative per second, zero at both ends
    """
    values = np.asarray(values, dtype=float)
    t = np.asarray(t, dtype=float)
    deriv = np.zeros(len(values))
    if len(values) < 3:
        return deriv

    dt = t[2:] - t[:-2]
    dv = values[2:] - values[:-2]
    with np.errstate(divide='ignore', invalid='ignore'):
        inner = np.where(dt > 0, dv / dt, 0.0)
    deriv[1:-1] = inner
    return deriv


def intensity_to_cutoff(intensity: float) -> float:
    """
    Map filter intensity (1-10) to a cutoff ratio of the sample rate.

    Higher intensity means more smoothing (lower cutoff).
    """
    cutoff = 0.3 - (intensity - 1) * 0.03
    return min(0.4, max(0.01, cutoff))


def low_pass_filter(data: np.ndarray, intensity: float = 5) -> np.ndarray:
    """
    Zero-phase 2nd-order Butterworth low-pass filter.

    Used for display-grade smoothing of elevation and virtual elevation
    curves; it is never applied to data feeding the solver.

    Args:
        data: Input series
        intensity: Filter intensity 1-10 (higher = more smoothing)

    Returns:
        Filtered series (same length)
    """
    data = np.asarray(data, dtype=float)
    if len(data) < 5:
        return data.copy()

    cutoff = intensity_to_cutoff(intensity)
    # scipy normalises to Nyquist (half the sample rate)
    b, a = butter(2, 2.0 * cutoff, btype='low')

    padlen = min(3 * max(len(a), len(b)), len(data) - 1)
    return filtfilt(b, a, data, padlen=padlen)
