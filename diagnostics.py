"""
Diagnostics Module - Residual statistics for virtual elevation fits.

Every function takes a residual series plus an optional [start, end) window
and returns a plain float. Empty windows give 0.
"""

from dataclasses import dataclass, asdict
from typing import Optional

import numpy as np


NRMSE_RANGE_FLOOR = 1e-6
VARIANCE_EPS = 1e-12


def _window(values, start: int = 0, end: Optional[int] = None) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    if end is None:
        end = len(values)
    start = max(0, start)
    end = min(len(values), end)
    if end <= start:
        return np.zeros(0)
    return values[start:end]


def rmse(residual, start: int = 0, end: Optional[int] = None) -> float:
    """Root mean square of the residual over [start, end)."""
    r = _window(residual, start, end)
    if len(r) == 0:
        return 0.0
    return float(np.sqrt(np.mean(r ** 2)))


def mae(residual, start: int = 0, end: Optional[int] = None) -> float:
    """Mean absolute residual."""
    r = _window(residual, start, end)
    if len(r) == 0:
        return 0.0
    return float(np.mean(np.abs(r)))


def bias(residual, start: int = 0, end: Optional[int] = None) -> float:
    """Mean signed residual."""
    r = _window(residual, start, end)
    if len(r) == 0:
        return 0.0
    return float(np.mean(r))


def drift(residual, start: int = 0, end: Optional[int] = None) -> float:
    """Residual at the last sample minus residual at the first."""
    r = _window(residual, start, end)
    if len(r) < 2:
        return 0.0
    return float(r[-1] - r[0])


def r_squared(residual, elevation, start: int = 0, end: Optional[int] = None) -> float:
    """
    Coefficient of determination against the window's own elevation mean.

    Always finite: a window of exactly-zero residuals scores 1, and a flat
    measured elevation with nonzero residuals scores 0.

    Args:
        residual: Virtual minus measured elevation
        elevation: Measured (reference) elevation
        start: First index of the window
        end: One past the last index (None = end of series)

    Returns:
        R² value
    """
    r = _window(residual, start, end)
    e = _window(elevation, start, end)
    if len(r) == 0 or len(r) != len(e):
        return 0.0

    ss_res = float(np.sum(r ** 2))
    if ss_res == 0.0:
        return 1.0
    ss_tot = float(np.sum((e - np.mean(e)) ** 2))
    if ss_tot == 0.0:
        return 0.0
    return 1.0 - ss_res / ss_tot


def normalized_rmse(residual, elevation, start: int = 0, end: Optional[int] = None) -> float:
    """RMSE divided by the elevation range of the window (range floored at 1e-6)."""
    e = _window(elevation, start, end)
    if len(e) == 0:
        return 0.0
    elevation_range = max(float(np.max(e) - np.min(e)), NRMSE_RANGE_FLOOR)
    return rmse(residual, start, end) / elevation_range


def trend_slope_per_km(residual, distance=None, start: int = 0, end: Optional[int] = None) -> float:
    """
    Least-squares slope of the residual against cumulative distance, in m/km.

    Without a distance series the sample index stands in for meters, so the
    slope is reported per 1000 samples.
    """
    r = _window(residual, start, end)
    if len(r) < 2:
        return 0.0

    if distance is None:
        x = np.arange(len(r), dtype=float)
    else:
        x = _window(distance, start, end)
        if len(x) != len(r):
            return 0.0

    x_centered = x - np.mean(x)
    denom = float(np.sum(x_centered ** 2))
    if denom <= VARIANCE_EPS:
        return 0.0
    slope_per_m = float(np.sum(x_centered * (r - np.mean(r)))) / denom
    return slope_per_m * 1000.0


def lag1_autocorrelation(residual, start: int = 0, end: Optional[int] = None) -> float:
    """Lag-1 autocorrelation of the residual (0 when the variance is ~0)."""
    r = _window(residual, start, end)
    if len(r) < 2:
        return 0.0
    centered = r - np.mean(r)
    variance = float(np.sum(centered ** 2))
    if variance <= VARIANCE_EPS:
        return 0.0
    return float(np.sum(centered[1:] * centered[:-1])) / variance


@dataclass
class ResidualDiagnostics:
    """Residual quality summary for one fitted window."""
    rmse: float = 0.0
    mae: float = 0.0
    bias: float = 0.0
    drift: float = 0.0
    r2: float = 0.0
    normalized_rmse: float = 0.0
    trend_slope_m_per_km: float = 0.0
    lag1_autocorrelation: float = 0.0
    n_points: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def compute_residual_diagnostics(
    residual,
    elevation,
    start: int = 0,
    end: Optional[int] = None,
    distance=None
) -> ResidualDiagnostics:
    """
    Compute every residual statistic for a window.

    Args:
        residual: Full-length residual trace
        elevation: Full-length measured elevation
        start: First index of the window
        end: One past the last index (None = end of series)
        distance: Optional cumulative distance in meters

    Returns:
        ResidualDiagnostics (all zeros for a window under two samples)
    """
    n = len(_window(residual, start, end))
    if n < 2:
        return ResidualDiagnostics(n_points=n)

    return ResidualDiagnostics(
        rmse=rmse(residual, start, end),
        mae=mae(residual, start, end),
        bias=bias(residual, start, end),
        drift=drift(residual, start, end),
        r2=r_squared(residual, elevation, start, end),
        normalized_rmse=normalized_rmse(residual, elevation, start, end),
        trend_slope_m_per_km=trend_slope_per_km(residual, distance, start, end),
        lag1_autocorrelation=lag1_autocorrelation(residual, start, end),
        n_points=n
    )
