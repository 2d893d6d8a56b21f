"""
Physics Module - Force model, virtual elevation simulation, bow/net-elevation metrics.
"""

import math
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

from activity_io import ActivityData
from segmentation import Segment
from weather import altitude_adjusted_density, project_wind, DENSITY_SCALE_HEIGHT_M
from diagnostics import rmse as residual_rmse, r_squared


# Physical constants
GRAVITY = 9.81  # m/s²

BASELINE_MEASURED = 'measured'   # start at measured elevation (Chung/Climb/Sweep)
BASELINE_FLAT = 'flat'           # start at 0, compare against flat ground (Shen)


@dataclass
class TrialParameters:
    """Physical parameters for one virtual elevation trial."""
    cda: float = 0.30                  # Drag area (m²)
    crr: float = 0.005                 # Rolling resistance coefficient
    mass_kg: float = 80.0              # Total mass (rider + bike + gear)
    efficiency: float = 0.97           # Drivetrain efficiency (0-1]
    air_density: float = 1.225         # kg/m³
    wind_speed_ms: float = 0.0         # Wind speed at rider height
    wind_direction_deg: float = 0.0    # Direction wind is coming FROM
    sample_offset: int = 0             # Power lag in samples

    def validate(self) -> None:
        """
        Check physical plausibility of the non-estimated parameters.

        Raises:
            ValueError: On a non-physical value
        """
        if not self.mass_kg > 0:
            raise ValueError(f"mass_kg must be > 0, got {self.mass_kg}")
        if not 0 < self.efficiency <= 1:
            raise ValueError(f"efficiency must be in (0, 1], got {self.efficiency}")
        if not self.air_density > 0:
            raise ValueError(f"air_density must be > 0, got {self.air_density}")
        if not (math.isfinite(self.wind_speed_ms) and math.isfinite(self.wind_direction_deg)):
            raise ValueError("wind speed and direction must be finite")

    def with_coefficients(self, cda: float, crr: float) -> 'TrialParameters':
        return replace(self, cda=float(cda), crr=float(crr))


@dataclass
class SimulationConfig:
    """Call-site settings for the forward model."""
    velocity_floor_ms: float = 0.1          # Guard for traction force at near-zero speed
    altitude_density_correction: bool = False  # Decay air density with measured elevation
    density_scale_height_m: float = DENSITY_SCALE_HEIGHT_M


# Range-preview mode: density decays with GPS elevation
PREVIEW_CONFIG = SimulationConfig(altitude_density_correction=True)


@dataclass
class VirtualElevationResult:
    """Virtual elevation trace and its fit against measured elevation."""
    virtual_elevation: np.ndarray   # full-length trace, flat-extended outside the segment
    residual: np.ndarray            # full-length residual trace
    start_idx: int
    end_idx: int
    rmse: float
    r2: float
    net_elevation_change: float
    bow: float
    empty_range: bool = False
    reason: str = ""

    @property
    def segment_trace(self) -> np.ndarray:
        return self.virtual_elevation[self.start_idx:self.end_idx]

    @property
    def segment_residual(self) -> np.ndarray:
        return self.residual[self.start_idx:self.end_idx]


def compute_aero_drag(air_speed, air_density, cda):
    """
    Signed aerodynamic drag force.

    Positive opposes motion; a tailwind stronger than ground speed
    gives a negative (assisting) force.

    Args:
        air_speed: Apparent air speed in m/s (scalar or array)
        air_density: Air density in kg/m³ (scalar or array)
        cda: Drag area in m²

    Returns:
        Force in Newtons
    """
    return 0.5 * air_density * cda * air_speed * np.abs(air_speed)


def compute_rolling_resistance(mass_kg: float, crr: float) -> float:
    """Rolling resistance force on level ground (N)."""
    return mass_kg * GRAVITY * crr


def compute_traction_force(power_w, efficiency: float, speed_ms, velocity_floor_ms: float = 0.1):
    """
    Propulsive force at the wheel.

    Args:
        power_w: Pedal power in W
        efficiency: Drivetrain efficiency
        speed_ms: Ground speed in m/s
        velocity_floor_ms: Minimum speed used in the division

    Returns:
        Force in Newtons
    """
    return power_w * efficiency / np.maximum(velocity_floor_ms, speed_ms)


@dataclass
class ElevationBasis:
    """
    Virtual elevation over a segment, decomposed as linear in (CdA, Crr).

    trace(cda, crr) = baseline + drive - crr * rolling - cda * aero

    Every array has one entry per segment sample, taken after that
    sample's step has been applied.
    """
    start_idx: int
    end_idx: int
    baseline: float
    drive: np.ndarray     # cumulative (traction - inertia) / (m g) * ds
    rolling: np.ndarray   # cumulative ds
    aero: np.ndarray      # cumulative drag-per-unit-CdA / (m g) * ds
    reference: np.ndarray  # elevation the trace is compared against

    @property
    def n_points(self) -> int:
        return self.end_idx - self.start_idx

    def trace(self, cda: float, crr: float) -> np.ndarray:
        return self.baseline + self.drive - crr * self.rolling - cda * self.aero

    def residual(self, cda: float, crr: float) -> np.ndarray:
        return self.trace(cda, crr) - self.reference

    def traces(self, cda_values: np.ndarray, crr: float) -> np.ndarray:
        """Traces for many CdA values at one Crr, shape (len(cda_values), n)."""
        cda_values = np.asarray(cda_values, dtype=float)
        base = self.baseline + self.drive - crr * self.rolling
        return base[np.newaxis, :] - cda_values[:, np.newaxis] * self.aero[np.newaxis, :]


def build_elevation_basis(
    activity: ActivityData,
    segment: Segment,
    params: TrialParameters,
    config: Optional[SimulationConfig] = None,
    baseline: str = BASELINE_MEASURED
) -> ElevationBasis:
    """
    Precompute the force integrals for a segment.

    Step i (start <= i < end) applies the forces sampled at i over the
    distance ds[i], so the first entry already holds one step. Power is
    read with the configured sample lag, clamped into the series.

    Args:
        activity: Sample series
        segment: Non-degenerate analysis range
        params: Trial parameters (cda/crr are ignored here)
        config: Simulation settings
        baseline: BASELINE_MEASURED or BASELINE_FLAT

    Returns:
        ElevationBasis
    """
    if config is None:
        config = SimulationConfig()

    start, end = segment.start_idx, segment.end_idx
    n_total = activity.n_points
    mass_g = params.mass_kg * GRAVITY

    idx = np.arange(start, end)
    power_idx = np.clip(idx - int(round(params.sample_offset)), 0, n_total - 1)

    speed = np.maximum(config.velocity_floor_ms, activity.velocity[idx])
    air_speed = speed + project_wind(params.wind_speed_ms, params.wind_direction_deg,
                                     activity.bearing[idx])
    if config.altitude_density_correction:
        rho = altitude_adjusted_density(params.air_density, activity.elevation[idx],
                                        config.density_scale_height_m)
    else:
        rho = params.air_density

    traction = compute_traction_force(activity.power[power_idx], params.efficiency,
                                      speed, config.velocity_floor_ms)
    inertia = params.mass_kg * activity.acceleration[idx]
    drag_per_cda = compute_aero_drag(air_speed, rho, 1.0)

    step = activity.ds[start:end]

    measured = activity.elevation[start:end]
    if baseline == BASELINE_FLAT:
        base_value = 0.0
        reference = np.zeros(end - start)
    elif baseline == BASELINE_MEASURED:
        base_value = float(measured[0])
        reference = measured
    else:
        raise ValueError(f"Unknown baseline mode: {baseline}")

    return ElevationBasis(
        start_idx=start,
        end_idx=end,
        baseline=base_value,
        drive=np.cumsum((traction - inertia) / mass_g * step),
        rolling=np.cumsum(step),
        aero=np.cumsum(drag_per_cda / mass_g * step),
        reference=reference
    )


def calculate_bow(trace: np.ndarray, signed: bool = False) -> float:
    """
    Peak deviation of a trace from the straight line joining its endpoints.

    On a flat-ground acceleration run a correct (CdA, Crr) gives a
    straight, level trace; a bow means the split between the two is off.

    Args:
        trace: Virtual elevation over one segment
        signed: Return the deviation with its sign (positive = bows up)

    Returns:
        Bow in meters (0 for fewer than 3 points)
    """
    trace = np.asarray(trace, dtype=float)
    n = len(trace)
    if n < 3:
        return 0.0

    chord = np.linspace(trace[0], trace[-1], n)
    deviation = trace - chord
    peak = int(np.argmax(np.abs(deviation)))
    if signed:
        return float(deviation[peak])
    return float(abs(deviation[peak]))


def net_elevation_change(trace: np.ndarray) -> float:
    """End minus start of a segment trace (0 for fewer than 2 points)."""
    if len(trace) < 2:
        return 0.0
    return float(trace[-1] - trace[0])


def empty_result(activity: ActivityData, segment: Segment, reason: str) -> VirtualElevationResult:
    """Explicit marker for a range that cannot be simulated."""
    return VirtualElevationResult(
        virtual_elevation=np.zeros(0),
        residual=np.zeros(0),
        start_idx=segment.start_idx,
        end_idx=segment.end_idx,
        rmse=0.0,
        r2=0.0,
        net_elevation_change=0.0,
        bow=0.0,
        empty_range=True,
        reason=reason
    )


def check_segment(activity: ActivityData, segment: Segment) -> Optional[str]:
    """
    Reason a segment cannot be simulated, or None when it is usable.
    """
    if activity.n_points == 0:
        return "empty series"
    if segment.is_degenerate:
        return "range too narrow"
    if segment.start_idx < 0 or segment.end_idx > activity.n_points:
        return "range outside series"
    if not np.all(np.isfinite(activity.ds[segment.start_idx:segment.end_idx])):
        return "invalid distance step"
    return None


def simulate_virtual_elevation(
    activity: ActivityData,
    segment: Segment,
    params: TrialParameters,
    config: Optional[SimulationConfig] = None,
    baseline: str = BASELINE_MEASURED
) -> VirtualElevationResult:
    """
    Integrate net force into a virtual elevation trace.

    The trace and residual cover the whole series so a display can show
    context around the analysis window; outside the segment they hold the
    boundary values. RMSE and R² use the segment only.

    Args:
        activity: Sample series
        segment: Analysis range [start_idx, end_idx)
        params: Trial parameters
        config: Simulation settings
        baseline: BASELINE_MEASURED (start at GPS elevation) or
            BASELINE_FLAT (start at 0, residual is the trace itself)

    Returns:
        VirtualElevationResult (empty_range=True for a degenerate segment)
    """
    reason = check_segment(activity, segment)
    if reason is not None:
        return empty_result(activity, segment, reason)

    basis = build_elevation_basis(activity, segment, params, config, baseline)
    seg_trace = basis.trace(params.cda, params.crr)
    seg_residual = seg_trace - basis.reference

    start, end = segment.start_idx, segment.end_idx
    n = activity.n_points

    virtual = np.empty(n)
    virtual[:start] = seg_trace[0]
    virtual[start:end] = seg_trace
    virtual[end:] = seg_trace[-1]

    residual = np.empty(n)
    residual[:start] = seg_residual[0]
    residual[start:end] = seg_residual
    residual[end:] = seg_residual[-1]

    return VirtualElevationResult(
        virtual_elevation=virtual,
        residual=residual,
        start_idx=start,
        end_idx=end,
        rmse=residual_rmse(seg_residual),
        r2=r_squared(seg_residual, basis.reference),
        net_elevation_change=net_elevation_change(seg_trace),
        bow=calculate_bow(seg_trace)
    )
