"""
Methods Module - Chung, Shen and Climb solvers, per-window solve, method dispatch.
"""

from dataclasses import dataclass, replace, field
from typing import Callable, List, Optional, Tuple, Union

import numpy as np

from activity_io import ActivityData
from segmentation import (
    Segment, compute_segment_stats, split_into_windows
)
from physics import (
    TrialParameters, SimulationConfig, ElevationBasis, build_elevation_basis,
    check_segment, calculate_bow, net_elevation_change,
    BASELINE_MEASURED, BASELINE_FLAT
)
from optimizer import (
    ParameterBounds, EstimatorConfig, FitResult, RunSummary,
    resolve_bounds, detect_railing, minimize_bounded, sanitize_residuals
)
from diagnostics import rmse as residual_rmse, r_squared
from sweep import SweepGridSpec, SweepGrid, run_sweep


METHOD_CHUNG = 'chung'
METHOD_SHEN = 'shen'
METHOD_CLIMB = 'climb'
METHOD_SEGMENTED = 'segmented'

# Per-window solve
DEFAULT_WINDOW_SIZE = 180
MIN_GRADE_VARIANCE = 0.5
MIN_FILTERED_WINDOWS = 3
IQR_FACTOR = 1.5

# Steady-acceleration check (Shen suitability)
STEADY_MIN_POINTS = 20
STEADY_MIN_R2 = 0.5
STEADY_MIN_SPEED_CHANGE_MS = 3.0
STEADY_FULL_SCORE_CHANGE_MS = 5.0


@dataclass
class RunInput:
    """One ride and the range of it used by a two-run method."""
    activity: ActivityData
    segment: Segment
    sample_offset: Optional[int] = None  # overrides TrialParameters.sample_offset

    def params_for(self, params: TrialParameters) -> TrialParameters:
        if self.sample_offset is None:
            return params
        return replace(params, sample_offset=self.sample_offset)


def chung_quality(rmse: float, grade_variance: float, speed_variance: float) -> float:
    """
    Confidence weight for a single-segment fit.

    Low residual error, varied terrain and varied speed all make the two
    coefficients easier to separate.
    """
    return (1 / (1 + rmse)) * (1 + np.sqrt(grade_variance)) * (1 + 0.5 * np.sqrt(speed_variance))


def _setup(
    params: Optional[TrialParameters],
    bounds: Optional[ParameterBounds],
    config: Optional[EstimatorConfig]
) -> Tuple[TrialParameters, ParameterBounds, EstimatorConfig, Callable[[str], None]]:
    if params is None:
        params = TrialParameters()
    params.validate()
    if config is None:
        config = EstimatorConfig()
    log = config.logger()
    bounds = resolve_bounds(bounds, strict=config.strict_bounds, log=log)
    return params, bounds, config, log


def _empty_fit(
    method: str,
    params: TrialParameters,
    bounds: ParameterBounds,
    reason: str
) -> FitResult:
    cda, crr = bounds.clamp(params.cda, params.crr)
    return FitResult(
        cda=cda,
        crr=crr,
        rmse=0.0,
        r2=0.0,
        method=method,
        bounds=bounds,
        empty_range=True,
        reason=reason
    )


def _avg_speed_kmh(activity: ActivityData, segment: Segment) -> float:
    return float(np.mean(activity.velocity[segment.start_idx:segment.end_idx])) * 3.6


def _run_summary(run: RunInput, basis: ElevationBasis, cda: float, crr: float) -> RunSummary:
    trace = basis.trace(cda, crr)
    residual = trace - basis.reference
    return RunSummary(
        start_idx=run.segment.start_idx,
        end_idx=run.segment.end_idx,
        rmse=residual_rmse(residual),
        r2=r_squared(residual, basis.reference),
        bow=calculate_bow(trace),
        net_elevation_change=net_elevation_change(trace),
        avg_speed_kmh=_avg_speed_kmh(run.activity, run.segment)
    )


def solve_chung(
    activity: ActivityData,
    segment: Segment,
    params: Optional[TrialParameters] = None,
    bounds: Optional[ParameterBounds] = None,
    config: Optional[EstimatorConfig] = None,
    sim_config: Optional[SimulationConfig] = None
) -> FitResult:
    """
    Fit (CdA, Crr) on one segment by minimising RMSE against GPS elevation.

    Args:
        activity: Ride data
        segment: Analysis range
        params: Trial parameters; cda/crr are the initial guess
        bounds: Search box (None = defaults)
        config: Estimator configuration
        sim_config: Simulation settings

    Returns:
        FitResult with bow, net elevation, segment variances and a quality score
    """
    params, bounds, config, log = _setup(params, bounds, config)

    reason = check_segment(activity, segment)
    if reason is not None:
        log(f"Chung: {reason} [{segment.start_idx}, {segment.end_idx})")
        return _empty_fit(METHOD_CHUNG, params, bounds, reason)

    log(f"Chung: solving over {segment.length} samples")
    basis = build_elevation_basis(activity, segment, params, sim_config, BASELINE_MEASURED)

    def loss(cda: float, crr: float) -> float:
        r = sanitize_residuals(basis.residual(cda, crr), config.penalty)
        return float(np.sqrt(np.mean(r ** 2)))

    outcome = minimize_bounded(loss, (params.cda, params.crr), bounds, config)

    trace = basis.trace(outcome.cda, outcome.crr)
    residual = trace - basis.reference
    stats = compute_segment_stats(activity, segment)
    fit_rmse = residual_rmse(residual)

    return FitResult(
        cda=outcome.cda,
        crr=outcome.crr,
        rmse=fit_rmse,
        r2=r_squared(residual, basis.reference),
        method=METHOD_CHUNG,
        loss=outcome.loss,
        railing_details=detect_railing(outcome.cda, outcome.crr, bounds,
                                       config.railing_tolerance_frac, config.railing_abs_tol),
        evaluations=outcome.evaluations,
        n_starts=outcome.n_starts,
        bow=calculate_bow(trace),
        net_elevation_change=net_elevation_change(trace),
        grade_variance=stats.grade_variance,
        speed_variance=stats.speed_variance,
        avg_speed_kmh=stats.avg_speed_kmh,
        quality=float(chung_quality(fit_rmse, stats.grade_variance, stats.speed_variance)),
        bounds=bounds
    )


def _check_runs(runs: List[Tuple[str, RunInput]]) -> Optional[str]:
    for label, run in runs:
        reason = check_segment(run.activity, run.segment)
        if reason is not None:
            return f"{label}: {reason}"
    return None


def shen_residuals(
    slow: ElevationBasis,
    fast: ElevationBasis,
    cda: float,
    crr: float,
    bow_weight: float = 5.0,
    net_weight: float = 3.0
) -> np.ndarray:
    """
    Weighted flat-ground deviations [bow_slow, bow_fast, net_slow, net_fast].

    Both traces start at 0; correct coefficients keep each one level and
    straight.
    """
    trace_slow = slow.trace(cda, crr)
    trace_fast = fast.trace(cda, crr)
    return np.array([
        calculate_bow(trace_slow, signed=True) * bow_weight,
        calculate_bow(trace_fast, signed=True) * bow_weight,
        net_elevation_change(trace_slow) * net_weight,
        net_elevation_change(trace_fast) * net_weight,
    ])


def solve_shen(
    slow: RunInput,
    fast: RunInput,
    params: Optional[TrialParameters] = None,
    bounds: Optional[ParameterBounds] = None,
    config: Optional[EstimatorConfig] = None,
    sim_config: Optional[SimulationConfig] = None
) -> FitResult:
    """
    Jointly fit (CdA, Crr) on two flat-ground acceleration runs.

    Rolling resistance does not depend on speed while drag grows with its
    square, so runs at different speeds only stay level and straight
    together when both coefficients are right.

    Args:
        slow: Slow acceleration run
        fast: Fast acceleration run
        params: Trial parameters; cda/crr are the initial guess
        bounds: Search box (None = defaults)
        config: Estimator configuration
        sim_config: Simulation settings

    Returns:
        FitResult with one RunSummary per run (slow first)
    """
    params, bounds, config, log = _setup(params, bounds, config)

    reason = _check_runs([("slow run", slow), ("fast run", fast)])
    if reason is not None:
        log(f"Shen: {reason}")
        return _empty_fit(METHOD_SHEN, params, bounds, reason)

    log(f"Shen: slow run {slow.segment.length} samples, fast run {fast.segment.length} samples")
    basis_slow = build_elevation_basis(slow.activity, slow.segment, slow.params_for(params),
                                       sim_config, BASELINE_FLAT)
    basis_fast = build_elevation_basis(fast.activity, fast.segment, fast.params_for(params),
                                       sim_config, BASELINE_FLAT)

    def loss(cda: float, crr: float) -> float:
        r = shen_residuals(basis_slow, basis_fast, cda, crr,
                           config.shen_bow_weight, config.shen_net_weight)
        r = sanitize_residuals(r, config.penalty)
        return float(np.sqrt(np.sum(r ** 2)))

    outcome = minimize_bounded(loss, (params.cda, params.crr), bounds, config)

    runs = (
        _run_summary(slow, basis_slow, outcome.cda, outcome.crr),
        _run_summary(fast, basis_fast, outcome.cda, outcome.crr),
    )
    pooled = np.concatenate([
        basis_slow.residual(outcome.cda, outcome.crr),
        basis_fast.residual(outcome.cda, outcome.crr),
    ])
    reference = np.concatenate([basis_slow.reference, basis_fast.reference])

    return FitResult(
        cda=outcome.cda,
        crr=outcome.crr,
        rmse=residual_rmse(pooled),
        r2=r_squared(pooled, reference),
        method=METHOD_SHEN,
        loss=outcome.loss,
        railing_details=detect_railing(outcome.cda, outcome.crr, bounds,
                                       config.railing_tolerance_frac, config.railing_abs_tol),
        evaluations=outcome.evaluations,
        n_starts=outcome.n_starts,
        bow=max(runs[0].bow, runs[1].bow),
        net_elevation_change=runs[0].net_elevation_change + runs[1].net_elevation_change,
        runs=runs,
        bounds=bounds
    )


def solve_climb(
    low: RunInput,
    high: RunInput,
    params: Optional[TrialParameters] = None,
    bounds: Optional[ParameterBounds] = None,
    config: Optional[EstimatorConfig] = None,
    sim_config: Optional[SimulationConfig] = None
) -> FitResult:
    """
    Jointly fit (CdA, Crr) on two ascents of the same climb at different speeds.

    Each run starts at its own measured elevation; the loss is the RMSE
    over both runs pooled together.

    Args:
        low: Low-speed run
        high: High-speed run
        params: Trial parameters; cda/crr are the initial guess
        bounds: Search box (None = defaults)
        config: Estimator configuration
        sim_config: Simulation settings

    Returns:
        FitResult with pooled R² and one RunSummary per run (low first)
    """
    params, bounds, config, log = _setup(params, bounds, config)

    reason = _check_runs([("low-speed run", low), ("high-speed run", high)])
    if reason is not None:
        log(f"Climb: {reason}")
        return _empty_fit(METHOD_CLIMB, params, bounds, reason)

    log(f"Climb: low run {low.segment.length} samples, high run {high.segment.length} samples")
    basis_low = build_elevation_basis(low.activity, low.segment, low.params_for(params),
                                      sim_config, BASELINE_MEASURED)
    basis_high = build_elevation_basis(high.activity, high.segment, high.params_for(params),
                                       sim_config, BASELINE_MEASURED)

    def pooled_residual(cda: float, crr: float) -> np.ndarray:
        return np.concatenate([basis_low.residual(cda, crr), basis_high.residual(cda, crr)])

    def loss(cda: float, crr: float) -> float:
        r = sanitize_residuals(pooled_residual(cda, crr), config.penalty)
        return float(np.sqrt(np.mean(r ** 2)))

    outcome = minimize_bounded(loss, (params.cda, params.crr), bounds, config)

    pooled = pooled_residual(outcome.cda, outcome.crr)
    reference = np.concatenate([basis_low.reference, basis_high.reference])
    runs = (
        _run_summary(low, basis_low, outcome.cda, outcome.crr),
        _run_summary(high, basis_high, outcome.cda, outcome.crr),
    )

    return FitResult(
        cda=outcome.cda,
        crr=outcome.crr,
        rmse=residual_rmse(pooled),
        r2=r_squared(pooled, reference),
        method=METHOD_CLIMB,
        loss=outcome.loss,
        railing_details=detect_railing(outcome.cda, outcome.crr, bounds,
                                       config.railing_tolerance_frac, config.railing_abs_tol),
        evaluations=outcome.evaluations,
        n_starts=outcome.n_starts,
        runs=runs,
        bounds=bounds
    )


@dataclass
class WindowFit:
    """Fit for one fixed window of a per-window solve."""
    segment: Segment
    fit: FitResult


@dataclass
class SegmentedFit:
    """Quality-weighted combination of per-window fits."""
    cda: Optional[float]
    crr: Optional[float]
    windows: List[WindowFit] = field(default_factory=list)   # every solved window
    accepted: List[WindowFit] = field(default_factory=list)  # windows in the average
    used_grade_filter: bool = False

    @property
    def n_rejected(self) -> int:
        return len(self.windows) - len(self.accepted)

    @property
    def has_result(self) -> bool:
        return self.cda is not None


def remove_outliers(windows: List[WindowFit], key: str, factor: float = IQR_FACTOR) -> List[WindowFit]:
    """
    Drop windows whose fitted value lies outside the Tukey fences.

    Args:
        windows: Window fits
        key: 'cda' or 'crr'
        factor: IQR multiplier

    Returns:
        Windows inside [Q1 - factor*IQR, Q3 + factor*IQR]; lists shorter
        than 4 are returned unchanged
    """
    if len(windows) < 4:
        return list(windows)
    values = np.array([getattr(w.fit, key) for w in windows])
    q1, q3 = np.percentile(values, [25, 75])
    iqr = q3 - q1
    lo, hi = q1 - factor * iqr, q3 + factor * iqr
    return [w for w, v in zip(windows, values) if lo <= v <= hi]


def solve_segmented(
    activity: ActivityData,
    segment: Segment,
    params: Optional[TrialParameters] = None,
    bounds: Optional[ParameterBounds] = None,
    config: Optional[EstimatorConfig] = None,
    sim_config: Optional[SimulationConfig] = None,
    window_size: int = DEFAULT_WINDOW_SIZE,
    min_grade_variance: float = MIN_GRADE_VARIANCE
) -> SegmentedFit:
    """
    Solve fixed windows independently and combine them.

    Steps:
    1. Split the range into windows and run a fast-mode Chung fit on each
    2. Keep fits that are not railing against the bounds
    3. Prefer windows with grade variance >= min_grade_variance when at
       least 3 of them remain
    4. Reject CdA outliers, then Crr outliers (IQR fences)
    5. Average CdA and Crr weighted by each window's quality score

    Args:
        activity: Ride data
        segment: Range to split
        params: Trial parameters; cda/crr are the initial guess
        bounds: Search box (None = defaults)
        config: Estimator configuration
        sim_config: Simulation settings
        window_size: Samples per window
        min_grade_variance: Grade variance (%²) threshold for step 3

    Returns:
        SegmentedFit (cda/crr None when no window survives)
    """
    params, bounds, config, log = _setup(params, bounds, config)
    window_config = replace(config, fast_mode=True, verbose=False, log_callback=None)

    windows = split_into_windows(segment, window_size)
    log(f"Per-window solve: {len(windows)} windows of up to {max(10, int(window_size))} samples")

    solved = []
    for window in windows:
        fit = solve_chung(activity, window, params, bounds, window_config, sim_config)
        if fit.empty_range:
            continue
        solved.append(WindowFit(window, fit))

    in_bounds = [w for w in solved if not w.fit.is_railing]

    filtered = [w for w in in_bounds if w.fit.grade_variance >= min_grade_variance]
    used_grade_filter = len(filtered) >= MIN_FILTERED_WINDOWS
    if not used_grade_filter:
        filtered = in_bounds

    clean = remove_outliers(filtered, 'cda')
    clean = remove_outliers(clean, 'crr')
    if len(clean) < MIN_FILTERED_WINDOWS and len(filtered) >= MIN_FILTERED_WINDOWS:
        clean = filtered

    if not clean:
        log("  No usable windows")
        return SegmentedFit(cda=None, crr=None, windows=solved, accepted=[],
                            used_grade_filter=used_grade_filter)

    weights = np.array([w.fit.quality for w in clean])
    cda_values = np.array([w.fit.cda for w in clean])
    crr_values = np.array([w.fit.crr for w in clean])
    if weights.sum() > 0:
        cda = float(np.sum(cda_values * weights) / weights.sum())
        crr = float(np.sum(crr_values * weights) / weights.sum())
    else:
        cda = float(np.mean(cda_values))
        crr = float(np.mean(crr_values))

    log(f"  {len(clean)} windows used, {len(solved) - len(clean)} rejected: "
        f"CdA {cda:.4f}, Crr {crr:.5f}")

    return SegmentedFit(cda=cda, crr=crr, windows=solved, accepted=clean,
                        used_grade_filter=used_grade_filter)


@dataclass
class AccelerationCheck:
    """Whether a range looks like a steady acceleration (or deceleration) run."""
    suitable: bool
    reason: str
    score: float = 0.0
    r2: float = 0.0
    speed_change_ms: float = 0.0
    direction: str = ""


def check_steady_acceleration(activity: ActivityData, segment: Segment) -> AccelerationCheck:
    """
    Score a range for use as a Shen acceleration run.

    A suitable run has a roughly linear speed trend (R² > 0.5) and changes
    speed by more than 3 m/s.

    Args:
        activity: Ride data
        segment: Candidate range

    Returns:
        AccelerationCheck with a 0-1 score
    """
    speeds = activity.velocity[segment.start_idx:segment.end_idx]
    n = len(speeds)
    if n < STEADY_MIN_POINTS:
        return AccelerationCheck(False, "Not enough data points")

    x = np.arange(n, dtype=float)
    slope, intercept = np.polyfit(x, speeds, 1)
    predicted = slope * x + intercept
    ss_res = float(np.sum((speeds - predicted) ** 2))
    ss_tot = float(np.sum((speeds - np.mean(speeds)) ** 2))
    r2 = 1 - ss_res / ss_tot if ss_tot > 0 else 0.0

    speed_change = float(abs(speeds[-1] - speeds[0]))
    direction = 'accelerating' if slope > 0 else 'decelerating'
    score = r2 * min(1.0, speed_change / STEADY_FULL_SCORE_CHANGE_MS)

    if speed_change <= STEADY_MIN_SPEED_CHANGE_MS:
        return AccelerationCheck(False, "Speed change too small (need >3 m/s)",
                                 score, r2, speed_change, direction)
    if r2 <= STEADY_MIN_R2:
        return AccelerationCheck(False, "Speed change not steady enough",
                                 score, r2, speed_change, direction)
    return AccelerationCheck(True, f"Good {direction} profile", score, r2, speed_change, direction)


# Method variants: each carries its own input shape

@dataclass
class ChungMethod:
    activity: ActivityData
    segment: Segment


@dataclass
class ShenMethod:
    slow: RunInput
    fast: RunInput


@dataclass
class ClimbMethod:
    low: RunInput
    high: RunInput


@dataclass
class SweepMethod:
    activity: ActivityData
    segment: Segment
    grid: SweepGridSpec = field(default_factory=SweepGridSpec)


Method = Union[ChungMethod, ShenMethod, ClimbMethod, SweepMethod]


def run_method(
    method: Method,
    params: Optional[TrialParameters] = None,
    bounds: Optional[ParameterBounds] = None,
    config: Optional[EstimatorConfig] = None,
    sim_config: Optional[SimulationConfig] = None,
    progress_callback=None
) -> Union[FitResult, SweepGrid]:
    """
    Run one analysis method.

    Args:
        method: ChungMethod, ShenMethod, ClimbMethod or SweepMethod
        params: Trial parameters
        bounds: Search box for the solving methods (ignored by Sweep)
        config: Estimator configuration
        sim_config: Simulation settings
        progress_callback: Sweep progress sink (ignored by the solvers)

    Returns:
        FitResult, or SweepGrid for SweepMethod

    Raises:
        TypeError: For anything that is not a known method variant
    """
    if isinstance(method, ChungMethod):
        return solve_chung(method.activity, method.segment, params, bounds, config, sim_config)
    elif isinstance(method, ShenMethod):
        return solve_shen(method.slow, method.fast, params, bounds, config, sim_config)
    elif isinstance(method, ClimbMethod):
        return solve_climb(method.low, method.high, params, bounds, config, sim_config)
    elif isinstance(method, SweepMethod):
        if params is None:
            params = TrialParameters()
        log_callback = config.log_callback if config else None
        verbose = config.verbose if config else False
        return run_sweep(method.activity, method.segment, params, method.grid,
                         progress_callback=progress_callback, sim_config=sim_config,
                         log_callback=log_callback, verbose=verbose)
    raise TypeError(f"Unknown method variant: {type(method).__name__}")
