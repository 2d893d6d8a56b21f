"""
Optimizer Module - Parameter bounds, multi-start bounded Nelder-Mead, railing detection.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize


# Built-in search space
DEFAULT_CDA_BOUNDS = (0.1, 0.6)
DEFAULT_CRR_BOUNDS = (0.001, 0.015)

# Canonical start points (CdA, Crr) covering typical road/TT positions
CANONICAL_STARTS = [
    (0.25, 0.004),
    (0.30, 0.005),
    (0.28, 0.0045),
    (0.22, 0.003),
]
FAST_CANONICAL_STARTS = [(0.28, 0.0045)]

# Extra starts placed relative to the bounds, as (cda_frac, crr_frac)
BOUND_RELATIVE_STARTS = [(0.25, 0.75), (0.75, 0.25)]

MIN_BOUND_SPAN = 1e-9
SIMPLEX_STEP = 0.05  # initial simplex edge in bound-normalised units


class BoundsError(ValueError):
    """Raised when search bounds cannot be used for optimisation."""
    pass


class EarlyStopException(Exception):
    """Raised to terminate an optimisation run early."""
    pass


@dataclass
class ParameterBounds:
    """Search box for (CdA, Crr)."""
    cda_min: float = DEFAULT_CDA_BOUNDS[0]
    cda_max: float = DEFAULT_CDA_BOUNDS[1]
    crr_min: float = DEFAULT_CRR_BOUNDS[0]
    crr_max: float = DEFAULT_CRR_BOUNDS[1]

    @property
    def cda_span(self) -> float:
        return self.cda_max - self.cda_min

    @property
    def crr_span(self) -> float:
        return self.crr_max - self.crr_min

    def clamp(self, cda: float, crr: float) -> Tuple[float, float]:
        return (
            min(self.cda_max, max(self.cda_min, cda)),
            min(self.crr_max, max(self.crr_min, crr))
        )

    def contains(self, cda: float, crr: float) -> bool:
        return self.cda_min <= cda <= self.cda_max and self.crr_min <= crr <= self.crr_max

    def to_unit(self, cda: float, crr: float) -> np.ndarray:
        """Map (CdA, Crr) to [0, 1]² (zero-span axes map to 0)."""
        u_cda = (cda - self.cda_min) / self.cda_span if self.cda_span > 0 else 0.0
        u_crr = (crr - self.crr_min) / self.crr_span if self.crr_span > 0 else 0.0
        return np.array([u_cda, u_crr], dtype=float)

    def from_unit(self, u: np.ndarray) -> Tuple[float, float]:
        """Map a point of [0, 1]² back to (CdA, Crr), clamping into the box."""
        u = np.clip(np.asarray(u, dtype=float), 0.0, 1.0)
        return (
            float(self.cda_min + u[0] * self.cda_span),
            float(self.crr_min + u[1] * self.crr_span)
        )


def resolve_bounds(
    bounds: Optional[ParameterBounds] = None,
    strict: bool = False,
    log: Optional[Callable[[str], None]] = None
) -> ParameterBounds:
    """
    Validate caller bounds before any optimisation starts.

    An axis whose minimum exceeds its maximum, or whose span is ~0, falls
    back to the built-in default for that axis. With strict=True such an
    axis raises instead.

    Args:
        bounds: Caller bounds (None = defaults)
        strict: Reject unusable bounds instead of falling back
        log: Optional message sink

    Returns:
        Usable ParameterBounds

    Raises:
        BoundsError: Non-finite or negative bounds, or unusable bounds when strict
    """
    if bounds is None:
        return ParameterBounds()

    values = (bounds.cda_min, bounds.cda_max, bounds.crr_min, bounds.crr_max)
    if not all(math.isfinite(v) for v in values):
        raise BoundsError(f"Bounds must be finite, got {values}")
    if any(v < 0 for v in values):
        raise BoundsError(f"Bounds must be non-negative, got {values}")

    cda_min, cda_max = bounds.cda_min, bounds.cda_max
    crr_min, crr_max = bounds.crr_min, bounds.crr_max

    if cda_max - cda_min <= MIN_BOUND_SPAN:
        if strict:
            raise BoundsError(f"CdA bounds need min < max, got [{cda_min}, {cda_max}]")
        if log:
            log(f"  Invalid CdA bounds [{cda_min}, {cda_max}], using defaults {DEFAULT_CDA_BOUNDS}")
        cda_min, cda_max = DEFAULT_CDA_BOUNDS

    if crr_max - crr_min <= MIN_BOUND_SPAN:
        if strict:
            raise BoundsError(f"Crr bounds need min < max, got [{crr_min}, {crr_max}]")
        if log:
            log(f"  Invalid Crr bounds [{crr_min}, {crr_max}], using defaults {DEFAULT_CRR_BOUNDS}")
        crr_min, crr_max = DEFAULT_CRR_BOUNDS

    return ParameterBounds(cda_min, cda_max, crr_min, crr_max)


@dataclass
class EstimatorConfig:
    """Configuration for the (CdA, Crr) estimator."""
    max_iterations: int = 200          # Nelder-Mead iterations per start point
    tolerance: float = 1e-7            # Convergence tolerance on parameters and loss
    fast_mode: bool = False            # Fewer start points (per-window solves)
    strict_bounds: bool = False        # Raise on unusable bounds instead of falling back
    railing_tolerance_frac: float = 0.01  # Fraction of bound span counted as "at bound"
    railing_abs_tol: float = 1e-5      # Tolerance for zero-span bounds
    penalty: float = 1e6               # Loss substituted for non-finite values
    shen_bow_weight: float = 5.0
    shen_net_weight: float = 3.0
    max_time_s: Optional[float] = None  # Wall-clock cap across all start points
    verbose: bool = False
    log_callback: Optional[Callable[[str], None]] = None

    def logger(self) -> Callable[[str], None]:
        def log(msg: str):
            if self.log_callback:
                self.log_callback(msg)
            if self.verbose:
                print(msg)
        return log


@dataclass(frozen=True)
class RailingDetails:
    """Which bounds a solution sits on."""
    cda_at_lower: bool = False
    cda_at_upper: bool = False
    crr_at_lower: bool = False
    crr_at_upper: bool = False

    @property
    def is_railing(self) -> bool:
        return self.cda_at_lower or self.cda_at_upper or self.crr_at_lower or self.crr_at_upper

    def describe(self) -> List[str]:
        sides = []
        if self.cda_at_lower:
            sides.append("CdA at lower bound")
        if self.cda_at_upper:
            sides.append("CdA at upper bound")
        if self.crr_at_lower:
            sides.append("Crr at lower bound")
        if self.crr_at_upper:
            sides.append("Crr at upper bound")
        return sides


def _at_bound_tolerance(span: float, frac: float, abs_tol: float) -> float:
    if span <= 0:
        return abs_tol
    return span * frac


def detect_railing(
    cda: float,
    crr: float,
    bounds: ParameterBounds,
    frac: float = 0.01,
    abs_tol: float = 1e-5
) -> RailingDetails:
    """
    Flag each parameter that lies within tolerance of a bound.

    Args:
        cda: Fitted CdA
        crr: Fitted Crr
        bounds: Search box used for the fit
        frac: Tolerance as a fraction of the bound span
        abs_tol: Tolerance used when a span is zero

    Returns:
        RailingDetails
    """
    cda_tol = _at_bound_tolerance(bounds.cda_span, frac, abs_tol)
    crr_tol = _at_bound_tolerance(bounds.crr_span, frac, abs_tol)
    return RailingDetails(
        cda_at_lower=cda - bounds.cda_min <= cda_tol,
        cda_at_upper=bounds.cda_max - cda <= cda_tol,
        crr_at_lower=crr - bounds.crr_min <= crr_tol,
        crr_at_upper=bounds.crr_max - crr <= crr_tol
    )


@dataclass(frozen=True)
class RunSummary:
    """Per-run metrics for two-run methods."""
    start_idx: int
    end_idx: int
    rmse: float
    r2: float
    bow: float
    net_elevation_change: float
    avg_speed_kmh: float


@dataclass(frozen=True)
class FitResult:
    """Outcome of a (CdA, Crr) estimation."""
    cda: float
    crr: float
    rmse: float
    r2: float
    method: str
    loss: float = 0.0
    railing_details: RailingDetails = field(default_factory=RailingDetails)
    evaluations: int = 0
    n_starts: int = 0
    bow: float = 0.0
    net_elevation_change: float = 0.0
    grade_variance: float = 0.0
    speed_variance: float = 0.0
    avg_speed_kmh: float = 0.0
    quality: float = 0.0
    runs: Tuple[RunSummary, ...] = ()
    bounds: Optional[ParameterBounds] = None
    empty_range: bool = False
    reason: str = ""

    @property
    def is_railing(self) -> bool:
        return self.railing_details.is_railing


@dataclass
class OptimizationOutcome:
    """Best point found across all start points."""
    cda: float
    crr: float
    loss: float
    evaluations: int
    n_starts: int
    stop_reason: str = ""


def safe_loss(value: float, penalty: float = 1e6) -> float:
    """Replace a non-finite loss with the penalty value."""
    if value is None or not math.isfinite(value):
        return penalty
    return float(value)


def sanitize_residuals(residual: np.ndarray, penalty: float = 1e6) -> np.ndarray:
    """Replace non-finite residuals with the penalty value."""
    residual = np.asarray(residual, dtype=float)
    return np.where(np.isfinite(residual), residual, penalty)


def _dedupe(points: Sequence[Tuple[float, float]], bounds: ParameterBounds) -> List[Tuple[float, float]]:
    unique = []
    seen = []
    for cda, crr in points:
        u = bounds.to_unit(cda, crr)
        if any(np.allclose(u, s, atol=1e-6) for s in seen):
            continue
        seen.append(u)
        unique.append((cda, crr))
    return unique


def generate_start_points(
    initial_guess: Tuple[float, float],
    bounds: ParameterBounds,
    fast_mode: bool = False
) -> List[Tuple[float, float]]:
    """
    Diversified start points for the multi-start search.

    The caller's guess comes first, clamped into the bounds, followed by
    the canonical starts and (outside fast mode) bound-relative starts.
    Duplicates after clamping are removed.

    Args:
        initial_guess: Caller (CdA, Crr)
        bounds: Resolved search box
        fast_mode: Use the reduced start set

    Returns:
        List of (CdA, Crr) inside the bounds
    """
    guess = bounds.clamp(*initial_guess)
    points = [guess]

    canonical = FAST_CANONICAL_STARTS if fast_mode else CANONICAL_STARTS
    points.extend(bounds.clamp(cda, crr) for cda, crr in canonical)

    if not fast_mode:
        for cda_frac, crr_frac in BOUND_RELATIVE_STARTS:
            points.append(bounds.from_unit(np.array([cda_frac, crr_frac])))

    return _dedupe(points, bounds)


class ObjectiveTracker:
    """Tracks loss evaluations, keeps the best point and enforces the time cap."""

    def __init__(self, config: EstimatorConfig):
        self.config = config
        self.best_loss = float('inf')
        self.best_x = None
        self.eval_count = 0
        self.start_time = time.time()
        self.stop_reason = ""

    def record(self, cda: float, crr: float, loss: float):
        """
        Record one evaluation.

        Raises EarlyStopException once the wall-clock cap is exceeded.
        """
        self.eval_count += 1
        if loss < self.best_loss or self.best_x is None:
            self.best_loss = loss
            self.best_x = (cda, crr)

        max_time = self.config.max_time_s
        if max_time is not None and time.time() - self.start_time > max_time:
            self.stop_reason = f"Max time ({max_time:.1f}s) reached"
            raise EarlyStopException(self.stop_reason)


def _initial_simplex(u0: np.ndarray) -> np.ndarray:
    simplex = [u0.copy()]
    for axis in range(2):
        vertex = u0.copy()
        step = SIMPLEX_STEP if vertex[axis] + SIMPLEX_STEP <= 1.0 else -SIMPLEX_STEP
        vertex[axis] += step
        simplex.append(vertex)
    return np.array(simplex)


def minimize_bounded(
    loss_fn: Callable[[float, float], float],
    initial_guess: Tuple[float, float],
    bounds: ParameterBounds,
    config: Optional[EstimatorConfig] = None
) -> OptimizationOutcome:
    """
    Minimise a (CdA, Crr) loss inside a box from several start points.

    Each start runs Nelder-Mead in bound-normalised coordinates; every
    evaluation clamps into the box, so no returned point can leave it.
    The result is the best point seen across every evaluation of every run.

    Args:
        loss_fn: Callable (cda, crr) -> loss
        initial_guess: Caller (CdA, Crr)
        bounds: Resolved search box
        config: Estimator configuration

    Returns:
        OptimizationOutcome
    """
    if config is None:
        config = EstimatorConfig()
    log = config.logger()

    tracker = ObjectiveTracker(config)

    def objective(u: np.ndarray) -> float:
        cda, crr = bounds.from_unit(u)
        loss = safe_loss(loss_fn(cda, crr), config.penalty)
        tracker.record(cda, crr, loss)
        return loss

    starts = generate_start_points(initial_guess, bounds, config.fast_mode)
    log(f"  Bounds: CdA [{bounds.cda_min:.4f}, {bounds.cda_max:.4f}], "
        f"Crr [{bounds.crr_min:.5f}, {bounds.crr_max:.5f}]")
    log(f"  {len(starts)} start points, max {config.max_iterations} iterations each")

    n_run = 0
    for cda0, crr0 in starts:
        u0 = bounds.to_unit(cda0, crr0)
        n_run += 1
        try:
            result = minimize(
                objective,
                u0,
                method='Nelder-Mead',
                options={
                    'maxiter': config.max_iterations,
                    'xatol': config.tolerance,
                    'fatol': config.tolerance,
                    'initial_simplex': _initial_simplex(u0),
                }
            )
            cda, crr = bounds.from_unit(result.x)
            log(f"  Start ({cda0:.3f}, {crr0:.4f}) -> ({cda:.4f}, {crr:.5f}) "
                f"loss {result.fun:.5f} after {result.nit} iterations")
        except EarlyStopException as e:
            log(f"  Early stop: {e}")
            break

    best_cda, best_crr = tracker.best_x
    log(f"  Best: CdA {best_cda:.4f}, Crr {best_crr:.5f}, loss {tracker.best_loss:.5f} "
        f"({tracker.eval_count} evaluations)")

    return OptimizationOutcome(
        cda=best_cda,
        crr=best_crr,
        loss=tracker.best_loss,
        evaluations=tracker.eval_count,
        n_starts=n_run,
        stop_reason=tracker.stop_reason
    )
