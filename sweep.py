"""
Sweep Module - Exhaustive CdA x Crr RMSE grid with progress, cancellation and row-parallel evaluation.
"""

import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

import numpy as np

from activity_io import ActivityData
from segmentation import Segment
from physics import (
    TrialParameters, SimulationConfig, ElevationBasis, build_elevation_basis,
    check_segment, BASELINE_MEASURED
)
from optimizer import FitResult, ParameterBounds, detect_railing
from diagnostics import r_squared


METHOD_SWEEP = 'sweep'


@dataclass
class SweepGridSpec:
    """Regular grid over (CdA, Crr); steps+1 values per axis, ends included."""
    cda_min: float = 0.15
    cda_max: float = 0.45
    cda_steps: int = 30
    crr_min: float = 0.002
    crr_max: float = 0.008
    crr_steps: int = 30

    def validate(self) -> None:
        """
        Raises:
            ValueError: On negative step counts, non-finite or inverted ranges
        """
        for name in ('cda_steps', 'crr_steps'):
            steps = getattr(self, name)
            if int(steps) != steps or steps < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {steps}")
        values = (self.cda_min, self.cda_max, self.crr_min, self.crr_max)
        if not all(math.isfinite(v) for v in values):
            raise ValueError(f"Sweep ranges must be finite, got {values}")
        if self.cda_max < self.cda_min or self.crr_max < self.crr_min:
            raise ValueError("Sweep ranges need min <= max")

    @property
    def n_cells(self) -> int:
        return (int(self.cda_steps) + 1) * (int(self.crr_steps) + 1)

    def cda_values(self) -> np.ndarray:
        return np.linspace(self.cda_min, self.cda_max, int(self.cda_steps) + 1)

    def crr_values(self) -> np.ndarray:
        return np.linspace(self.crr_min, self.crr_max, int(self.crr_steps) + 1)

    def as_bounds(self) -> ParameterBounds:
        return ParameterBounds(self.cda_min, self.cda_max, self.crr_min, self.crr_max)


@dataclass
class SweepProgress:
    """Progress of a running sweep; percent never decreases."""
    row_index: int
    rows_done: int
    total_rows: int
    rmse_row: np.ndarray

    @property
    def percent(self) -> float:
        if self.total_rows == 0:
            return 100.0
        return 100.0 * self.rows_done / self.total_rows


@dataclass
class SweepGrid:
    """
    RMSE over the grid.

    rmse_grid has one row per Crr value and one column per CdA value;
    cells never evaluated (cancelled sweep) hold NaN.
    """
    cda_values: np.ndarray
    crr_values: np.ndarray
    rmse_grid: np.ndarray
    best: Optional[FitResult] = None
    completed: bool = True
    empty_range: bool = False
    reason: str = ""
    cells_evaluated: int = 0

    @property
    def shape(self):
        return self.rmse_grid.shape

    def best_index(self):
        """(row, col) of the lowest evaluated cell, or None."""
        if not np.any(np.isfinite(self.rmse_grid)):
            return None
        flat = int(np.nanargmin(self.rmse_grid))
        return np.unravel_index(flat, self.rmse_grid.shape)


def evaluate_row(basis: ElevationBasis, cda_values: np.ndarray, crr: float) -> np.ndarray:
    """RMSE for every CdA value at one Crr value."""
    residuals = basis.traces(cda_values, crr) - basis.reference[np.newaxis, :]
    with np.errstate(over='ignore', invalid='ignore'):
        row = np.sqrt(np.mean(residuals ** 2, axis=1))
    return row


def iter_sweep(
    activity: ActivityData,
    segment: Segment,
    params: TrialParameters,
    spec: SweepGridSpec,
    sim_config: Optional[SimulationConfig] = None
) -> Iterator[SweepProgress]:
    """
    Evaluate the grid one Crr row at a time.

    Yields a SweepProgress after each row; the caller may stop iterating at
    any point. A degenerate segment yields nothing.

    Args:
        activity: Ride data
        segment: Analysis range
        params: Trial parameters (cda/crr ignored)
        spec: Grid specification

    Yields:
        SweepProgress carrying the finished row
    """
    spec.validate()
    if check_segment(activity, segment) is not None:
        return

    basis = build_elevation_basis(activity, segment, params, sim_config, BASELINE_MEASURED)
    cda_values = spec.cda_values()
    crr_values = spec.crr_values()
    total = len(crr_values)

    for j, crr in enumerate(crr_values):
        yield SweepProgress(j, j + 1, total, evaluate_row(basis, cda_values, crr))


def _best_fit(
    grid: np.ndarray,
    cda_values: np.ndarray,
    crr_values: np.ndarray,
    basis: ElevationBasis,
    spec: SweepGridSpec,
    cells: int
) -> Optional[FitResult]:
    if not np.any(np.isfinite(grid)):
        return None
    row, col = np.unravel_index(int(np.nanargmin(grid)), grid.shape)
    cda = float(cda_values[col])
    crr = float(crr_values[row])
    bounds = spec.as_bounds()
    return FitResult(
        cda=cda,
        crr=crr,
        rmse=float(grid[row, col]),
        r2=r_squared(basis.residual(cda, crr), basis.reference),
        method=METHOD_SWEEP,
        loss=float(grid[row, col]),
        railing_details=detect_railing(cda, crr, bounds),
        evaluations=cells,
        bounds=bounds
    )


def run_sweep(
    activity: ActivityData,
    segment: Segment,
    params: TrialParameters,
    spec: SweepGridSpec,
    progress_callback: Optional[Callable[[SweepProgress], Optional[bool]]] = None,
    progress_interval_pct: float = 5.0,
    max_workers: Optional[int] = None,
    sim_config: Optional[SimulationConfig] = None,
    log_callback: Optional[Callable[[str], None]] = None,
    verbose: bool = False
) -> SweepGrid:
    """
    Evaluate Chung RMSE at every grid node.

    The progress callback fires each time another progress_interval_pct of
    the rows has finished (and at the end); returning False from it cancels
    the sweep, leaving unevaluated cells as NaN and completed=False.

    Args:
        activity: Ride data
        segment: Analysis range
        params: Trial parameters (cda/crr ignored)
        spec: Grid specification
        progress_callback: Optional progress sink
        progress_interval_pct: Minimum percentage between callbacks
        max_workers: Evaluate rows on a thread pool of this size (None = serial)
        sim_config: Simulation settings
        log_callback: Optional callback for log messages
        verbose: Also print log messages

    Returns:
        SweepGrid with the best (lowest RMSE) node
    """
    def log(msg: str):
        if log_callback:
            log_callback(msg)
        if verbose:
            print(msg)

    spec.validate()
    params.validate()
    cda_values = spec.cda_values()
    crr_values = spec.crr_values()
    grid = np.full((len(crr_values), len(cda_values)), np.nan)

    reason = check_segment(activity, segment)
    if reason is not None:
        log(f"Sweep: {reason} [{segment.start_idx}, {segment.end_idx})")
        grid[:] = 0.0
        cda, crr = spec.as_bounds().clamp(params.cda, params.crr)
        empty = FitResult(cda=cda, crr=crr, rmse=0.0, r2=0.0, method=METHOD_SWEEP,
                          empty_range=True, reason=reason)
        return SweepGrid(cda_values, crr_values, grid, best=empty, completed=True,
                         empty_range=True, reason=reason)

    log(f"Sweep: {spec.n_cells} cells ({len(crr_values)} Crr x {len(cda_values)} CdA)")
    basis = build_elevation_basis(activity, segment, params, sim_config, BASELINE_MEASURED)
    total = len(crr_values)
    next_report = [progress_interval_pct]

    def report(progress: SweepProgress) -> bool:
        if progress_callback is None:
            return True
        if progress_interval_pct > 0 and progress.rows_done < total:
            if progress.percent + 1e-9 < next_report[0]:
                return True
            steps = math.floor((progress.percent + 1e-9) / progress_interval_pct) + 1
            next_report[0] = steps * progress_interval_pct
        return progress_callback(progress) is not False

    rows_done = 0
    cancelled = False

    if max_workers is None or max_workers <= 1:
        for j, crr in enumerate(crr_values):
            grid[j] = evaluate_row(basis, cda_values, crr)
            rows_done += 1
            if not report(SweepProgress(j, rows_done, total, grid[j])):
                cancelled = True
                break
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(evaluate_row, basis, cda_values, crr): j
                for j, crr in enumerate(crr_values)
            }
            for future in as_completed(futures):
                j = futures[future]
                grid[j] = future.result()
                rows_done += 1
                if not report(SweepProgress(j, rows_done, total, grid[j])):
                    cancelled = True
                    for pending in futures:
                        pending.cancel()
                    break

    cells = rows_done * len(cda_values)
    if cancelled:
        log(f"  Sweep cancelled after {rows_done}/{total} rows")
    else:
        log(f"  Sweep complete: {cells} cells evaluated")

    best = _best_fit(grid, cda_values, crr_values, basis, spec, cells)
    if best is not None:
        log(f"  Best: CdA {best.cda:.4f}, Crr {best.crr:.5f}, RMSE {best.rmse:.4f} m")

    return SweepGrid(
        cda_values=cda_values,
        crr_values=crr_values,
        rmse_grid=grid,
        best=best,
        completed=not cancelled,
        cells_evaluated=cells
    )
