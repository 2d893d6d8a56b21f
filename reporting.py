"""
Reporting Module - Trace/sweep/window tables, persistence records, fit summary card, CSV export.
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from activity_io import ActivityData
from physics import TrialParameters, VirtualElevationResult
from optimizer import FitResult
from sweep import SweepGrid
from methods import SegmentedFit
from filters import low_pass_filter


def trace_to_dataframe(
    activity: ActivityData,
    result: VirtualElevationResult,
    smoothing_intensity: Optional[float] = None
) -> pd.DataFrame:
    """
    Full-length measured and virtual elevation traces for display.

    Args:
        activity: Ride data
        result: Simulation result (full-length traces)
        smoothing_intensity: When given, add low-pass filtered display
            columns at this intensity (1-10)

    Returns:
        DataFrame with one row per sample; empty for an empty-range result
    """
    if result.empty_range:
        return pd.DataFrame(columns=['time_s', 'distance_m', 'elevation_m',
                                     'virtual_elevation_m', 'residual_m', 'in_segment'])

    in_segment = np.zeros(activity.n_points, dtype=bool)
    in_segment[result.start_idx:result.end_idx] = True

    df = pd.DataFrame({
        'time_s': activity.t,
        'distance_m': activity.distance,
        'elevation_m': activity.elevation,
        'virtual_elevation_m': result.virtual_elevation,
        'residual_m': result.residual,
        'speed_kmh': activity.velocity * 3.6,
        'power_w': activity.power,
        'in_segment': in_segment,
    })

    if smoothing_intensity is not None:
        df['elevation_smoothed_m'] = low_pass_filter(activity.elevation, smoothing_intensity)
        df['virtual_elevation_smoothed_m'] = low_pass_filter(result.virtual_elevation,
                                                             smoothing_intensity)

    return df


def sweep_to_dataframe(grid: SweepGrid) -> pd.DataFrame:
    """
    Sweep grid in long form: one row per (CdA, Crr) node.

    Args:
        grid: Sweep result

    Returns:
        DataFrame with cda, crr, rmse_m and is_best columns
    """
    cda_mesh, crr_mesh = np.meshgrid(grid.cda_values, grid.crr_values)
    df = pd.DataFrame({
        'cda': cda_mesh.ravel(),
        'crr': crr_mesh.ravel(),
        'rmse_m': grid.rmse_grid.ravel(),
    })
    best = grid.best_index()
    is_best = np.zeros(len(df), dtype=bool)
    if best is not None and not grid.empty_range:
        is_best[best[0] * len(grid.cda_values) + best[1]] = True
    df['is_best'] = is_best
    return df


def sweep_to_matrix(grid: SweepGrid) -> pd.DataFrame:
    """Sweep grid as a matrix: Crr rows, CdA columns."""
    return pd.DataFrame(
        grid.rmse_grid,
        index=pd.Index(np.round(grid.crr_values, 6), name='crr'),
        columns=pd.Index(np.round(grid.cda_values, 4), name='cda')
    )


def segmented_fits_to_dataframe(segmented: SegmentedFit) -> pd.DataFrame:
    """
    Convert per-window fits to a DataFrame.

    Args:
        segmented: Per-window solve result

    Returns:
        DataFrame with one row per solved window
    """
    accepted = {id(w) for w in segmented.accepted}
    data = []
    for i, window in enumerate(segmented.windows):
        fit = window.fit
        data.append({
            'Window': i + 1,
            'Start': window.segment.start_idx,
            'End': window.segment.end_idx,
            'CdA': round(fit.cda, 4),
            'Crr': round(fit.crr, 5),
            'RMSE (m)': round(fit.rmse, 3),
            'Grade Var': round(fit.grade_variance, 2),
            'Avg Speed (km/h)': round(fit.avg_speed_kmh, 1),
            'Quality': round(fit.quality, 3),
            'At Bound': fit.is_railing,
            'Used': id(window) in accepted,
        })

    return pd.DataFrame(data)


def fit_record(fit: FitResult, params: TrialParameters) -> Dict[str, Any]:
    """
    Persistence record for a fit: the fitted values plus the trial parameters used.

    No identifiers or timestamps are assigned here.

    Args:
        fit: Fit result
        params: Trial parameters the fit was run with

    Returns:
        Flat dictionary
    """
    record = {
        'method': fit.method,
        'cda': fit.cda,
        'crr': fit.crr,
        'rmse': fit.rmse,
        'r2': fit.r2,
        'is_railing': fit.is_railing,
    }
    trial = asdict(params)
    trial.pop('cda')
    trial.pop('crr')
    record.update(trial)
    return record


def fit_advisories(fit: FitResult) -> List[str]:
    """User-facing advisories driven by the degenerate-range and railing flags."""
    if fit.empty_range:
        return [f"Range too narrow: {fit.reason}. Select at least two samples."]

    advisories = []
    if fit.is_railing:
        sides = ", ".join(fit.railing_details.describe())
        advisories.append(f"Solution at bounds ({sides}). Widen the bounds and re-run.")
    return advisories


def format_fit_summary(fit: FitResult, params: Optional[TrialParameters] = None) -> str:
    """
    Format a printable fit summary card.

    Args:
        fit: Fit result
        params: Trial parameters used (optional)

    Returns:
        Formatted string for printing
    """
    lines = []
    lines.append("=" * 50)
    lines.append(f"{fit.method.upper()} FIT")
    lines.append("=" * 50)

    if not fit.empty_range:
        lines.append(f"  CdA:   {fit.cda:.4f} m²")
        lines.append(f"  Crr:   {fit.crr:.5f}")
        lines.append(f"  RMSE:  {fit.rmse:.3f} m")
        lines.append(f"  R²:    {fit.r2:.4f}")
        if fit.quality > 0:
            lines.append(f"  Quality: {fit.quality:.3f}")
        if fit.avg_speed_kmh > 0:
            lines.append(f"  Avg speed: {fit.avg_speed_kmh:.1f} km/h")

        if fit.runs:
            lines.append("-" * 50)
            lines.append(f"{'Run':>3} | {'Speed':>6} | {'RMSE':>6} | {'Bow':>6} | {'Net':>6}")
            for i, run in enumerate(fit.runs):
                lines.append(
                    f"{i+1:>3} | "
                    f"{run.avg_speed_kmh:>6.1f} | "
                    f"{run.rmse:>6.3f} | "
                    f"{run.bow:>6.3f} | "
                    f"{run.net_elevation_change:>6.3f}"
                )

    if params is not None:
        lines.append("-" * 50)
        lines.append(f"  Mass {params.mass_kg:.1f} kg, efficiency {params.efficiency:.3f}, "
                     f"rho {params.air_density:.4f} kg/m³")
        if params.wind_speed_ms:
            lines.append(f"  Wind {params.wind_speed_ms:.2f} m/s from {params.wind_direction_deg:.0f}°")

    advisories = fit_advisories(fit)
    if advisories:
        lines.append("")
        for advisory in advisories:
            lines.append(f"  ! {advisory}")

    lines.append("=" * 50)

    return "\n".join(lines)


def export_trace_csv(
    activity: ActivityData,
    result: VirtualElevationResult,
    filename: str
) -> None:
    """
    Export the full virtual elevation trace to CSV.

    Args:
        activity: Ride data
        result: Simulation result
        filename: Output filename
    """
    df = trace_to_dataframe(activity, result)
    df.to_csv(filename, index=False)


def export_sweep_csv(grid: SweepGrid, filename: str) -> None:
    """
    Export the sweep grid (long form) to CSV.

    Args:
        grid: Sweep result
        filename: Output filename
    """
    df = sweep_to_dataframe(grid)
    df.to_csv(filename, index=False)
