"""
Segmentation Module - Analysis ranges from sliders, distance or laps, fixed windows, segment stats.
"""

import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from activity_io import ActivityData


MIN_SEGMENT_POINTS = 2
MIN_WINDOW_POINTS = 10
GRADE_MIN_STEP_M = 0.5  # Steps shorter than this are excluded from grade stats


@dataclass(frozen=True)
class Segment:
    """Half-open analysis range [start_idx, end_idx) over an activity."""
    start_idx: int
    end_idx: int

    @property
    def length(self) -> int:
        return self.end_idx - self.start_idx

    @property
    def is_degenerate(self) -> bool:
        """Fewer than two samples cannot carry a single integration step."""
        return self.length < MIN_SEGMENT_POINTS

    @classmethod
    def full(cls, activity: ActivityData) -> 'Segment':
        return cls(0, activity.n_points)


@dataclass
class SegmentStats:
    """Descriptive statistics for one analysis range."""
    start_idx: int
    end_idx: int
    duration_s: float
    distance_m: float
    elevation_gain: float
    elevation_loss: float
    grade_variance: float   # variance of step grade in %²
    speed_variance: float   # variance of speed in (m/s)²
    avg_speed_ms: float
    avg_power: float

    @property
    def n_points(self) -> int:
        return self.end_idx - self.start_idx

    @property
    def avg_speed_kmh(self) -> float:
        return self.avg_speed_ms * 3.6

    @property
    def distance_km(self) -> float:
        return self.distance_m / 1000

    def format_time(self, seconds: float) -> str:
        """M:SS below an hour, H:MM:SS above."""
        total = int(seconds)
        hours, rest = divmod(total, 3600)
        mins, secs = divmod(rest, 60)
        if hours:
            return f"{hours}:{mins:02d}:{secs:02d}"
        return f"{mins}:{secs:02d}"

    @property
    def duration_str(self) -> str:
        return self.format_time(self.duration_s)


def segment_from_percent(
    n_points: int,
    start_pct: float,
    end_pct: float
) -> Segment:
    """
    Convert a pair of range sliders (0-100 %) into sample indices.

    Each end maps to floor(pct / 100 * n), so 100 % lands on n and the
    full slider range covers every sample. The end index is exclusive; the
    same value on both sliders gives an empty (degenerate) segment.

    Args:
        n_points: Length of the series
        start_pct: Start slider position in percent
        end_pct: End slider position in percent

    Returns:
        Segment (may be degenerate)
    """
    if n_points <= 0:
        return Segment(0, 0)
    start_pct = min(100.0, max(0.0, start_pct))
    end_pct = min(100.0, max(0.0, end_pct))
    return Segment(int(math.floor(start_pct / 100 * n_points)),
                   int(math.floor(end_pct / 100 * n_points)))


def closest_index(distance: np.ndarray, target_m: float) -> int:
    """
    Index of the sample whose cumulative distance is nearest the target.

    Ties resolve to the earlier sample.
    """
    distance = np.asarray(distance, dtype=float)
    if len(distance) == 0:
        return 0
    if target_m <= distance[0]:
        return 0
    if target_m >= distance[-1]:
        return len(distance) - 1

    hi = int(np.searchsorted(distance, target_m, side='right'))
    lo = hi - 1
    if target_m - distance[lo] <= distance[hi] - target_m:
        return lo
    return hi


def segment_from_distance(
    activity: ActivityData,
    start_m: float,
    end_m: float
) -> Segment:
    """
    Build a segment from a distance window in meters.

    Args:
        activity: Activity series
        start_m: Window start (cumulative distance)
        end_m: Window end (cumulative distance)

    Returns:
        Segment that includes the samples nearest start_m and end_m
    """
    if end_m < start_m:
        start_m, end_m = end_m, start_m
    start_idx = closest_index(activity.distance, start_m)
    end_idx = closest_index(activity.distance, end_m) + 1
    return Segment(start_idx, end_idx)


def segments_from_laps(activity: ActivityData) -> List[Segment]:
    """
    Split an activity at its lap markers.

    Returns:
        Consecutive segments covering the whole series; markers at the
        very start or end are ignored
    """
    n = activity.n_points
    boundaries = [0]
    for marker in sorted(activity.lap_markers, key=lambda m: m.index):
        if 0 < marker.index < n and marker.index != boundaries[-1]:
            boundaries.append(marker.index)
    if n > 0:
        boundaries.append(n)

    return [Segment(boundaries[i], boundaries[i + 1]) for i in range(len(boundaries) - 1)]


def split_into_windows(
    segment: Segment,
    window_size: int = 180,
    min_window: int = MIN_WINDOW_POINTS
) -> List[Segment]:
    """
    Split a range into fixed-size windows for per-window solving.

    Full windows are laid from the start; a trailing remainder becomes its
    own window only when it holds at least min_window samples.

    Args:
        segment: Range to split
        window_size: Samples per window (floored at min_window)
        min_window: Smallest acceptable window

    Returns:
        List of non-overlapping segments
    """
    size = max(min_window, int(window_size))
    windows = []
    i = segment.start_idx
    while i < segment.end_idx - size:
        windows.append(Segment(i, i + size))
        i += size
    if i < segment.end_idx and segment.end_idx - i >= min_window:
        windows.append(Segment(i, segment.end_idx))
    return windows


def grade_variance(
    elevation: np.ndarray,
    ds: np.ndarray,
    min_step_m: float = GRADE_MIN_STEP_M
) -> float:
    """
    Population variance of step grade (%) within a range.

    Only steps longer than min_step_m contribute; fewer than two usable
    steps give 0.
    """
    elevation = np.asarray(elevation, dtype=float)
    ds = np.asarray(ds, dtype=float)
    if len(elevation) < 2:
        return 0.0

    step = ds[1:]
    usable = step > min_step_m
    if np.count_nonzero(usable) < 2:
        return 0.0
    grades = np.diff(elevation)[usable] / step[usable] * 100
    return float(np.var(grades))


def compute_segment_stats(activity: ActivityData, segment: Segment) -> Optional[SegmentStats]:
    """
    Compute statistics for an analysis range.

    Args:
        activity: Activity series
        segment: Range to describe

    Returns:
        SegmentStats, or None for an empty range
    """
    start, end = segment.start_idx, min(segment.end_idx, activity.n_points)
    if end <= start:
        return None

    elevations = activity.elevation[start:end]
    elev_diffs = np.diff(elevations)
    speeds = activity.velocity[start:end]

    return SegmentStats(
        start_idx=start,
        end_idx=end,
        duration_s=float(activity.t[end - 1] - activity.t[start]),
        distance_m=float(activity.distance[end - 1] - activity.distance[start]),
        elevation_gain=float(np.sum(elev_diffs[elev_diffs > 0])),
        elevation_loss=float(np.abs(np.sum(elev_diffs[elev_diffs < 0]))),
        grade_variance=grade_variance(elevations, activity.ds[start:end]),
        speed_variance=float(np.var(speeds)),
        avg_speed_ms=float(np.mean(speeds)),
        avg_power=float(np.mean(activity.power[start:end]))
    )


def get_segment_boundaries(segments: List[Segment]) -> List[int]:
    """
    Extract boundary indices from segment list.

    Args:
        segments: List of consecutive segments

    Returns:
        List of boundary point indices
    """
    if not segments:
        return [0]

    boundaries = [segments[0].start_idx]
    for seg in segments:
        boundaries.append(seg.end_idx)

    return boundaries


def format_segments_table(stats: List[SegmentStats]) -> str:
    """
    Format segment statistics as a text table.

    Args:
        stats: List of segment statistics

    Returns:
        Formatted table string
    """
    if not stats:
        return "No segments"

    lines = []
    header = (
        f"{'#':>3} | {'Start':>6} | {'End':>6} | {'Dist':>7} | "
        f"{'Time':>7} | {'Speed':>6} | {'Power':>6} | {'GradeVar':>8}"
    )
    lines.append(header)
    lines.append("-" * len(header))

    for i, seg in enumerate(stats):
        line = (
            f"{i+1:>3} | "
            f"{seg.start_idx:>6} | "
            f"{seg.end_idx:>6} | "
            f"{seg.distance_km:>6.2f}k | "
            f"{seg.duration_str:>7} | "
            f"{seg.avg_speed_kmh:>6.1f} | "
            f"{seg.avg_power:>5.0f}W | "
            f"{seg.grade_variance:>8.2f}"
        )
        lines.append(line)

    return "\n".join(lines)
