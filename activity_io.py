"""
Activity I/O Module - Parse GPX/FIT rides, derive distance, bearing, velocity, acceleration.
"""

import io
import math
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

import numpy as np
import gpxpy
import gpxpy.gpx
from fitparse import FitFile, FitParseError

from filters import savgol9, centered_derivative


# Earth radius in meters
EARTH_RADIUS_M = 6371000

# Guard for near-zero time steps when deriving raw velocity
MIN_DT_S = 0.05

# Garmin semicircles -> degrees
SEMICIRCLE_TO_DEG = 180.0 / 2 ** 31

POWER_FRACTION_THRESHOLD = 0.5   # >50% of samples with power > 0
WHEEL_FRACTION_THRESHOLD = 0.5   # >=50% of samples with wheel speed
SMART_RECORDING_INTERVAL_S = 1.5
LAP_TIME_TOLERANCE_S = 10.0
LAP_DISTANCE_TOLERANCE_M = 50.0


@dataclass
class RawSample:
    """Single record as read from a GPX/FIT file."""
    time: Optional[datetime]
    lat: Optional[float]
    lon: Optional[float]
    elevation: float = 0.0
    power: float = 0.0
    wheel_speed: Optional[float] = None  # m/s, when a speed sensor is present


@dataclass
class RawWaypoint:
    """Named waypoint (GPX lap marker candidate)."""
    lat: float
    lon: float
    name: str
    time: Optional[datetime] = None


@dataclass
class RawTrack:
    """Everything read from one activity file, before derivation."""
    samples: List[RawSample]
    lap_times: List[datetime] = field(default_factory=list)
    waypoints: List[RawWaypoint] = field(default_factory=list)


@dataclass
class LapMarker:
    """Lap boundary matched onto the sample series."""
    index: int
    distance_m: float
    name: str


@dataclass
class ActivityData:
    """
    Aligned sample series for one recorded ride.

    All arrays share one length and index alignment. `ds[i]` is the
    distance covered between sample i-1 and sample i (`ds[0] == 0`).
    """
    t: np.ndarray              # elapsed seconds since first sample
    distance: np.ndarray       # cumulative distance (m)
    ds: np.ndarray             # per-step distance (m)
    power: np.ndarray          # W, 0 when absent
    elevation: np.ndarray      # measured elevation (m)
    velocity: np.ndarray       # smoothed ground speed (m/s)
    acceleration: np.ndarray   # m/s²
    bearing: np.ndarray        # direction of travel (0-360, 0=North)
    lat: np.ndarray
    lon: np.ndarray
    start_time: Optional[datetime] = None
    wheel_velocity: Optional[np.ndarray] = None
    wheel_acceleration: Optional[np.ndarray] = None
    lap_markers: List[LapMarker] = field(default_factory=list)
    is_smart_recording: bool = False
    avg_interval_s: float = 1.0

    def __post_init__(self):
        names = ('t', 'distance', 'ds', 'power', 'elevation', 'velocity',
                 'acceleration', 'bearing', 'lat', 'lon')
        for name in names:
            setattr(self, name, np.asarray(getattr(self, name), dtype=float))
        for name in ('wheel_velocity', 'wheel_acceleration'):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, np.asarray(value, dtype=float))

        n = len(self.t)
        for name in names + ('wheel_velocity', 'wheel_acceleration'):
            value = getattr(self, name)
            if value is not None and len(value) != n:
                raise ValueError(f"Array '{name}' has length {len(value)}, expected {n}")

        if n > 1 and not np.all(np.diff(self.t) > 0):
            raise ValueError("Sample times must be strictly increasing")

    @property
    def n_points(self) -> int:
        return len(self.t)

    @property
    def has_power_data(self) -> bool:
        if self.n_points == 0:
            return False
        return np.count_nonzero(self.power > 0) / self.n_points > POWER_FRACTION_THRESHOLD

    @property
    def has_wheel_speed(self) -> bool:
        return self.wheel_velocity is not None

    @property
    def total_distance_m(self) -> float:
        return float(self.distance[-1]) if self.n_points else 0.0

    @property
    def duration_s(self) -> float:
        return float(self.t[-1]) if self.n_points else 0.0

    def using_wheel_speed(self) -> 'ActivityData':
        """
        Copy of this series driven by wheel speed instead of GPS speed.

        Raises:
            ValueError: If no wheel speed was recorded
        """
        if not self.has_wheel_speed:
            raise ValueError("Activity has no wheel speed data")
        return replace(
            self,
            velocity=self.wheel_velocity.copy(),
            acceleration=self.wheel_acceleration.copy()
        )

    @classmethod
    def empty(cls) -> 'ActivityData':
        blank = np.zeros(0)
        return cls(t=blank, distance=blank, ds=blank, power=blank,
                   elevation=blank, velocity=blank, acceleration=blank,
                   bearing=blank, lat=blank, lon=blank)

    @classmethod
    def from_arrays(
        cls,
        t: np.ndarray,
        velocity: np.ndarray,
        power: np.ndarray,
        elevation: np.ndarray,
        acceleration: Optional[np.ndarray] = None,
        ds: Optional[np.ndarray] = None,
        bearing: Optional[np.ndarray] = None,
        lat: Optional[np.ndarray] = None,
        lon: Optional[np.ndarray] = None
    ) -> 'ActivityData':
        """
        Build a series from already-derived arrays.

        Missing step distances are integrated from velocity (trapezoid),
        missing acceleration is the centered derivative of velocity.

        Args:
            t: Elapsed seconds (strictly increasing)
            velocity: Ground speed in m/s
            power: Power in W (NaN/negative normalised to 0)
            elevation: Measured elevation in m
            acceleration: Optional acceleration in m/s²
            ds: Optional per-step distance in m
            bearing: Optional bearing in degrees (default 0)
            lat, lon: Optional coordinates (default 0)

        Returns:
            ActivityData
        """
        t = np.asarray(t, dtype=float)
        velocity = np.asarray(velocity, dtype=float)
        n = len(t)

        if ds is None:
            ds = np.zeros(n)
            if n > 1:
                ds[1:] = 0.5 * (velocity[1:] + velocity[:-1]) * np.diff(t)
        ds = np.asarray(ds, dtype=float)

        if acceleration is None:
            acceleration = centered_derivative(velocity, t)

        zeros = np.zeros(n)
        return cls(
            t=t,
            distance=np.cumsum(np.nan_to_num(ds)),
            ds=ds,
            power=normalize_power(power),
            elevation=elevation,
            velocity=velocity,
            acceleration=acceleration,
            bearing=zeros if bearing is None else bearing,
            lat=zeros if lat is None else lat,
            lon=zeros if lon is None else lon
        )


def safe_float(value: Any, fallback: Optional[float]) -> Optional[float]:
    """Parse a loosely-typed numeric field, returning fallback when invalid."""
    if value is None:
        return fallback
    try:
        result = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(result):
        return fallback
    return result


def normalize_power(power) -> np.ndarray:
    """Power series with missing, non-finite and negative values set to 0."""
    power = np.asarray(power, dtype=float)
    return np.where(np.isfinite(power) & (power > 0), power, 0.0)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates in degrees
        lat2, lon2: Second point coordinates in degrees

    Returns:
        Distance in meters
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def calculate_bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the initial bearing from point 1 to point 2.

    Args:
        lat1, lon1: Start point coordinates in degrees
        lat2, lon2: End point coordinates in degrees

    Returns:
        Bearing in degrees (0-360, 0=North, 90=East)
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lon = math.radians(lon2 - lon1)

    x = math.sin(delta_lon) * math.cos(lat2_rad)
    y = (math.cos(lat1_rad) * math.sin(lat2_rad) -
         math.sin(lat1_rad) * math.cos(lat2_rad) * math.cos(delta_lon))

    bearing = math.degrees(math.atan2(x, y))
    return (bearing + 360) % 360


# === GPX ===

def _strip_namespace(tag: str) -> str:
    if '}' in tag:
        tag = tag.split('}', 1)[1]
    if ':' in tag:
        tag = tag.split(':', 1)[1]
    return tag.lower()


def _extension_values(point: gpxpy.gpx.GPXTrackPoint) -> Dict[str, float]:
    """Numeric values found in a track point's extension elements."""
    values = {}
    for ext in point.extensions or []:
        for child in ext.iter():
            if child.text is None:
                continue
            number = safe_float(child.text.strip(), None)
            if number is not None:
                values.setdefault(_strip_namespace(child.tag), number)
    return values


def _track_from_gpx(gpx: gpxpy.gpx.GPX) -> RawTrack:
    samples = []
    for track in gpx.tracks:
        for segment in track.segments:
            for point in segment.points:
                ext = _extension_values(point)
                power = ext.get('power', ext.get('watts', 0.0))
                samples.append(RawSample(
                    time=point.time,
                    lat=point.latitude,
                    lon=point.longitude,
                    elevation=safe_float(point.elevation, 0.0),
                    power=power if power > 0 else 0.0,
                    wheel_speed=ext.get('speed')
                ))

    waypoints = []
    for i, wpt in enumerate(gpx.waypoints):
        waypoints.append(RawWaypoint(
            lat=wpt.latitude,
            lon=wpt.longitude,
            name=wpt.name or f"Lap {i + 1}",
            time=wpt.time
        ))

    return RawTrack(samples=_fill_missing_times(samples), waypoints=waypoints)


def parse_gpx_from_string(gpx_string: str) -> RawTrack:
    """
    Parse GPX content from a string.

    Args:
        gpx_string: GPX file content as string

    Returns:
        RawTrack with samples and waypoints

    Raises:
        ValueError: If the content is not valid GPX
    """
    try:
        gpx = gpxpy.parse(gpx_string)
    except gpxpy.gpx.GPXException as e:
        raise ValueError(f"GPX parse error: {e}") from e
    return _track_from_gpx(gpx)


def parse_gpx(file_path: str) -> RawTrack:
    """
    Parse a GPX file.

    Args:
        file_path: Path to GPX file

    Returns:
        RawTrack with samples and waypoints
    """
    with open(file_path, 'r', encoding='utf-8') as f:
        return parse_gpx_from_string(f.read())


def _fill_missing_times(samples: List[RawSample]) -> List[RawSample]:
    """
    Points without a timestamp are placed at 1 Hz, counted from the first
    timed point so leading untimed points fall before it.
    """
    first = next((i for i, s in enumerate(samples) if s.time is not None), None)
    if first is None:
        first, start = 0, datetime(1970, 1, 1, tzinfo=timezone.utc)
    else:
        start = samples[first].time
    for i, sample in enumerate(samples):
        if sample.time is None:
            sample.time = start + timedelta(seconds=i - first)
    return samples


# === FIT ===

def samples_from_fit_records(records: Iterable[Dict[str, Any]]) -> List[RawSample]:
    """
    Convert FIT `record` message values into raw samples.

    Records without a position are skipped. Positions are in semicircles.

    Args:
        records: Iterable of field-name -> value dicts

    Returns:
        List of RawSample
    """
    samples = []
    for vals in records:
        lat_raw = vals.get('position_lat')
        lon_raw = vals.get('position_long')
        if lat_raw is None or lon_raw is None:
            continue

        elevation = vals.get('enhanced_altitude')
        if elevation is None:
            elevation = vals.get('altitude')

        speed = vals.get('enhanced_speed')
        if speed is None:
            speed = vals.get('speed')

        timestamp = vals.get('timestamp')
        if not isinstance(timestamp, datetime):
            timestamp = None

        power = safe_float(vals.get('power'), 0.0)
        samples.append(RawSample(
            time=timestamp,
            lat=lat_raw * SEMICIRCLE_TO_DEG,
            lon=lon_raw * SEMICIRCLE_TO_DEG,
            elevation=safe_float(elevation, 0.0),
            power=power if power > 0 else 0.0,
            wheel_speed=safe_float(speed, None)
        ))
    return samples


def parse_fit(source: Union[str, bytes, io.IOBase]) -> RawTrack:
    """
    Parse a FIT file (Garmin/Wahoo binary format).

    Args:
        source: File path, raw bytes or binary file object

    Returns:
        RawTrack with samples and lap timestamps

    Raises:
        ValueError: If the FIT data cannot be decoded
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(bytes(source))

    try:
        fit = FitFile(source)
        fit.parse()
        records = [msg.get_values() for msg in fit.get_messages('record')]
        laps = [msg.get_values() for msg in fit.get_messages('lap')]
    except FitParseError as e:
        raise ValueError(f"FIT parse error: {e}") from e

    # Records without a timestamp cannot be placed in time
    samples = [s for s in samples_from_fit_records(records) if s.time is not None]
    lap_times = [lap['timestamp'] for lap in laps if isinstance(lap.get('timestamp'), datetime)]

    return RawTrack(samples=samples, lap_times=lap_times)


# === Derivation ===

def _valid_samples(samples: List[RawSample]) -> List[RawSample]:
    """Drop records with invalid positions or non-increasing timestamps."""
    valid = []
    prev_time = None
    for sample in samples:
        if sample.time is None:
            continue
        lat = safe_float(sample.lat, None)
        lon = safe_float(sample.lon, None)
        if lat is None or lon is None or abs(lat) > 90 or abs(lon) > 180:
            continue
        if prev_time is not None and sample.time <= prev_time:
            continue
        valid.append(sample)
        prev_time = sample.time
    return valid


def derive_velocity(ds: np.ndarray, t: np.ndarray) -> np.ndarray:
    """
    Smoothed ground speed from step distances.

    Raw speed is ds / max(dt, 0.05) (0 at the first sample), then the
    9-point kernel is applied.
    """
    raw = np.zeros(len(ds))
    if len(ds) > 1:
        raw[1:] = ds[1:] / np.maximum(np.diff(t), MIN_DT_S)
    return savgol9(raw)


def _wheel_speed_series(samples: List[RawSample], t: np.ndarray) -> Optional[np.ndarray]:
    """Wheel speed with gaps interpolated, or None when too sparse."""
    speeds = np.array([safe_float(s.wheel_speed, np.nan) for s in samples], dtype=float)
    valid = np.isfinite(speeds) & (speeds >= 0)
    if len(speeds) == 0 or np.count_nonzero(valid) / len(speeds) < WHEEL_FRACTION_THRESHOLD:
        return None
    return np.interp(t, t[valid], speeds[valid])


def detect_smart_recording(t: np.ndarray) -> tuple:
    """
    Detect variable-interval ("smart") recording.

    Returns:
        Tuple of (is_smart_recording, average_interval_s)
    """
    if len(t) < 2:
        return False, 1.0
    intervals = np.diff(t)
    avg_interval = float(np.mean(intervals))
    long_fraction = np.count_nonzero(intervals > SMART_RECORDING_INTERVAL_S) / len(intervals)
    is_smart = len(t) > 10 and (long_fraction > 0.2 or avg_interval > SMART_RECORDING_INTERVAL_S)
    return is_smart, round(avg_interval, 1)


def match_lap_markers(
    t: np.ndarray,
    distance: np.ndarray,
    lats: np.ndarray,
    lons: np.ndarray,
    start_time: Optional[datetime],
    lap_times: List[datetime],
    waypoints: List[RawWaypoint]
) -> List[LapMarker]:
    """
    Match lap timestamps and named waypoints onto sample indices.

    Waypoints (custom names) take precedence over lap timestamps when
    any of them match. Timed matches must fall within 10 s, position-only
    waypoints within 50 m.
    """
    if len(t) == 0:
        return []

    def elapsed(moment: datetime) -> float:
        return (moment - start_time).total_seconds()

    waypoint_markers = []
    for wpt in waypoints:
        if wpt.time is not None and start_time is not None:
            diffs = np.abs(t - elapsed(wpt.time))
            tolerance = LAP_TIME_TOLERANCE_S
        else:
            diffs = np.array([haversine_distance(wpt.lat, wpt.lon, la, lo)
                              for la, lo in zip(lats, lons)])
            tolerance = LAP_DISTANCE_TOLERANCE_M
        best = int(np.argmin(diffs))
        if diffs[best] < tolerance:
            waypoint_markers.append(LapMarker(best, float(distance[best]), wpt.name))

    if waypoint_markers:
        return sorted(waypoint_markers, key=lambda m: m.distance_m)

    markers = []
    if start_time is not None:
        for i, lap_time in enumerate(lap_times):
            diffs = np.abs(t - elapsed(lap_time))
            best = int(np.argmin(diffs))
            if diffs[best] < LAP_TIME_TOLERANCE_S:
                markers.append(LapMarker(best, float(distance[best]), f"Lap {i + 1}"))
    return sorted(markers, key=lambda m: m.distance_m)


def build_activity(track: RawTrack) -> ActivityData:
    """
    Turn parsed records into an aligned, derived sample series.

    Args:
        track: Parsed GPX/FIT content

    Returns:
        ActivityData (empty when no valid records remain)
    """
    samples = _valid_samples(track.samples)
    if not samples:
        return ActivityData.empty()

    start_time = samples[0].time
    n = len(samples)
    t = np.array([(s.time - start_time).total_seconds() for s in samples])
    lats = np.array([float(s.lat) for s in samples])
    lons = np.array([float(s.lon) for s in samples])

    ds = np.zeros(n)
    bearings = np.zeros(n)
    for i in range(1, n):
        ds[i] = haversine_distance(lats[i - 1], lons[i - 1], lats[i], lons[i])
        bearings[i] = calculate_bearing(lats[i - 1], lons[i - 1], lats[i], lons[i])
    if n > 1:
        bearings[0] = bearings[1]

    velocity = derive_velocity(ds, t)
    acceleration = centered_derivative(velocity, t)

    wheel = _wheel_speed_series(samples, t)
    wheel_velocity = savgol9(wheel) if wheel is not None else None
    wheel_acceleration = centered_derivative(wheel_velocity, t) if wheel is not None else None

    distance = np.cumsum(ds)
    is_smart, avg_interval = detect_smart_recording(t)

    return ActivityData(
        t=t,
        distance=distance,
        ds=ds,
        power=normalize_power([safe_float(s.power, 0.0) for s in samples]),
        elevation=np.array([safe_float(s.elevation, 0.0) for s in samples]),
        velocity=velocity,
        acceleration=acceleration,
        bearing=bearings,
        lat=lats,
        lon=lons,
        start_time=start_time,
        wheel_velocity=wheel_velocity,
        wheel_acceleration=wheel_acceleration,
        lap_markers=match_lap_markers(
            t, distance, lats, lons, start_time, track.lap_times, track.waypoints
        ),
        is_smart_recording=is_smart,
        avg_interval_s=avg_interval
    )


def detect_format(file_name: str, content: bytes) -> str:
    """
    Decide whether content is FIT or GPX.

    Args:
        file_name: Original file name (extension is checked first)
        content: Raw file bytes

    Returns:
        'fit' or 'gpx'

    Raises:
        ValueError: If the format is not recognised
    """
    ext = os.path.splitext(file_name)[1].lower()
    if ext == '.fit':
        return 'fit'
    if ext in ('.gpx', '.xml'):
        return 'gpx'

    # FIT files carry a ".FIT" signature at bytes 8-11
    if content[8:12] == b'.FIT':
        return 'fit'
    text = content.decode('utf-8', errors='ignore')
    if '<gpx' in text or '<trk' in text:
        return 'gpx'

    raise ValueError("Unsupported file format. Please use GPX or FIT files.")


def load_activity_from_bytes(file_name: str, content: bytes) -> ActivityData:
    """
    Parse and derive an activity from uploaded file content.

    Args:
        file_name: Original file name
        content: Raw file bytes

    Returns:
        ActivityData
    """
    if detect_format(file_name, content) == 'fit':
        track = parse_fit(content)
    else:
        track = parse_gpx_from_string(content.decode('utf-8', errors='replace'))
    return build_activity(track)


def load_activity(file_path: str) -> ActivityData:
    """
    Convenience function to load and process a GPX or FIT file.

    Args:
        file_path: Path to the activity file

    Returns:
        Processed ActivityData
    """
    with open(file_path, 'rb') as f:
        content = f.read()
    return load_activity_from_bytes(os.path.basename(file_path), content)
