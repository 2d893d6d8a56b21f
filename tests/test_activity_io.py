"""
Tests for activity_io module.
"""

import pytest
import numpy as np
import sys
import os
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from activity_io import (
    ActivityData, RawSample, RawTrack, RawWaypoint,
    haversine_distance, calculate_bearing, safe_float, normalize_power,
    parse_gpx_from_string, parse_fit, samples_from_fit_records, build_activity,
    derive_velocity, detect_smart_recording, match_lap_markers, detect_format,
    load_activity_from_bytes, SEMICIRCLE_TO_DEG
)


START = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)


def make_gpx(n_points: int = 30, step_deg: float = 0.0001, power: float = 250,
             with_times: bool = True, waypoint: str = "") -> str:
    """Straight northbound track at 1 Hz with power extensions."""
    points = []
    for i in range(n_points):
        time_tag = ""
        if with_times:
            time_tag = f"<time>{(START + timedelta(seconds=i)).strftime('%Y-%m-%dT%H:%M:%SZ')}</time>"
        points.append(
            f'<trkpt lat="{45.0 + i * step_deg:.7f}" lon="7.0">'
            f'<ele>{100 + i * 0.1:.1f}</ele>{time_tag}'
            f'<extensions><power>{power}</power></extensions></trkpt>'
        )
    return f'''<?xml version="1.0" encoding="UTF-8"?>
<gpx version="1.1" creator="test" xmlns="http://www.topografix.com/GPX/1/1">
{waypoint}
<trk><name>Test</name><trkseg>
{''.join(points)}
</trkseg></trk>
</gpx>'''


class TestGeodesy:
    """Tests for distance and bearing."""

    def test_same_point(self):
        assert haversine_distance(45.0, 7.0, 45.0, 7.0) == 0.0

    def test_one_degree_latitude(self):
        """One degree of latitude is about 111.2 km."""
        d = haversine_distance(0.0, 0.0, 1.0, 0.0)
        assert d == pytest.approx(111195, rel=0.001)

    def test_bearing_north(self):
        assert calculate_bearing(45.0, 7.0, 45.1, 7.0) == pytest.approx(0.0, abs=1e-6)

    def test_bearing_east(self):
        assert calculate_bearing(0.0, 0.0, 0.0, 1.0) == pytest.approx(90.0)

    def test_bearing_west_is_positive(self):
        assert calculate_bearing(0.0, 0.0, 0.0, -1.0) == pytest.approx(270.0)


class TestNormalisation:
    """Tests for loosely-typed numeric fields."""

    def test_safe_float(self):
        assert safe_float("12.5", 0.0) == 12.5
        assert safe_float(None, 0.0) == 0.0
        assert safe_float("abc", 1.0) == 1.0
        assert safe_float(float('nan'), 3.0) == 3.0

    def test_normalize_power(self):
        power = normalize_power([250, -5, np.nan, 0, 300])
        np.testing.assert_array_equal(power, [250, 0, 0, 0, 300])


class TestActivityData:
    """Tests for the sample series container."""

    def test_from_arrays_derives_distance(self):
        t = np.arange(5, dtype=float)
        data = ActivityData.from_arrays(t, np.full(5, 10.0), np.full(5, 200.0), np.zeros(5))
        assert data.ds[0] == 0
        np.testing.assert_allclose(data.ds[1:], 10.0)
        assert data.total_distance_m == pytest.approx(40.0)
        np.testing.assert_allclose(data.acceleration, 0.0)

    def test_mismatched_lengths_rejected(self):
        with pytest.raises(ValueError):
            ActivityData.from_arrays(np.arange(5), np.ones(4), np.ones(5), np.zeros(5))

    def test_non_increasing_time_rejected(self):
        with pytest.raises(ValueError):
            ActivityData.from_arrays([0, 1, 1, 2], np.ones(4), np.ones(4), np.zeros(4))

    def test_has_power_data_threshold(self):
        t = np.arange(10, dtype=float)
        mostly = ActivityData.from_arrays(t, np.ones(10), [200] * 6 + [0] * 4, np.zeros(10))
        half = ActivityData.from_arrays(t, np.ones(10), [200] * 5 + [0] * 5, np.zeros(10))
        assert mostly.has_power_data
        assert not half.has_power_data

    def test_using_wheel_speed_requires_data(self):
        data = ActivityData.from_arrays(np.arange(3), np.ones(3), np.ones(3), np.zeros(3))
        with pytest.raises(ValueError):
            data.using_wheel_speed()

    def test_empty(self):
        data = ActivityData.empty()
        assert data.n_points == 0
        assert not data.has_power_data
        assert data.total_distance_m == 0.0


class TestDerivation:
    """Tests for velocity and recording-mode derivation."""

    def test_velocity_guards_small_dt(self):
        ds = np.array([0.0, 1.0])
        t = np.array([0.0, 0.01])
        assert derive_velocity(ds, t)[1] == pytest.approx(1.0 / 0.05)

    def test_smart_recording_detected(self):
        t = np.cumsum([0] + [3.0] * 20)
        is_smart, avg = detect_smart_recording(t)
        assert is_smart
        assert avg == 3.0

    def test_one_second_recording(self):
        is_smart, avg = detect_smart_recording(np.arange(100, dtype=float))
        assert not is_smart
        assert avg == 1.0

    def test_invalid_records_skipped(self):
        samples = [
            RawSample(START, 45.0, 7.0, 100, 200),
            RawSample(START + timedelta(seconds=1), None, 7.0, 100, 200),
            RawSample(START + timedelta(seconds=1), 45.0001, 7.0, 100, 200),
            RawSample(START + timedelta(seconds=1), 45.0002, 7.0, 100, 200),  # duplicate time
            RawSample(START + timedelta(seconds=2), 95.0, 7.0, 100, 200),     # invalid latitude
            RawSample(START + timedelta(seconds=3), 45.0003, 7.0, 100, 200),
        ]
        data = build_activity(RawTrack(samples))
        assert data.n_points == 3
        np.testing.assert_allclose(data.t, [0, 1, 3])

    def test_wheel_speed_pair(self):
        samples = [
            RawSample(START + timedelta(seconds=i), 45.0 + i * 0.0001, 7.0, 100, 200,
                      wheel_speed=11.0 if i % 4 else None)
            for i in range(20)
        ]
        data = build_activity(RawTrack(samples))
        assert data.has_wheel_speed
        np.testing.assert_allclose(data.wheel_velocity, 11.0)
        wheel = data.using_wheel_speed()
        np.testing.assert_allclose(wheel.velocity, 11.0)

    def test_sparse_wheel_speed_ignored(self):
        samples = [
            RawSample(START + timedelta(seconds=i), 45.0 + i * 0.0001, 7.0, 100, 200,
                      wheel_speed=11.0 if i < 3 else None)
            for i in range(20)
        ]
        assert not build_activity(RawTrack(samples)).has_wheel_speed


class TestGpxParsing:
    """Tests for GPX ingestion."""

    def test_parse_track(self):
        data = build_activity(parse_gpx_from_string(make_gpx(30)))
        assert data.n_points == 30
        assert data.has_power_data
        np.testing.assert_allclose(data.power, 250)
        # 0.0001° latitude ≈ 11.12 m per second
        assert data.velocity[15] == pytest.approx(11.12, rel=0.01)
        assert data.bearing[10] == pytest.approx(0.0, abs=1e-6)
        assert data.elevation[10] == pytest.approx(101.0)

    def test_missing_times_synthesised(self):
        data = build_activity(parse_gpx_from_string(make_gpx(12, with_times=False)))
        np.testing.assert_allclose(data.t, np.arange(12))

    def test_leading_untimed_points_kept(self):
        gpx = make_gpx(10)
        for i in range(2):
            stamp = (START + timedelta(seconds=i)).strftime('%Y-%m-%dT%H:%M:%SZ')
            gpx = gpx.replace(f"<time>{stamp}</time>", "")
        data = build_activity(parse_gpx_from_string(gpx))
        assert data.n_points == 10
        np.testing.assert_allclose(data.t, np.arange(10))

    def test_invalid_gpx_raises(self):
        with pytest.raises(ValueError):
            parse_gpx_from_string("<gpx><trk>")

    def test_waypoint_lap_marker(self):
        waypoint = ('<wpt lat="45.0010000" lon="7.0"><time>'
                    f"{(START + timedelta(seconds=10)).strftime('%Y-%m-%dT%H:%M:%SZ')}"
                    '</time><name>Turn</name></wpt>')
        data = build_activity(parse_gpx_from_string(make_gpx(30, waypoint=waypoint)))
        assert len(data.lap_markers) == 1
        assert data.lap_markers[0].index == 10
        assert data.lap_markers[0].name == "Turn"


class TestFitRecords:
    """Tests for FIT record conversion."""

    def test_semicircles_converted(self):
        lat_sc = int(45.0 / SEMICIRCLE_TO_DEG)
        lon_sc = int(7.0 / SEMICIRCLE_TO_DEG)
        records = [
            {'timestamp': START, 'position_lat': lat_sc, 'position_long': lon_sc,
             'enhanced_altitude': 250.0, 'altitude': 1.0, 'power': 300, 'speed': 9.5},
            {'timestamp': START + timedelta(seconds=1), 'position_lat': None,
             'position_long': lon_sc, 'power': 300},
        ]
        samples = samples_from_fit_records(records)
        assert len(samples) == 1
        assert samples[0].lat == pytest.approx(45.0, abs=1e-6)
        assert samples[0].lon == pytest.approx(7.0, abs=1e-6)
        assert samples[0].elevation == 250.0
        assert samples[0].power == 300
        assert samples[0].wheel_speed == 9.5

    def test_missing_power_defaults_to_zero(self):
        records = [{'timestamp': START, 'position_lat': 0, 'position_long': 0, 'power': None}]
        assert samples_from_fit_records(records)[0].power == 0.0

    def test_invalid_fit_raises(self):
        with pytest.raises(ValueError):
            parse_fit(b"this is not a fit file at all")


class TestLapMatching:
    """Tests for lap marker matching."""

    def test_lap_times_within_tolerance(self):
        t = np.arange(100, dtype=float)
        distance = t * 10
        laps = [START + timedelta(seconds=30), START + timedelta(seconds=500)]
        markers = match_lap_markers(t, distance, np.zeros(100), np.zeros(100), START, laps, [])
        assert len(markers) == 1
        assert markers[0].index == 30
        assert markers[0].distance_m == 300

    def test_waypoints_take_precedence(self):
        t = np.arange(100, dtype=float)
        lats = 45.0 + t * 0.0001
        wpt = RawWaypoint(lat=45.005, lon=7.0, name="Cone")
        markers = match_lap_markers(t, t * 11, lats, np.full(100, 7.0), START,
                                    [START + timedelta(seconds=20)], [wpt])
        assert [m.name for m in markers] == ["Cone"]
        assert markers[0].index == 50


class TestFormatDetection:
    """Tests for file format detection."""

    def test_by_extension(self):
        assert detect_format("ride.FIT", b"") == 'fit'
        assert detect_format("ride.gpx", b"") == 'gpx'

    def test_by_fit_signature(self):
        header = bytes([14, 16, 0, 0, 0, 0, 0, 0]) + b'.FIT' + b'\x00\x00'
        assert detect_format("upload", header) == 'fit'

    def test_by_gpx_content(self):
        assert detect_format("upload", make_gpx(3).encode()) == 'gpx'

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            detect_format("notes.txt", b"hello world")

    def test_load_from_bytes(self):
        data = load_activity_from_bytes("ride.gpx", make_gpx(20).encode())
        assert data.n_points == 20


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
