"""
Tests for methods module.
"""

import pytest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from methods import (
    RunInput, solve_chung, solve_shen, solve_climb, solve_segmented, chung_quality,
    remove_outliers, WindowFit, check_steady_acceleration, run_method,
    ChungMethod, ShenMethod, ClimbMethod, SweepMethod,
    METHOD_CHUNG, METHOD_SHEN, METHOD_CLIMB
)
from optimizer import ParameterBounds, EstimatorConfig, FitResult, BoundsError
from physics import TrialParameters
from segmentation import Segment
from sweep import SweepGrid, SweepGridSpec, run_sweep
from ride_factory import (
    make_ride, with_simulated_elevation, varied_ride, flat_acceleration_run, level_at,
    TRUE_PARAMS
)


GUESS = TRUE_PARAMS.with_coefficients(0.25, 0.004)


class TestChung:
    """Tests for the single-segment solver."""

    @pytest.fixture(scope='class')
    def ride(self):
        return varied_ride(600)

    def test_recovers_true_parameters(self, ride):
        fit = solve_chung(ride, Segment.full(ride), GUESS)
        assert fit.method == METHOD_CHUNG
        assert fit.cda == pytest.approx(0.30, abs=0.002)
        assert fit.crr == pytest.approx(0.005, abs=0.0002)
        assert fit.rmse < 0.05
        assert fit.r2 > 0.99
        assert not fit.is_railing
        assert fit.quality > 0

    def test_reports_segment_stats(self, ride):
        fit = solve_chung(ride, Segment(100, 400), GUESS)
        assert fit.avg_speed_kmh == pytest.approx(np.mean(ride.velocity[100:400]) * 3.6)
        assert fit.speed_variance == pytest.approx(np.var(ride.velocity[100:400]))
        assert fit.bounds == ParameterBounds()

    @pytest.mark.parametrize("bounds", [
        ParameterBounds(0.35, 0.5, 0.001, 0.015),
        ParameterBounds(0.1, 0.6, 0.006, 0.008),
        ParameterBounds(0.28, 0.29, 0.0049, 0.0051),
    ])
    def test_result_inside_bounds(self, ride, bounds):
        fit = solve_chung(ride, Segment.full(ride), GUESS, bounds,
                          EstimatorConfig(fast_mode=True))
        assert bounds.contains(fit.cda, fit.crr)

    def test_railing_flagged(self, ride):
        bounds = ParameterBounds(0.1, 0.25, 0.001, 0.015)
        fit = solve_chung(ride, Segment.full(ride), GUESS, bounds)
        assert fit.is_railing
        assert fit.railing_details.cda_at_upper
        assert fit.cda == pytest.approx(0.25, abs=0.0015)

    def test_degenerate_segment(self, ride):
        fit = solve_chung(ride, Segment(5, 6), GUESS)
        assert fit.empty_range
        assert fit.rmse == 0
        assert fit.evaluations == 0
        assert (fit.cda, fit.crr) == (0.25, 0.004)

    def test_invalid_bounds_fall_back(self, ride):
        messages = []
        fit = solve_chung(ride, Segment.full(ride), GUESS,
                          ParameterBounds(0.5, 0.2, 0.001, 0.015),
                          EstimatorConfig(fast_mode=True, log_callback=messages.append))
        assert fit.bounds == ParameterBounds()
        assert any("Invalid CdA bounds" in m for m in messages)

    def test_strict_bounds_raise(self, ride):
        with pytest.raises(BoundsError):
            solve_chung(ride, Segment.full(ride), GUESS,
                        ParameterBounds(0.5, 0.2, 0.001, 0.015),
                        EstimatorConfig(strict_bounds=True))

    def test_invalid_params_raise(self, ride):
        with pytest.raises(ValueError):
            solve_chung(ride, Segment.full(ride), TrialParameters(mass_kg=-5))

    def test_quality_score(self):
        assert chung_quality(0.0, 0.0, 0.0) == pytest.approx(1.0)
        assert chung_quality(1.0, 4.0, 4.0) == pytest.approx(0.5 * 3 * 2)


class TestShen:
    """Tests for the dual acceleration-run solver."""

    @pytest.fixture(scope='class')
    def runs(self):
        slow = flat_acceleration_run(4.0, 8.0)
        fast = flat_acceleration_run(9.0, 14.0)
        return RunInput(slow, Segment.full(slow)), RunInput(fast, Segment.full(fast))

    def test_recovers_true_parameters(self, runs):
        slow, fast = runs
        fit = solve_shen(slow, fast, GUESS)
        assert fit.method == METHOD_SHEN
        assert fit.cda == pytest.approx(0.30, abs=0.005)
        assert fit.crr == pytest.approx(0.005, abs=0.0005)
        assert len(fit.runs) == 2
        assert fit.runs[0].avg_speed_kmh < fit.runs[1].avg_speed_kmh

    def test_true_parameters_give_level_traces(self, runs):
        slow, fast = runs
        fit = solve_shen(slow, fast, GUESS)
        assert abs(fit.runs[0].net_elevation_change) < 0.05
        assert abs(fit.runs[1].net_elevation_change) < 0.05
        assert fit.bow < 0.05

    def test_single_run_is_ambiguous(self, runs):
        """A sweep on one run leaves a long valley; the joint solve pins it down."""
        slow, fast = runs
        spec = SweepGridSpec(0.15, 0.45, 40, 0.002, 0.008, 40)
        grid = run_sweep(slow.activity, slow.segment, TRUE_PARAMS, spec)
        near = grid.rmse_grid <= np.nanmin(grid.rmse_grid) + 0.1
        cda_grid = np.broadcast_to(grid.cda_values[np.newaxis, :], grid.shape)
        spread = cda_grid[near].max() - cda_grid[near].min()

        joint = solve_shen(slow, fast, GUESS)
        assert spread >= 0.05
        assert abs(joint.cda - 0.30) < spread

    def test_degenerate_run(self, runs):
        slow, fast = runs
        fit = solve_shen(slow, RunInput(fast.activity, Segment(3, 3)), GUESS)
        assert fit.empty_range
        assert fit.reason.startswith("fast run")

    def test_sample_offset_override(self, runs):
        slow, _ = runs
        run = RunInput(slow.activity, slow.segment, sample_offset=2)
        assert run.params_for(TRUE_PARAMS).sample_offset == 2
        assert slow.params_for(TRUE_PARAMS) is TRUE_PARAMS


class TestClimb:
    """Tests for the two-ascent solver."""

    @pytest.fixture(scope='class')
    def runs(self):
        t = np.arange(300, dtype=float)
        low = with_simulated_elevation(
            make_ride(5.0 + np.sin(2 * np.pi * t / 60), 300.0), TRUE_PARAMS, 200.0)
        high = with_simulated_elevation(
            make_ride(9.0 + 1.5 * np.sin(2 * np.pi * t / 80), 400.0), TRUE_PARAMS, 200.0)
        return RunInput(low, Segment.full(low)), RunInput(high, Segment.full(high))

    def test_recovers_true_parameters(self, runs):
        low, high = runs
        fit = solve_climb(low, high, GUESS)
        assert fit.method == METHOD_CLIMB
        assert fit.cda == pytest.approx(0.30, abs=0.005)
        assert fit.crr == pytest.approx(0.005, abs=0.0005)
        assert fit.r2 > 0.99

    def test_per_run_summaries(self, runs):
        low, high = runs
        fit = solve_climb(low, high, GUESS)
        assert [r.start_idx for r in fit.runs] == [0, 0]
        assert all(r.rmse < 0.1 for r in fit.runs)

    def test_degenerate_run(self, runs):
        low, high = runs
        fit = solve_climb(RunInput(low.activity, Segment(10, 11)), high, GUESS)
        assert fit.empty_range
        assert fit.reason.startswith("low-speed run")


class TestSegmented:
    """Tests for the per-window solve."""

    def test_combines_windows(self):
        ride = level_at(varied_ride(600), np.arange(0, 600, 120))
        result = solve_segmented(ride, Segment.full(ride), GUESS, window_size=120)
        assert result.has_result
        assert len(result.windows) == 5
        assert result.cda == pytest.approx(0.30, abs=0.003)
        assert result.crr == pytest.approx(0.005, abs=0.0003)

    def test_no_windows(self):
        ride = varied_ride(60)
        result = solve_segmented(ride, Segment(0, 5), GUESS)
        assert not result.has_result
        assert result.windows == []

    def test_remove_outliers(self):
        windows = [
            WindowFit(Segment(0, 10), FitResult(cda=c, crr=0.005, rmse=0.1, r2=0.9, method='chung'))
            for c in [0.30, 0.31, 0.29, 0.30, 0.90]
        ]
        kept = remove_outliers(windows, 'cda')
        assert [w.fit.cda for w in kept] == [0.30, 0.31, 0.29, 0.30]

    def test_remove_outliers_needs_four(self):
        windows = [
            WindowFit(Segment(0, 10), FitResult(cda=c, crr=0.005, rmse=0.1, r2=0.9, method='chung'))
            for c in [0.30, 0.31, 0.90]
        ]
        assert len(remove_outliers(windows, 'cda')) == 3


class TestSteadyAcceleration:
    """Tests for acceleration-run suitability."""

    def test_good_run(self):
        run = flat_acceleration_run(4.0, 8.0)
        check = check_steady_acceleration(run, Segment.full(run))
        assert check.suitable
        assert check.direction == 'accelerating'
        assert check.score == pytest.approx(0.8)

    def test_deceleration(self):
        run = flat_acceleration_run(12.0, 6.0)
        check = check_steady_acceleration(run, Segment.full(run))
        assert check.suitable
        assert check.direction == 'decelerating'
        assert check.score == pytest.approx(1.0)

    def test_small_speed_change(self):
        run = flat_acceleration_run(5.0, 6.0)
        check = check_steady_acceleration(run, Segment.full(run))
        assert not check.suitable
        assert "too small" in check.reason

    def test_too_short(self):
        run = flat_acceleration_run(4.0, 8.0)
        check = check_steady_acceleration(run, Segment(0, 10))
        assert not check.suitable
        assert check.reason == "Not enough data points"


class TestRunMethod:
    """Tests for method dispatch."""

    def test_chung(self):
        ride = varied_ride(300)
        fit = run_method(ChungMethod(ride, Segment.full(ride)), GUESS,
                         config=EstimatorConfig(fast_mode=True))
        assert isinstance(fit, FitResult)
        assert fit.method == METHOD_CHUNG

    def test_shen_and_climb(self):
        slow = flat_acceleration_run(4.0, 8.0)
        fast = flat_acceleration_run(9.0, 14.0)
        a, b = RunInput(slow, Segment.full(slow)), RunInput(fast, Segment.full(fast))
        assert run_method(ShenMethod(a, b), GUESS).method == METHOD_SHEN
        assert run_method(ClimbMethod(a, b), GUESS).method == METHOD_CLIMB

    def test_sweep(self):
        ride = varied_ride(300)
        spec = SweepGridSpec(0.2, 0.4, 10, 0.003, 0.007, 10)
        grid = run_method(SweepMethod(ride, Segment.full(ride), spec), TRUE_PARAMS)
        assert isinstance(grid, SweepGrid)
        assert grid.shape == (11, 11)

    def test_unknown_variant(self):
        with pytest.raises(TypeError):
            run_method(object())


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
