"""
Tests for diagnostics module.
"""

import pytest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from diagnostics import (
    rmse, mae, bias, drift, r_squared, normalized_rmse, trend_slope_per_km,
    lag1_autocorrelation, compute_residual_diagnostics, ResidualDiagnostics
)


class TestBasicStatistics:
    """Tests for rmse, mae, bias and drift."""

    def test_rmse(self):
        assert rmse([3.0, -4.0]) == pytest.approx(np.sqrt(12.5))

    def test_mae_and_bias(self):
        residual = [1.0, -3.0, 2.0]
        assert mae(residual) == pytest.approx(2.0)
        assert bias(residual) == pytest.approx(0.0)

    def test_drift(self):
        assert drift([0.5, 2.0, -1.0, 3.0]) == pytest.approx(2.5)

    def test_window_applied(self):
        residual = np.array([100.0, 1.0, -1.0, 100.0])
        assert rmse(residual, 1, 3) == pytest.approx(1.0)
        assert bias(residual, 1, 3) == pytest.approx(0.0)

    def test_empty_window(self):
        assert rmse([1.0, 2.0], 1, 1) == 0.0
        assert mae([], 0) == 0.0
        assert drift([5.0]) == 0.0


class TestRSquared:
    """Tests for R² edge cases."""

    def test_perfect_fit(self):
        assert r_squared(np.zeros(10), np.linspace(0, 5, 10)) == 1.0

    def test_perfect_fit_on_flat_ground(self):
        """Zero residual scores 1 even when the elevation is flat."""
        assert r_squared(np.zeros(10), np.full(10, 50.0)) == 1.0

    def test_flat_elevation_with_error(self):
        assert r_squared(np.full(10, 0.5), np.full(10, 50.0)) == 0.0

    def test_known_value(self):
        elevation = np.array([0.0, 1.0, 2.0, 3.0])
        residual = np.array([0.5, -0.5, 0.5, -0.5])
        # ss_tot = 5, ss_res = 1
        assert r_squared(residual, elevation) == pytest.approx(0.8)

    def test_uses_window_mean(self):
        elevation = np.array([1000.0, 0.0, 1.0, 2.0, 3.0])
        residual = np.array([50.0, 0.5, -0.5, 0.5, -0.5])
        assert r_squared(residual, elevation, 1) == pytest.approx(0.8)


class TestShapeStatistics:
    """Tests for normalized RMSE, trend and autocorrelation."""

    def test_normalized_rmse(self):
        elevation = np.array([10.0, 20.0, 30.0])
        residual = np.array([1.0, -1.0, 1.0])
        assert normalized_rmse(residual, elevation) == pytest.approx(1.0 / 20.0)

    def test_normalized_rmse_flat_floor(self):
        value = normalized_rmse(np.full(5, 1e-6), np.zeros(5))
        assert np.isfinite(value)
        assert value == pytest.approx(1.0)

    def test_trend_slope_with_distance(self):
        distance = np.linspace(0, 2000, 21)
        residual = 0.003 * distance      # 3 m per km
        assert trend_slope_per_km(residual, distance) == pytest.approx(3.0)

    def test_trend_slope_without_distance(self):
        residual = 0.01 * np.arange(50)
        assert trend_slope_per_km(residual) == pytest.approx(10.0)

    def test_trend_slope_stationary_distance(self):
        assert trend_slope_per_km([1.0, 2.0, 3.0], [5.0, 5.0, 5.0]) == 0.0

    def test_autocorrelation_of_smooth_drift(self):
        residual = np.sin(np.linspace(0, np.pi, 100))
        assert lag1_autocorrelation(residual) > 0.9

    def test_autocorrelation_of_alternating(self):
        residual = np.array([1.0, -1.0] * 20)
        assert lag1_autocorrelation(residual) < -0.9

    def test_autocorrelation_constant(self):
        assert lag1_autocorrelation(np.full(10, 2.0)) == 0.0


class TestResidualDiagnostics:
    """Tests for the combined summary."""

    def test_all_fields(self):
        elevation = np.linspace(100, 110, 50)
        residual = 0.1 * np.sin(np.arange(50) / 5.0)
        diag = compute_residual_diagnostics(residual, elevation, distance=np.arange(50) * 10.0)
        assert diag.n_points == 50
        assert diag.rmse == pytest.approx(rmse(residual))
        assert diag.r2 == pytest.approx(r_squared(residual, elevation))
        assert set(diag.to_dict()) == {
            'rmse', 'mae', 'bias', 'drift', 'r2', 'normalized_rmse',
            'trend_slope_m_per_km', 'lag1_autocorrelation', 'n_points'
        }

    def test_short_window_is_zero(self):
        diag = compute_residual_diagnostics(np.array([5.0, 1.0]), np.zeros(2), 1, 2)
        assert diag == ResidualDiagnostics(n_points=1)

    def test_always_finite(self):
        diag = compute_residual_diagnostics(np.zeros(20), np.zeros(20))
        assert all(np.isfinite(v) for v in diag.to_dict().values())


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
