"""
Kalman 滤波 / RTS 平滑测试

与逐步矩阵实现 (predict / update + np.linalg.inv) 对比 numba 内核结果。
"""

import dataclasses
import logging

import numpy as np
import pytest

from volume_ssm.models.volume_kalman import KalmanFilter, ParameterSet, build_state_space


@pytest.fixture
def system():
    par = ParameterSet(
        a_eta=0.98,
        a_mu=0.6,
        var_eta=0.05,
        var_mu=0.02,
        r=0.01,
        phi=np.array([0.4, -0.1, -0.3, -0.1, 0.1]),
        x0=[11.0, 0.0],
        V0=np.diag([0.2, 0.1]),
    )
    return build_state_space(par, n_bin=5, n_day=6)


@pytest.fixture
def observations(system):
    np.random.seed(7)
    return 11.0 + system.phi + 0.2 * np.random.randn(system.n_obs)


def matrix_predict(x, P, A, Q):
    x_pred = A @ x
    P_pred = A @ P @ A.T + Q
    return x_pred, (P_pred + P_pred.T) / 2


def matrix_update(x_pred, P_pred, y, C, r, phi):
    s = float(C @ P_pred @ C + r)
    gain = P_pred @ C / s
    x = x_pred + gain * (y - C @ x_pred - phi)
    P = P_pred - np.outer(gain, gain) * s
    return x, (P + P.T) / 2


def reference_filter(y, system):
    n = system.n_obs
    x_pred = np.empty((n, 2))
    P_pred = np.empty((n, 2, 2))
    x_filt = np.empty((n, 2))
    P_filt = np.empty((n, 2, 2))
    log_likelihood = 0.0
    x, P = system.x0, system.V0
    for t in range(n):
        if t > 0:
            x, P = matrix_predict(x, P, system.A[t - 1], system.Q[t - 1])
        x_pred[t], P_pred[t] = x, P
        s = system.C @ P @ system.C + system.r
        innovation = y[t] - system.C @ x - system.phi[t]
        log_likelihood += -0.5 * (np.log(2 * np.pi * s) + innovation**2 / s)
        x, P = matrix_update(x, P, y[t], system.C, system.r, system.phi[t])
        x_filt[t], P_filt[t] = x, P
    return x_pred, P_pred, x_filt, P_filt, log_likelihood


def reference_smoother(system, x_pred, P_pred, x_filt, P_filt):
    n = system.n_obs
    x_smooth = x_filt.copy()
    P_smooth = P_filt.copy()
    lag_one = np.zeros((n - 1, 2, 2))
    for t in range(n - 2, -1, -1):
        J = P_filt[t] @ system.A[t].T @ np.linalg.inv(P_pred[t + 1])
        x_smooth[t] = x_filt[t] + J @ (x_smooth[t + 1] - x_pred[t + 1])
        P_smooth[t] = P_filt[t] + J @ (P_smooth[t + 1] - P_pred[t + 1]) @ J.T
        lag_one[t] = P_smooth[t + 1] @ J.T
    return x_smooth, P_smooth, lag_one


class TestKalmanFilter:
    def test_filter_matches_reference(self, system, observations):
        result = KalmanFilter().filter(observations, system)
        x_pred, P_pred, x_filt, P_filt, log_likelihood = reference_filter(observations, system)

        np.testing.assert_allclose(result.x_pred, x_pred, rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(result.P_pred, P_pred, rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(result.x_filt, x_filt, rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(result.P_filt, P_filt, rtol=1e-8, atol=1e-12)
        assert result.log_likelihood == pytest.approx(log_likelihood, rel=1e-10)
        assert not result.skipped.any()

    def test_first_prediction_is_initial_state(self, system, observations):
        result = KalmanFilter().filter(observations, system)
        np.testing.assert_array_equal(result.x_pred[0], system.x0)
        np.testing.assert_array_equal(result.P_pred[0], system.V0)

    def test_forecast_uses_only_past_observations(self, system, observations):
        kf = KalmanFilter()
        base = kf.filter(observations, system)
        shocked = observations.copy()
        shocked[10] += 3.0
        moved = kf.filter(shocked, system)

        np.testing.assert_array_equal(moved.forecast[:11], base.forecast[:11])
        assert not np.allclose(moved.forecast[11], base.forecast[11])

    def test_covariances_symmetric_psd(self, system, observations):
        result = KalmanFilter().smooth(observations, system)
        for P in (result.P_pred, result.P_filt, result.P_smooth):
            np.testing.assert_array_equal(P[:, 0, 1], P[:, 1, 0])
            assert np.linalg.eigvalsh(P).min() >= -1e-12

    def test_missing_observation_skips_update(self, system, observations, caplog):
        observations = observations.copy()
        observations[3] = np.nan

        with caplog.at_level(logging.WARNING):
            result = KalmanFilter().filter(observations, system)

        assert result.skipped.tolist() == [t == 3 for t in range(system.n_obs)]
        np.testing.assert_array_equal(result.x_filt[3], result.x_pred[3])
        np.testing.assert_array_equal(result.P_filt[3], result.P_pred[3])
        assert np.isfinite(result.log_likelihood)
        assert "skipped at 1 of 30" in caplog.text

    def test_non_positive_innovation_variance_skips_update(self, system, observations):
        degenerate = dataclasses.replace(system, r=-100.0)
        result = KalmanFilter().filter(observations, degenerate)

        assert result.skipped.all()
        np.testing.assert_array_equal(result.x_filt, result.x_pred)
        assert result.log_likelihood == 0.0

    def test_wrong_number_of_observations(self, system, observations):
        with pytest.raises(ValueError, match="expected 30 observations"):
            KalmanFilter().filter(observations[:-1], system)


class TestRTSSmoother:
    def test_smoother_matches_reference(self, system, observations):
        result = KalmanFilter().smooth(observations, system)
        x_smooth, P_smooth, lag_one = reference_smoother(
            system, result.x_pred, result.P_pred, result.x_filt, result.P_filt
        )

        np.testing.assert_allclose(result.x_smooth, x_smooth, rtol=1e-8, atol=1e-10)
        np.testing.assert_allclose(result.P_smooth, P_smooth, rtol=1e-6, atol=1e-10)
        np.testing.assert_allclose(result.lag_one, lag_one, rtol=1e-6, atol=1e-10)

    def test_last_smoothed_state_equals_filtered(self, system, observations):
        result = KalmanFilter().smooth(observations, system)
        np.testing.assert_array_equal(result.x_smooth[-1], result.x_filt[-1])
        np.testing.assert_array_equal(result.P_smooth[-1], result.P_filt[-1])

    def test_smoothing_reduces_uncertainty(self, system, observations):
        result = KalmanFilter().smooth(observations, system)
        filt_trace = np.trace(result.P_filt, axis1=1, axis2=2)
        smooth_trace = np.trace(result.P_smooth, axis1=1, axis2=2)
        assert np.all(smooth_trace <= filt_trace + 1e-12)

    def test_run_modes(self, system, observations):
        kf = KalmanFilter()
        filtered = kf(observations, system, mode="filter")
        smoothed = kf.run(observations, system, mode="smoother")

        assert filtered.x_smooth is None
        with pytest.raises(RuntimeError):
            filtered.smoothed
        np.testing.assert_array_equal(smoothed.smoothed, smoothed.x_smooth)
        np.testing.assert_array_equal(filtered.x_pred, smoothed.x_pred)
        with pytest.raises(ValueError, match="mode"):
            kf.run(observations, system, mode="backward")
