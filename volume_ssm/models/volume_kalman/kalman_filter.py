"""
Kalman filter and Rauch-Tung-Striebel smoother for the two-state volume model.

The state dimension is fixed at 2 and the observation is scalar, so the
recursions are written with explicit 2x2 formulas inside numba kernels:

    predict:  x_{t|t-1} = A_{t-1} x_{t-1|t-1}
              P_{t|t-1} = A_{t-1} P_{t-1|t-1} A_{t-1}^T + Q_{t-1}
    update:   s_t = C P_{t|t-1} C^T + r
              K_t = P_{t|t-1} C^T / s_t
              x_{t|t} = x_{t|t-1} + K_t (y_t - C x_{t|t-1} - phi_t)
              P_{t|t} = P_{t|t-1} - K_t s_t K_t^T

Reference: Shumway & Stoffer, "Time Series Analysis and Its Applications"
"""

import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np
from numba import njit

from .state_space import StateSpaceSystem

logger = logging.getLogger(__name__)

LOG_2PI = math.log(2.0 * math.pi)
# Added to the diagonal of a singular predicted covariance before inversion
NUMERICAL_JITTER = 1e-12


@njit(cache=True)
def _filter_kernel(y, a, q, c, r, phi, x0, V0):
    n = y.shape[0]
    x_pred = np.empty((n, 2))
    P_pred = np.empty((n, 2, 2))
    x_filt = np.empty((n, 2))
    P_filt = np.empty((n, 2, 2))
    skipped = np.zeros(n, dtype=np.bool_)
    log_likelihood = 0.0
    c0 = c[0]
    c1 = c[1]

    for t in range(n):
        if t == 0:
            xp0 = x0[0]
            xp1 = x0[1]
            p00 = V0[0, 0]
            p01 = 0.5 * (V0[0, 1] + V0[1, 0])
            p11 = V0[1, 1]
        else:
            # A is diagonal
            a0 = a[t - 1, 0]
            a1 = a[t - 1, 1]
            xp0 = a0 * x_filt[t - 1, 0]
            xp1 = a1 * x_filt[t - 1, 1]
            p00 = a0 * a0 * P_filt[t - 1, 0, 0] + q[t - 1, 0]
            p01 = a0 * a1 * P_filt[t - 1, 0, 1]
            p11 = a1 * a1 * P_filt[t - 1, 1, 1] + q[t - 1, 1]

        x_pred[t, 0] = xp0
        x_pred[t, 1] = xp1
        P_pred[t, 0, 0] = p00
        P_pred[t, 0, 1] = p01
        P_pred[t, 1, 0] = p01
        P_pred[t, 1, 1] = p11

        pc0 = p00 * c0 + p01 * c1
        pc1 = p01 * c0 + p11 * c1
        s = c0 * pc0 + c1 * pc1 + r

        if np.isnan(y[t]) or not (s > 0.0):
            skipped[t] = True
            x_filt[t, 0] = xp0
            x_filt[t, 1] = xp1
            P_filt[t, 0, 0] = p00
            P_filt[t, 0, 1] = p01
            P_filt[t, 1, 0] = p01
            P_filt[t, 1, 1] = p11
            continue

        innovation = y[t] - (c0 * xp0 + c1 * xp1) - phi[t]
        k0 = pc0 / s
        k1 = pc1 / s

        x_filt[t, 0] = xp0 + k0 * innovation
        x_filt[t, 1] = xp1 + k1 * innovation

        f01 = p01 - k0 * pc1
        P_filt[t, 0, 0] = p00 - k0 * pc0
        P_filt[t, 0, 1] = f01
        P_filt[t, 1, 0] = f01
        P_filt[t, 1, 1] = p11 - k1 * pc1

        log_likelihood += -0.5 * (LOG_2PI + np.log(s) + innovation * innovation / s)

    return x_pred, P_pred, x_filt, P_filt, skipped, log_likelihood


@njit(cache=True)
def _smoother_kernel(a, x_pred, P_pred, x_filt, P_filt):
    n = x_filt.shape[0]
    x_smooth = np.empty((n, 2))
    P_smooth = np.empty((n, 2, 2))
    lag_one = np.zeros((max(n - 1, 0), 2, 2))

    x_smooth[n - 1, 0] = x_filt[n - 1, 0]
    x_smooth[n - 1, 1] = x_filt[n - 1, 1]
    P_smooth[n - 1, 0, 0] = P_filt[n - 1, 0, 0]
    P_smooth[n - 1, 0, 1] = P_filt[n - 1, 0, 1]
    P_smooth[n - 1, 1, 0] = P_filt[n - 1, 0, 1]
    P_smooth[n - 1, 1, 1] = P_filt[n - 1, 1, 1]

    for t in range(n - 2, -1, -1):
        a0 = a[t, 0]
        a1 = a[t, 1]

        # M = P_{t|t} A_t^T
        m00 = P_filt[t, 0, 0] * a0
        m01 = P_filt[t, 0, 1] * a1
        m10 = P_filt[t, 1, 0] * a0
        m11 = P_filt[t, 1, 1] * a1

        # inverse of P_{t+1|t}
        p00 = P_pred[t + 1, 0, 0]
        p01 = P_pred[t + 1, 0, 1]
        p11 = P_pred[t + 1, 1, 1]
        det = p00 * p11 - p01 * p01
        if not (det > 0.0):
            p00 += NUMERICAL_JITTER
            p11 += NUMERICAL_JITTER
            det = p00 * p11 - p01 * p01
        if det > 0.0:
            i00 = p11 / det
            i01 = -p01 / det
            i11 = p00 / det
        else:
            i00 = 0.0
            i01 = 0.0
            i11 = 0.0

        # smoother gain J_t = P_{t|t} A_t^T P_{t+1|t}^{-1}
        j00 = m00 * i00 + m01 * i01
        j01 = m00 * i01 + m01 * i11
        j10 = m10 * i00 + m11 * i01
        j11 = m10 * i01 + m11 * i11

        d0 = x_smooth[t + 1, 0] - x_pred[t + 1, 0]
        d1 = x_smooth[t + 1, 1] - x_pred[t + 1, 1]
        x_smooth[t, 0] = x_filt[t, 0] + j00 * d0 + j01 * d1
        x_smooth[t, 1] = x_filt[t, 1] + j10 * d0 + j11 * d1

        # P_{t|T} = P_{t|t} + J_t (P_{t+1|T} - P_{t+1|t}) J_t^T
        e00 = P_smooth[t + 1, 0, 0] - P_pred[t + 1, 0, 0]
        e01 = P_smooth[t + 1, 0, 1] - P_pred[t + 1, 0, 1]
        e11 = P_smooth[t + 1, 1, 1] - P_pred[t + 1, 1, 1]
        g00 = j00 * e00 + j01 * e01
        g01 = j00 * e01 + j01 * e11
        g10 = j10 * e00 + j11 * e01
        g11 = j10 * e01 + j11 * e11

        s01 = P_filt[t, 0, 1] + g00 * j10 + g01 * j11
        P_smooth[t, 0, 0] = P_filt[t, 0, 0] + g00 * j00 + g01 * j01
        P_smooth[t, 0, 1] = s01
        P_smooth[t, 1, 0] = s01
        P_smooth[t, 1, 1] = P_filt[t, 1, 1] + g10 * j10 + g11 * j11

        # Cov(x_{t+1}, x_t | y_{1:T}) = P_{t+1|T} J_t^T
        q00 = P_smooth[t + 1, 0, 0]
        q01 = P_smooth[t + 1, 0, 1]
        q11 = P_smooth[t + 1, 1, 1]
        lag_one[t, 0, 0] = q00 * j00 + q01 * j01
        lag_one[t, 0, 1] = q00 * j10 + q01 * j11
        lag_one[t, 1, 0] = q01 * j00 + q11 * j01
        lag_one[t, 1, 1] = q01 * j10 + q11 * j11

    return x_smooth, P_smooth, lag_one


@dataclass(frozen=True)
class KalmanResult:
    """Working set of one filter / smoother run (0-based time index)."""

    x_pred: np.ndarray  # x_{t|t-1}, (N, 2)
    P_pred: np.ndarray  # P_{t|t-1}, (N, 2, 2)
    x_filt: np.ndarray  # x_{t|t}, (N, 2)
    P_filt: np.ndarray  # P_{t|t}, (N, 2, 2)
    skipped: np.ndarray  # (N,) bool, update step skipped
    log_likelihood: float
    x_smooth: Optional[np.ndarray] = None  # x_{t|T}, (N, 2)
    P_smooth: Optional[np.ndarray] = None  # P_{t|T}, (N, 2, 2)
    lag_one: Optional[np.ndarray] = None  # Cov(x_{t+1}, x_t | T), (N-1, 2, 2)

    @property
    def forecast(self) -> np.ndarray:
        """One-step-ahead states E[x_t | y_1..y_{t-1}]."""
        return self.x_pred

    @property
    def smoothed(self) -> np.ndarray:
        if self.x_smooth is None:
            raise RuntimeError("smoothed states are only available in smoother mode")
        return self.x_smooth


class KalmanFilter:
    """Filter / smoother engine for a :class:`StateSpaceSystem`.

    Two modes share the forward recursion:
        - "filter": one-step-ahead predictions, used for forecasting
        - "smoother": filter pass followed by the backward RTS pass
    """

    def filter(self, y: np.ndarray, system: StateSpaceSystem) -> KalmanResult:
        y = self._check_observations(y, system)
        x_pred, P_pred, x_filt, P_filt, skipped, log_likelihood = _filter_kernel(
            y,
            system.transition_diagonals(),
            system.noise_diagonals(),
            np.ascontiguousarray(system.C, dtype=np.float64),
            float(system.r),
            np.ascontiguousarray(system.phi, dtype=np.float64),
            np.ascontiguousarray(system.x0, dtype=np.float64),
            np.ascontiguousarray(system.V0, dtype=np.float64),
        )
        n_skipped = int(skipped.sum())
        if n_skipped:
            logger.warning(
                "Kalman update skipped at %d of %d time indices "
                "(missing observation or non-positive innovation variance)",
                n_skipped,
                y.shape[0],
            )
        return KalmanResult(
            x_pred=x_pred,
            P_pred=P_pred,
            x_filt=x_filt,
            P_filt=P_filt,
            skipped=skipped,
            log_likelihood=float(log_likelihood),
        )

    def smooth(self, y: np.ndarray, system: StateSpaceSystem) -> KalmanResult:
        filtered = self.filter(y, system)
        x_smooth, P_smooth, lag_one = _smoother_kernel(
            system.transition_diagonals(),
            filtered.x_pred,
            filtered.P_pred,
            filtered.x_filt,
            filtered.P_filt,
        )
        return KalmanResult(
            x_pred=filtered.x_pred,
            P_pred=filtered.P_pred,
            x_filt=filtered.x_filt,
            P_filt=filtered.P_filt,
            skipped=filtered.skipped,
            log_likelihood=filtered.log_likelihood,
            x_smooth=x_smooth,
            P_smooth=P_smooth,
            lag_one=lag_one,
        )

    def run(
        self,
        y: np.ndarray,
        system: StateSpaceSystem,
        mode: Literal["filter", "smoother"] = "filter",
    ) -> KalmanResult:
        if mode == "filter":
            return self.filter(y, system)
        if mode == "smoother":
            return self.smooth(y, system)
        raise ValueError(f"mode must be 'filter' or 'smoother', got {mode!r}")

    __call__ = run

    @staticmethod
    def _check_observations(y: np.ndarray, system: StateSpaceSystem) -> np.ndarray:
        y = np.ascontiguousarray(y, dtype=np.float64).reshape(-1)
        if y.shape[0] != system.n_obs:
            raise ValueError(
                f"expected {system.n_obs} observations, got {y.shape[0]}"
            )
        return y
