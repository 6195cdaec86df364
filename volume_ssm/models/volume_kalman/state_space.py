"""
Time-varying state-space system of the intraday volume model.

State x_tau = [eta_tau, mu_tau] (log daily level, log intraday dynamic):

    x_{tau+1} = A_tau @ x_tau + w_tau,         w_tau ~ N(0, Q_tau)
    y_tau     = C @ x_tau + phi_tau + v_tau,   v_tau ~ N(0, r)

with C = [1, 1]. The daily state only moves at day boundaries: when tau
is the last bin of a day (tau mod I == 0, 1-based) A_tau carries a_eta
and Q_tau carries var_eta; inside a day A_tau[0, 0] = 1, Q_tau[0, 0] = 0.
"""

from dataclasses import dataclass

import numpy as np

from .params import ParameterSet

OBSERVATION_ROW = np.array([1.0, 1.0])


@dataclass(frozen=True)
class StateSpaceSystem:
    """Explicit system matrices for tau = 1..n_bin*n_day (stored 0-based)."""

    A: np.ndarray  # (N, 2, 2), diagonal
    Q: np.ndarray  # (N, 2, 2), diagonal
    C: np.ndarray  # (2,)
    r: float
    phi: np.ndarray  # (N,)
    x0: np.ndarray  # (2,)
    V0: np.ndarray  # (2, 2)
    n_bin: int
    n_day: int

    @property
    def n_obs(self) -> int:
        return self.n_bin * self.n_day

    def transition_diagonals(self) -> np.ndarray:
        """Diagonals of A_tau as a contiguous (N, 2) array."""
        return np.ascontiguousarray(np.diagonal(self.A, axis1=1, axis2=2))

    def noise_diagonals(self) -> np.ndarray:
        """Diagonals of Q_tau as a contiguous (N, 2) array."""
        return np.ascontiguousarray(np.diagonal(self.Q, axis1=1, axis2=2))


def day_boundary_mask(n_bin: int, n_day: int) -> np.ndarray:
    """True where tau (1-based) is the last bin of a day."""
    tau = np.arange(1, n_bin * n_day + 1)
    return tau % n_bin == 0


def build_state_space(par: ParameterSet, n_bin: int, n_day: int) -> StateSpaceSystem:
    """Construct the system matrices from a complete parameter set.

    Args:
        par: parameter set with all eight values present
        n_bin: number of bins per day (I)
        n_day: number of days (T)

    Returns:
        StateSpaceSystem covering N = I * T time indices
    """
    missing = [name for name, value in par.to_dict().items() if value is None]
    if missing:
        raise ValueError(f"parameters {', '.join(missing)} have no value")
    if n_bin < 1 or n_day < 1:
        raise ValueError(f"n_bin and n_day must be positive, got {n_bin}, {n_day}")
    phi = np.asarray(par.phi, dtype=np.float64)
    if phi.shape != (n_bin,):
        raise ValueError(f"phi must have {n_bin} entries, got {phi.size}")

    n_obs = n_bin * n_day
    boundary = day_boundary_mask(n_bin, n_day)

    A = np.zeros((n_obs, 2, 2))
    A[:, 0, 0] = np.where(boundary, par.a_eta, 1.0)
    A[:, 1, 1] = par.a_mu

    Q = np.zeros((n_obs, 2, 2))
    Q[:, 0, 0] = np.where(boundary, par.var_eta, 0.0)
    Q[:, 1, 1] = par.var_mu

    return StateSpaceSystem(
        A=A,
        Q=Q,
        C=OBSERVATION_ROW.copy(),
        r=float(par.r),
        phi=np.tile(phi, n_day),
        x0=np.array(par.x0, dtype=np.float64),
        V0=np.array(par.V0, dtype=np.float64),
        n_bin=n_bin,
        n_day=n_day,
    )
