"""
共享 pytest fixtures: 从模型本身模拟日内成交量

运行方式: 从项目根目录执行
    pytest tests/
"""

import numpy as np
import pandas as pd
import pytest


def simulate_volume(
    n_bin: int = 8,
    n_day: int = 20,
    a_eta: float = 0.99,
    a_mu: float = 0.6,
    var_eta: float = 0.05,
    var_mu: float = 0.02,
    r: float = 0.01,
    phi: np.ndarray = None,
    x0: tuple = (12.0, 0.0),
    seed: int = 42,
) -> pd.DataFrame:
    """Simulate a bins x days volume grid from the state-space model."""
    rng = np.random.default_rng(seed)
    if phi is None:
        # U 型日内季节性
        grid = np.linspace(-1.0, 1.0, n_bin)
        phi = 0.8 * grid**2 - 0.3
    phi = np.asarray(phi, dtype=float)

    eta, mu = x0
    log_volume = np.empty(n_bin * n_day)
    for tau in range(1, n_bin * n_day + 1):
        log_volume[tau - 1] = eta + mu + phi[(tau - 1) % n_bin] + rng.normal(0.0, np.sqrt(r))
        if tau % n_bin == 0:
            eta = a_eta * eta + rng.normal(0.0, np.sqrt(var_eta))
        mu = a_mu * mu + rng.normal(0.0, np.sqrt(var_mu))

    volume = np.exp(log_volume.reshape(n_day, n_bin).T)
    days = pd.bdate_range("2024-01-02", periods=n_day).date
    return pd.DataFrame(volume, columns=list(days))


@pytest.fixture
def volume_grid() -> pd.DataFrame:
    """8 bins x 20 days"""
    return simulate_volume()


@pytest.fixture
def simulate():
    """Factory fixture around :func:`simulate_volume`."""
    return simulate_volume


@pytest.fixture
def fixed_pars() -> dict:
    """A complete set of fixed parameters for 8 bins."""
    grid = np.linspace(-1.0, 1.0, 8)
    return {
        "a_eta": 0.99,
        "a_mu": 0.6,
        "var_eta": 0.05,
        "var_mu": 0.02,
        "r": 0.01,
        "phi": 0.8 * grid**2 - 0.3,
        "x0": [12.0, 0.0],
        "V0": [[0.1, 0.0], [0.0, 0.1]],
    }
