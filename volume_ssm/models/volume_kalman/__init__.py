"""
Intraday volume state-space model.

Two-state (daily, intraday dynamic) linear Gaussian state-space model
with a seasonal profile, fitted by EM on top of a Kalman filter /
RTS smoother.
"""

from .em import EMEstimator, FitControl
from .kalman_filter import KalmanFilter, KalmanResult
from .params import (
    PARAM_NAMES,
    ConvergenceFlags,
    ParameterSet,
    VolumeModel,
    check_model,
    is_valid_model,
    spec_model,
    spec_pair,
)
from .state_space import StateSpaceSystem, build_state_space
from .volume_model import DecompositionResult, decompose, fit, forecast

__all__ = [
    "PARAM_NAMES",
    "ConvergenceFlags",
    "DecompositionResult",
    "EMEstimator",
    "FitControl",
    "KalmanFilter",
    "KalmanResult",
    "ParameterSet",
    "StateSpaceSystem",
    "VolumeModel",
    "build_state_space",
    "check_model",
    "decompose",
    "fit",
    "forecast",
    "is_valid_model",
    "spec_model",
    "spec_pair",
]

__version__ = "1.0.0"
