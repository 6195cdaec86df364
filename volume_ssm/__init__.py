"""
volume_ssm - 日内成交量状态空间模型

将日内成交量分解为日度、季节性和日内动态三个分量，并做一步向前预测。

Example:
    >>> from volume_ssm import fit, decompose, forecast
    >>>
    >>> model = fit(volume_train, fixed={"a_mu": 0.5}, verbose=1)
    >>> analysis = decompose("analysis", model, volume_train)
    >>> prediction = forecast(model, volume_test)
"""

from .data_process import clean_data
from .exceptions import (
    ConfigurationError,
    ConvergenceWarning,
    EmptyResultError,
    InvalidInputError,
    MissingDataWarning,
    ModelIncompleteError,
    ValidationWarning,
    VolumeModelError,
    VolumeModelWarning,
)
from .models.volume_kalman import (
    ConvergenceFlags,
    DecompositionResult,
    FitControl,
    KalmanFilter,
    ParameterSet,
    VolumeModel,
    build_state_space,
    check_model,
    decompose,
    fit,
    forecast,
    is_valid_model,
    spec_model,
    spec_pair,
)

__all__ = [
    "ConfigurationError",
    "ConvergenceFlags",
    "ConvergenceWarning",
    "DecompositionResult",
    "EmptyResultError",
    "FitControl",
    "InvalidInputError",
    "KalmanFilter",
    "MissingDataWarning",
    "ModelIncompleteError",
    "ParameterSet",
    "ValidationWarning",
    "VolumeModel",
    "VolumeModelError",
    "VolumeModelWarning",
    "build_state_space",
    "check_model",
    "clean_data",
    "decompose",
    "fit",
    "forecast",
    "is_valid_model",
    "spec_model",
    "spec_pair",
]

__version__ = "1.0.0"
