"""
Fit, decompose and forecast intraday trading volume.

Log volume of bin i on day t is modelled as

    log y_{t,i} = eta_{t,i} + phi_i + mu_{t,i} + v_{t,i}

a daily component eta, a seasonal profile phi and an intraday dynamic
component mu, estimated with a Kalman filter / smoother whose parameters
are fitted by EM.

Example:
    >>> model = fit(volume_train, fixed={"a_mu": 0.5}, init={"a_eta": 0.9})
    >>> analysis = decompose("analysis", model, volume_train)
    >>> prediction = forecast(model, volume_all, burn_in_days=20)
"""

import operator
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from volume_ssm.data_process.cleaning import VolumeInput, clean_data
from volume_ssm.exceptions import (
    ConfigurationError,
    ModelIncompleteError,
    ValidationWarning,
)
from volume_ssm.utils.diagnostics import Diagnostic, DiagnosticLog
from volume_ssm.utils.metrics import error_summary

from .em import EMEstimator, FitControl
from .kalman_filter import KalmanFilter
from .params import (
    VolumeModel,
    default_initial_values,
    is_valid_model,
    spec_model,
)
from .state_space import build_state_space

PURPOSES = ("analysis", "forecast")


def _log_observations(grid: pd.DataFrame) -> np.ndarray:
    """Log volumes flattened day by day (bins of a day are contiguous)."""
    return np.log(grid.to_numpy(dtype=np.float64)).ravel(order="F")


def fit(
    data: VolumeInput,
    fixed: Optional[Mapping[str, object]] = None,
    init: Optional[Mapping[str, object]] = None,
    verbose: int = 0,
    control: Union[FitControl, Mapping, None] = None,
) -> VolumeModel:
    """Fit the volume model to a bins x days volume grid.

    Args:
        data: raw (positive) volumes, see :func:`clean_data` for accepted forms
        fixed: parameter values to keep fixed
        init: initial values for free parameters
        verbose: 0 silent, 1 final status, 2 per-iteration changes
        control: ``FitControl`` or mapping with maxit / abstol /
            acceleration / log_switch

    Returns:
        Fitted VolumeModel. When ``maxit`` is reached the model is still
        returned, with unconverged parameters flagged False.

    Raises:
        InvalidInputError: data is not a valid volume grid
        ConfigurationError: invalid control, or a fixed phi whose length
            does not match the number of bins
    """
    control = FitControl.parse(control)
    log = DiagnosticLog()
    grid = clean_data(data, log=log)
    n_bin, n_day = grid.shape
    y = _log_observations(grid)

    spec = spec_model(fixed, init, log=log)
    is_valid_model(spec, n_bin)

    hints = {name: value for name, value in spec.init.to_dict().items() if value is not None}
    if "phi" in hints and np.size(hints["phi"]) != n_bin:
        log.warn(
            f"Warnings in init_pars:\n  Elements phi are invalid "
            f"(length {np.size(hints['phi'])}, expected {n_bin}).",
            ValidationWarning,
            init_invalid=["phi"],
        )
        del hints["phi"]
        spec = spec.model_copy(update={"init": spec.init.replace(phi=None)})

    if not spec.free_parameters:
        if verbose >= 1:
            print("All parameters have already been fixed.")
        log.note("All parameters have already been fixed; nothing to estimate.")
        return spec.model_copy(
            update={"n_bin": n_bin, "status": "fixed", "diagnostics": log.records}
        )

    initial = default_initial_values(np.log(grid.to_numpy(dtype=np.float64)))
    initial.update(hints)
    initial.update(
        {name: value for name, value in spec.par.to_dict().items() if value is not None}
    )

    estimator = EMEstimator(control=control, verbose=verbose)
    return estimator.run(y, spec, initial, n_bin, n_day, log=log)


@dataclass(frozen=True)
class DecompositionResult:
    """Volume-scale decomposition produced by :func:`decompose`.

    ``signal`` is the smooth signal for purpose "analysis" and the
    one-bin-ahead forecast for purpose "forecast". ``components`` holds
    daily, seasonal, dynamic and residual arrays with
    original_signal == signal * residual.
    """

    purpose: str
    original_signal: np.ndarray
    signal: np.ndarray
    components: Dict[str, np.ndarray]
    error: Dict[str, float]
    n_bin: int
    days: Tuple = ()
    diagnostics: Tuple[Diagnostic, ...] = field(default=())

    @property
    def smooth_signal(self) -> np.ndarray:
        if self.purpose != "analysis":
            raise AttributeError("smooth_signal is only available for purpose 'analysis'")
        return self.signal

    @property
    def forecast_signal(self) -> np.ndarray:
        if self.purpose != "forecast":
            raise AttributeError("forecast_signal is only available for purpose 'forecast'")
        return self.signal

    def to_frame(self) -> pd.DataFrame:
        """Long table indexed by (day, bin)."""
        days = list(self.days) or list(range(len(self.signal) // self.n_bin))
        index = pd.MultiIndex.from_product([days, range(self.n_bin)], names=["day", "bin"])
        signal_name = "smooth_signal" if self.purpose == "analysis" else "forecast_signal"
        columns = {"original_signal": self.original_signal, signal_name: self.signal}
        columns.update(self.components)
        return pd.DataFrame(columns, index=index)


def _require_fitted(model: VolumeModel, n_bin: int) -> None:
    is_valid_model(model, n_bin)
    unconverged = model.converged.unconverged()
    if unconverged:
        raise ModelIncompleteError(
            "All parameters must be optimally fitted. "
            f"Parameters {', '.join(unconverged)} are not optimally fitted."
        )


def decompose(
    purpose: str,
    model: VolumeModel,
    data: VolumeInput,
    burn_in_days: int = 0,
) -> DecompositionResult:
    """Decompose volume into daily, seasonal, dynamic and residual parts.

    Args:
        purpose: "analysis" (Kalman smoothing, conditions on all data) or
            "forecast" (one-bin-ahead prediction, conditions on the past)
        model: fully converged model from :func:`fit` (or an all-fixed
            :func:`spec_model`)
        data: volumes to decompose, bins x days
        burn_in_days: leading days used only to warm up the filter; their
            bins are dropped from the forecast output

    Raises:
        ConfigurationError: unknown purpose, invalid model structure, or
            burn_in_days not an integer in [0, number of days)
        ModelIncompleteError: some parameter is not converged
    """
    purpose = str(purpose).lower()
    if purpose not in PURPOSES:
        raise ConfigurationError(
            f"purpose must be one of {', '.join(PURPOSES)}, got {purpose!r}"
        )

    try:
        burn_in_days = operator.index(burn_in_days)
    except TypeError as exc:
        raise ConfigurationError(
            f"burn_in_days must be an integer, got {burn_in_days!r}"
        ) from exc

    log = DiagnosticLog()
    grid = clean_data(data, log=log)
    n_bin, n_day = grid.shape
    if not 0 <= burn_in_days < n_day:
        raise ConfigurationError(
            f"burn_in_days must be smaller than the number of days in data "
            f"({n_day}), got {burn_in_days}"
        )
    _require_fitted(model, n_bin)

    system = build_state_space(model.par, n_bin, n_day)
    kalman_filter = KalmanFilter()
    y = _log_observations(grid)
    if purpose == "analysis":
        states = kalman_filter.smooth(y, system).x_smooth
        keep = 0
    else:
        states = kalman_filter.filter(y, system).x_pred
        keep = n_bin * burn_in_days

    daily = np.exp(states[keep:, 0])
    dynamic = np.exp(states[keep:, 1])
    seasonal = np.exp(system.phi[keep:])
    signal = daily * dynamic * seasonal
    original = grid.to_numpy(dtype=np.float64).ravel(order="F")[keep:]
    components = {
        "daily": daily,
        "seasonal": seasonal,
        "dynamic": dynamic,
        "residual": original / signal,
    }

    return DecompositionResult(
        purpose=purpose,
        original_signal=original,
        signal=signal,
        components=components,
        error=error_summary(original, signal),
        n_bin=n_bin,
        days=tuple(grid.columns[burn_in_days if purpose == "forecast" else 0 :]),
        diagnostics=log.records,
    )


def forecast(model: VolumeModel, data: VolumeInput, burn_in_days: int = 0) -> DecompositionResult:
    """One-bin-ahead forecast; shorthand for ``decompose("forecast", ...)``."""
    return decompose("forecast", model, data, burn_in_days=burn_in_days)
