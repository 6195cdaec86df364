"""
EM estimation of the intraday volume model parameters.

Each iteration runs the Kalman smoother with the current parameters and
applies closed-form M-step updates to the free parameters. Optional
SQUAREM acceleration (Varadhan & Roland, 2008, scheme S3) extrapolates
two plain EM steps and falls back to the plain update whenever the
extrapolated point breaks a constraint or lowers the likelihood.

Reference: Chen, Feng & Palomar (2016), "Forecasting intraday trading
volume: a Kalman filter approach".
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from volume_ssm.exceptions import ConfigurationError, ConvergenceWarning
from volume_ssm.utils.diagnostics import DiagnosticLog

from .kalman_filter import KalmanFilter, KalmanResult
from .params import (
    PARAM_NAMES,
    ConvergenceFlags,
    ParameterSet,
    VolumeModel,
    normalize_parameter,
)
from .state_space import build_state_space, day_boundary_mask

logger = logging.getLogger(__name__)

# Estimated variances never drop below this value
VARIANCE_FLOOR = 1e-10

Theta = Dict[str, Union[float, np.ndarray]]


class FitControl(BaseModel):
    """Control settings of the EM loop."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    maxit: int = Field(default=3000, ge=1, description="Maximum number of EM iterations")
    abstol: float = Field(
        default=1e-4,
        gt=0.0,
        description="Absolute tolerance on the change of every free parameter",
    )
    acceleration: bool = Field(default=True, description="Use SQUAREM extrapolation")
    log_switch: bool = Field(
        default=True, description="Record per-iteration convergence history"
    )

    @classmethod
    def parse(cls, control: Union["FitControl", Mapping, None]) -> "FitControl":
        if control is None:
            return cls()
        if isinstance(control, FitControl):
            return control
        try:
            return cls(**dict(control))
        except ValidationError as exc:
            raise ConfigurationError(f"invalid control settings: {exc}") from exc


def m_step(
    y: np.ndarray,
    result: KalmanResult,
    theta: Theta,
    free: Sequence[str],
    n_bin: int,
    n_day: int,
) -> Theta:
    """Closed-form EM update of the free parameters.

    Args:
        y: log volumes flattened day by day, shape (N,)
        result: smoother output computed with ``theta``
        theta: current parameter values
        free: names of the parameters to update
        n_bin: bins per day
        n_day: number of days

    Returns:
        New parameter mapping; fixed parameters are carried over unchanged
    """
    xs = result.x_smooth
    Ps = result.P_smooth
    n_obs = xs.shape[0]
    new = dict(theta)

    # second moments E[x_t x_t'] and E[x_{t+1} x_t']
    Exx = Ps + xs[:, :, np.newaxis] * xs[:, np.newaxis, :]
    Exx_lag = result.lag_one + xs[1:, :, np.newaxis] * xs[:-1, np.newaxis, :]
    Exx_prev = Exx[:-1]
    Exx_next = Exx[1:]
    # pairs (t, t+1) where t is the last bin of a day
    boundary = day_boundary_mask(n_bin, n_day)[:-1]
    has_boundary = bool(boundary.any())

    if "a_eta" in free and has_boundary:
        denominator = Exx_prev[boundary, 0, 0].sum()
        if denominator > 0:
            new["a_eta"] = float(Exx_lag[boundary, 0, 0].sum() / denominator)

    if "a_mu" in free and n_obs > 1:
        denominator = Exx_prev[:, 1, 1].sum()
        if denominator > 0:
            new["a_mu"] = float(Exx_lag[:, 1, 1].sum() / denominator)

    if "var_eta" in free and has_boundary:
        a_eta = new["a_eta"]
        terms = (
            Exx_next[boundary, 0, 0]
            + a_eta * a_eta * Exx_prev[boundary, 0, 0]
            - 2 * a_eta * Exx_lag[boundary, 0, 0]
        )
        new["var_eta"] = max(float(terms.mean()), VARIANCE_FLOOR)

    if "var_mu" in free and n_obs > 1:
        a_mu = new["a_mu"]
        terms = (
            Exx_next[:, 1, 1]
            + a_mu * a_mu * Exx_prev[:, 1, 1]
            - 2 * a_mu * Exx_lag[:, 1, 1]
        )
        new["var_mu"] = max(float(terms.mean()), VARIANCE_FLOOR)

    level = xs[:, 0] + xs[:, 1]
    if "phi" in free:
        new["phi"] = (y - level).reshape(n_day, n_bin).mean(axis=0)

    if "r" in free:
        residual = y - np.tile(np.asarray(new["phi"]), n_day) - level
        level_var = Ps[:, 0, 0] + 2 * Ps[:, 0, 1] + Ps[:, 1, 1]
        new["r"] = max(float(np.mean(residual**2 + level_var)), VARIANCE_FLOOR)

    if "x0" in free:
        new["x0"] = xs[0].copy()

    if "V0" in free:
        V0 = Ps[0]
        new["V0"] = (V0 + V0.T) / 2

    return new


def pack(theta: Theta, names: Sequence[str]) -> np.ndarray:
    """Flatten the named parameters into one vector."""
    if not names:
        return np.zeros(0)
    return np.concatenate([np.ravel(np.asarray(theta[name], dtype=np.float64)) for name in names])


def unpack(vector: np.ndarray, template: Theta, names: Sequence[str]) -> Theta:
    """Inverse of :func:`pack`, shapes taken from ``template``."""
    theta = dict(template)
    offset = 0
    for name in names:
        shape = np.shape(template[name])
        size = int(np.prod(shape)) if shape else 1
        chunk = vector[offset : offset + size]
        theta[name] = float(chunk[0]) if not shape else chunk.reshape(shape).copy()
        offset += size
    return theta


def is_feasible(theta: Theta, names: Sequence[str]) -> bool:
    """Variances non-negative, V0 PSD, everything finite."""
    return all(normalize_parameter(name, theta[name]) is not None for name in names)


def parameter_deltas(old: Theta, new: Theta, names: Sequence[str]) -> Dict[str, float]:
    return {
        name: float(
            np.linalg.norm(
                np.ravel(np.asarray(new[name], dtype=np.float64))
                - np.ravel(np.asarray(old[name], dtype=np.float64))
            )
        )
        for name in names
    }


class EMEstimator:
    """Iterates EM (optionally SQUAREM-accelerated) until convergence.

    Termination states: "converged" when every free parameter moved less
    than ``abstol`` in the last iteration, "exhausted" when ``maxit`` is
    reached first. Both return a usable model.
    """

    def __init__(self, control: Optional[FitControl] = None, verbose: int = 0):
        self.control = control or FitControl()
        self.verbose = int(verbose)
        self.kalman_filter = KalmanFilter()

    def em_step(
        self, y: np.ndarray, theta: Theta, free: Sequence[str], n_bin: int, n_day: int
    ) -> Tuple[Theta, float]:
        """One EM update; also returns the log-likelihood at ``theta``."""
        system = build_state_space(ParameterSet(**theta), n_bin, n_day)
        result = self.kalman_filter.smooth(y, system)
        return m_step(y, result, theta, free, n_bin, n_day), result.log_likelihood

    def squarem_step(
        self, y: np.ndarray, theta0: Theta, free: Sequence[str], n_bin: int, n_day: int
    ) -> Tuple[Theta, float]:
        """SQUAREM S3 step with fallback to two plain EM steps."""
        theta1, ll0 = self.em_step(y, theta0, free, n_bin, n_day)
        theta2, _ = self.em_step(y, theta1, free, n_bin, n_day)

        v0 = pack(theta0, free)
        v1 = pack(theta1, free)
        v2 = pack(theta2, free)
        r = v1 - v0
        v = v2 - 2 * v1 + v0
        v_norm = float(np.linalg.norm(v))
        if not np.isfinite(v_norm) or v_norm == 0.0:
            return theta2, ll0

        alpha = min(-float(np.linalg.norm(r)) / v_norm, -1.0)
        if alpha == -1.0:
            # the extrapolation reduces to theta2
            return theta2, ll0

        candidate = unpack(v0 - 2 * alpha * r + alpha * alpha * v, theta0, free)
        if not is_feasible(candidate, free):
            logger.debug("SQUAREM step (alpha=%.3f) infeasible, using plain EM", alpha)
            return theta2, ll0

        stabilized, ll_candidate = self.em_step(y, candidate, free, n_bin, n_day)
        if not np.isfinite(ll_candidate) or ll_candidate < ll0:
            logger.debug(
                "SQUAREM step (alpha=%.3f) lowered log-likelihood, using plain EM", alpha
            )
            return theta2, ll0
        return stabilized, ll0

    def run(
        self,
        y: np.ndarray,
        spec: VolumeModel,
        initial: Theta,
        n_bin: int,
        n_day: int,
        log: Optional[DiagnosticLog] = None,
    ) -> VolumeModel:
        """Estimate the free parameters of ``spec`` starting from ``initial``."""
        if log is None:
            log = DiagnosticLog()
        free = spec.free_parameters
        theta = dict(initial)
        maxit = self.control.maxit
        abstol = self.control.abstol
        passed = {name: False for name in free}
        history: List[dict] = []
        iteration = 0
        status = "exhausted"

        for iteration in range(1, maxit + 1):
            if self.control.acceleration:
                new_theta, log_likelihood = self.squarem_step(y, theta, free, n_bin, n_day)
            else:
                new_theta, log_likelihood = self.em_step(y, theta, free, n_bin, n_day)

            deltas = parameter_deltas(theta, new_theta, free)
            passed = {name: delta < abstol for name, delta in deltas.items()}
            theta = new_theta

            if self.control.log_switch:
                history.append(
                    {
                        "iteration": iteration,
                        "log_likelihood": log_likelihood,
                        "deltas": deltas,
                    }
                )
            if self.verbose >= 2:
                changes = ", ".join(f"{name}: {delta:.3e}" for name, delta in deltas.items())
                print(f"iteration {iteration} | loglik {log_likelihood:.4f} | {changes}")

            if all(passed.values()):
                status = "converged"
                break

        if status == "converged":
            converged = ConvergenceFlags.from_names(PARAM_NAMES)
            if self.verbose >= 1:
                print(f"Success! abstol test passed at {iteration} iterations.")
        else:
            converged = ConvergenceFlags.from_names(
                set(spec.fixed) | {name for name, ok in passed.items() if ok}
            )
            unconverged = converged.unconverged()
            log.warn(
                f"Warning! Reached maxit before parameters converged. Maxit was {maxit}.\n",
                ConvergenceWarning,
                maxit=maxit,
                unconverged=unconverged,
            )
            if self.verbose >= 1:
                print(f"Parameters {', '.join(unconverged)} did not converge.")

        return VolumeModel(
            par=ParameterSet(**theta),
            init=spec.init,
            converged=converged,
            fixed=spec.fixed,
            n_bin=n_bin,
            iterations=iteration,
            status=status,
            history=tuple(history),
            diagnostics=log.records,
        )
