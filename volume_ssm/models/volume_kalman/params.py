"""
Parameter containers and model specification for the intraday volume model.

The model has exactly eight parameters:

    a_eta, a_mu      transition coefficients of the daily / dynamic states
    var_eta, var_mu  innovation variances of the daily / dynamic states
    r                observation noise variance
    phi              log seasonal profile, one entry per bin
    x0, V0           initial state mean (2,) and covariance (2, 2)

Each parameter is either fixed by the user (and therefore converged) or
free and later estimated by EM.
"""

from typing import Dict, List, Literal, Mapping, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator

from volume_ssm.exceptions import ConfigurationError, ValidationWarning
from volume_ssm.utils.diagnostics import Diagnostic, DiagnosticLog

PARAM_NAMES: Tuple[str, ...] = (
    "a_eta",
    "a_mu",
    "var_eta",
    "var_mu",
    "r",
    "phi",
    "x0",
    "V0",
)
SCALAR_NAMES = ("a_eta", "a_mu", "var_eta", "var_mu", "r")
VARIANCE_NAMES = ("var_eta", "var_mu", "r")

# Lower bound for data-driven initial variances
INIT_VARIANCE_FLOOR = 1e-4
# Relative tolerance for the symmetry / PSD checks of V0
PSD_TOLERANCE = 1e-10


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


def is_psd(matrix: np.ndarray) -> bool:
    """Symmetric 2x2 positive semi-definite check with a relative tolerance."""
    if matrix.shape != (2, 2) or not np.isfinite(matrix).all():
        return False
    scale = max(1.0, float(np.max(np.abs(matrix))))
    if abs(matrix[0, 1] - matrix[1, 0]) > PSD_TOLERANCE * scale:
        return False
    eigvals = np.linalg.eigvalsh((matrix + matrix.T) / 2)
    return bool(eigvals.min() >= -PSD_TOLERANCE * scale)


def normalize_parameter(name: str, value) -> Optional[object]:
    """Coerce a user supplied value into canonical form.

    Returns None when the value fails the number / dimension / PSD checks.
    Scalars become Python floats, vectors and matrices become read-only
    float64 arrays.
    """
    try:
        arr = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if arr.size == 0 or not np.isfinite(arr).all():
        return None

    if name in SCALAR_NAMES:
        if arr.size != 1:
            return None
        scalar = float(arr.reshape(-1)[0])
        if name in VARIANCE_NAMES and scalar < 0:
            return None
        return scalar

    if name == "phi":
        # 允许行向量或列向量
        if arr.ndim > 2 or (arr.ndim == 2 and 1 not in arr.shape):
            return None
        return _read_only(arr.reshape(-1))

    if name == "x0":
        if arr.size != 2:
            return None
        return _read_only(arr.reshape(2))

    if name == "V0":
        if arr.size != 4:
            return None
        matrix = arr.reshape(2, 2)
        if not is_psd(matrix):
            return None
        return _read_only((matrix + matrix.T) / 2)

    return None


class ParameterSet(BaseModel):
    """Values of the eight model parameters; None marks an unset value."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    a_eta: Optional[float] = None
    a_mu: Optional[float] = None
    var_eta: Optional[float] = None
    var_mu: Optional[float] = None
    r: Optional[float] = None
    phi: Optional[np.ndarray] = None
    x0: Optional[np.ndarray] = None
    V0: Optional[np.ndarray] = None

    @field_validator("phi", "x0", "V0", mode="before")
    @classmethod
    def _as_array(cls, value):
        if value is None:
            return None
        return _read_only(value)

    def to_dict(self) -> Dict[str, object]:
        return {name: getattr(self, name) for name in PARAM_NAMES}

    def present(self) -> List[str]:
        return [name for name in PARAM_NAMES if getattr(self, name) is not None]

    def replace(self, **values) -> "ParameterSet":
        """Return a copy with some values replaced (arrays made read-only)."""
        update = {}
        for name, value in values.items():
            if name not in PARAM_NAMES:
                raise KeyError(f"{name} is not a model parameter")
            if value is not None and name in ("phi", "x0", "V0"):
                value = _read_only(value)
            elif value is not None:
                value = float(value)
            update[name] = value
        return self.model_copy(update=update)


class ConvergenceFlags(BaseModel):
    """One flag per parameter: True when fixed or estimated and converged."""

    model_config = ConfigDict(frozen=True)

    a_eta: StrictBool = False
    a_mu: StrictBool = False
    var_eta: StrictBool = False
    var_mu: StrictBool = False
    r: StrictBool = False
    phi: StrictBool = False
    x0: StrictBool = False
    V0: StrictBool = False

    @classmethod
    def from_names(cls, names) -> "ConvergenceFlags":
        names = set(names)
        return cls(**{name: name in names for name in PARAM_NAMES})

    def to_dict(self) -> Dict[str, bool]:
        return {name: getattr(self, name) for name in PARAM_NAMES}

    def unconverged(self) -> List[str]:
        return [name for name in PARAM_NAMES if getattr(self, name) is not True]

    def all(self) -> bool:
        return not self.unconverged()


class VolumeModel(BaseModel):
    """Fitted (or merely specified) intraday volume model.

    ``spec_model`` returns an instance with ``status == "specified"``;
    ``fit`` returns one with status "fixed", "converged" or "exhausted".
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    par: ParameterSet = Field(default_factory=ParameterSet)
    init: ParameterSet = Field(default_factory=ParameterSet)
    converged: ConvergenceFlags = Field(default_factory=ConvergenceFlags)
    fixed: frozenset = frozenset()
    n_bin: Optional[int] = Field(default=None, ge=1)
    iterations: int = Field(default=0, ge=0)
    status: Literal["specified", "fixed", "converged", "exhausted"] = "specified"
    history: Tuple[dict, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()

    @property
    def is_fitted(self) -> bool:
        return self.converged.all()

    @property
    def free_parameters(self) -> List[str]:
        return [name for name in PARAM_NAMES if name not in self.fixed]

    def as_pair(self) -> Tuple[ParameterSet, ConvergenceFlags]:
        """``(par, converged)``, the parameter values with their flags."""
        return self.par, self.converged


def _format_names(names: List[str]) -> str:
    return ", ".join(names)


def spec_model(
    fixed: Optional[Mapping[str, object]] = None,
    init: Optional[Mapping[str, object]] = None,
    log: Optional[DiagnosticLog] = None,
) -> VolumeModel:
    """Build a model specification from fixed values and initial hints.

    Invalid or unknown entries are dropped with a single
    :class:`ValidationWarning` listing every offending name. Valid fixed
    values are stored in ``par`` and marked converged; valid hints that
    do not clash with a fixed value are stored in ``init``.
    """
    if log is None:
        log = DiagnosticLog()
    fixed = dict(fixed or {})
    init = dict(init or {})

    par_values: Dict[str, object] = {}
    fixed_unknown, fixed_invalid = [], []
    for name, value in fixed.items():
        if name not in PARAM_NAMES:
            fixed_unknown.append(name)
            continue
        normalized = normalize_parameter(name, value)
        if normalized is None:
            fixed_invalid.append(name)
            continue
        par_values[name] = normalized

    init_values: Dict[str, object] = {}
    init_unknown, init_invalid, init_duplicated = [], [], []
    for name, value in init.items():
        if name not in PARAM_NAMES:
            init_unknown.append(name)
            continue
        if name in par_values:
            init_duplicated.append(name)
            continue
        normalized = normalize_parameter(name, value)
        if normalized is None:
            init_invalid.append(name)
            continue
        init_values[name] = normalized

    sections = []
    fixed_lines = []
    if fixed_unknown:
        fixed_lines.append(
            f"  Elements {_format_names(fixed_unknown)} are not allowed in parameter list."
        )
    if fixed_invalid:
        fixed_lines.append(
            f"  Elements {_format_names(fixed_invalid)} are invalid "
            "(check number/dimension/PSD)."
        )
    if fixed_lines:
        sections.append("Warnings in fixed_pars:\n" + "\n".join(fixed_lines))

    init_lines = []
    if init_unknown:
        init_lines.append(
            f"  Elements {_format_names(init_unknown)} are not allowed in parameter list."
        )
    if init_invalid:
        init_lines.append(
            f"  Elements {_format_names(init_invalid)} are invalid "
            "(check number/dimension/PSD)."
        )
    if init_duplicated:
        init_lines.append(
            f"  Elements {_format_names(init_duplicated)} have already been fixed."
        )
    if init_lines:
        sections.append("Warnings in init_pars:\n" + "\n".join(init_lines))

    if sections:
        log.warn(
            "\n".join(sections),
            ValidationWarning,
            fixed_unknown=fixed_unknown,
            fixed_invalid=fixed_invalid,
            init_unknown=init_unknown,
            init_invalid=init_invalid,
            init_duplicated=init_duplicated,
        )

    return VolumeModel(
        par=ParameterSet(**par_values),
        init=ParameterSet(**init_values),
        converged=ConvergenceFlags.from_names(par_values),
        fixed=frozenset(par_values),
        diagnostics=log.records,
    )


def spec_pair(
    fixed: Optional[Mapping[str, object]] = None,
    init: Optional[Mapping[str, object]] = None,
    log: Optional[DiagnosticLog] = None,
) -> Tuple[ParameterSet, ConvergenceFlags]:
    """Same as :func:`spec_model`, returned as ``(ParameterSet, ConvergenceFlags)``.

    Example:
        >>> par, converged = spec_pair(fixed={"a_eta": 1.0})
    """
    return spec_model(fixed, init, log=log).as_pair()


def default_initial_values(log_grid: np.ndarray) -> Dict[str, object]:
    """Data-driven starting values for every parameter.

    Args:
        log_grid: log volumes, shape (n_bin, n_day)

    Returns:
        Mapping of all eight parameter names to initial values
    """
    log_grid = np.asarray(log_grid, dtype=np.float64)
    daily_mean = log_grid.mean(axis=0)
    deviation = log_grid - daily_mean[np.newaxis, :]
    phi = deviation.mean(axis=1)
    residual = deviation - phi[:, np.newaxis]

    residual_var = float(residual.var()) if residual.size > 1 else 0.0
    daily_var = float(daily_mean.var()) if daily_mean.size > 1 else 0.0
    if daily_mean.size >= 3:
        var_eta = float(np.diff(daily_mean).var())
    else:
        var_eta = daily_var

    return {
        "a_eta": 1.0,
        "a_mu": 0.5,
        "var_eta": max(var_eta, INIT_VARIANCE_FLOOR),
        "var_mu": max(residual_var / 2, INIT_VARIANCE_FLOOR),
        "r": max(residual_var / 2, INIT_VARIANCE_FLOOR),
        "phi": phi,
        "x0": np.array([daily_mean[0], 0.0]),
        "V0": np.diag(
            [max(daily_var, INIT_VARIANCE_FLOOR), max(residual_var, INIT_VARIANCE_FLOOR)]
        ),
    }


_MISSING = object()


def check_model(model, n_bin: Optional[int] = None) -> List[str]:
    """List every structural violation of a model; empty when valid.

    Checks that flags and values exist for all eight parameters, that
    fixed parameters are flagged converged and converged ones carry a
    value, and that every present value has the right shape.
    """
    missing = [
        element
        for element in ("par", "converged")
        if getattr(model, element, None) is None
    ]
    if missing:
        return [f"Elements {_format_names(missing)} are missing from the model."]

    par = model.par
    converged = model.converged
    fixed = set(getattr(model, "fixed", ()) or ())
    violations: List[str] = []

    missing_flags = [
        name for name in PARAM_NAMES if getattr(converged, name, _MISSING) is _MISSING
    ]
    if missing_flags:
        violations.append(
            f"Elements {_format_names(missing_flags)} are missing from volume_model.converged."
        )
    flags = {
        name: getattr(converged, name)
        for name in PARAM_NAMES
        if name not in missing_flags
    }
    if any(not isinstance(flag, (bool, np.bool_)) for flag in flags.values()):
        violations.append("Elements in volume_model.converged must be True/False.")
        return violations

    missing_pars = [
        name for name in PARAM_NAMES if getattr(par, name, _MISSING) is _MISSING
    ]
    if missing_pars:
        violations.append(
            f"Elements {_format_names(missing_pars)} are missing from volume_model.par."
        )
        return violations

    for name in PARAM_NAMES:
        value = getattr(par, name)
        flag = flags.get(name)
        if (name in fixed and flag is not True) or (flag and value is None):
            violations.append(
                f"volume_model.par.{name} and volume_model.converged.{name} are conflicted."
            )
            continue
        if value is None:
            continue

        size = np.size(value)
        expected = {"phi": n_bin, "x0": 2, "V0": 4}.get(name, 1)
        if expected is not None and size != expected:
            violations.append(f"Length of volume_model.par.{name} is wrong.")
        elif normalize_parameter(name, value) is None:
            violations.append(
                f"volume_model.par.{name} is invalid (check number/dimension/PSD)."
            )

    return violations


def is_valid_model(model, n_bin: Optional[int] = None) -> bool:
    """Raise ConfigurationError listing all violations, else return True."""
    violations = check_model(model, n_bin)
    if violations:
        raise ConfigurationError("\n".join(violations))
    return True
