"""
Exception and warning classes raised by the intraday volume model.

Structural problems (bad input shape, malformed parameters, impossible
burn-in) are errors. Data-quality and parameter-quality problems are
warnings: the offending day or hint is dropped and computation continues.
"""


class VolumeModelError(Exception):
    """Base class for all errors raised by volume_ssm."""


class InvalidInputError(VolumeModelError, ValueError):
    """Input is not a numeric bins x days grid, or holds non-positive volumes."""


class EmptyResultError(InvalidInputError):
    """Every trading day was dropped during cleaning."""


class ConfigurationError(VolumeModelError, ValueError):
    """Malformed model parameters or out-of-range call arguments."""


class ModelIncompleteError(VolumeModelError, RuntimeError):
    """Decomposition requested on a model with unconverged parameters."""


class VolumeModelWarning(UserWarning):
    """Base class for non-fatal conditions."""


class ValidationWarning(VolumeModelWarning):
    """A fixed or initial parameter value was rejected and dropped."""


class MissingDataWarning(VolumeModelWarning):
    """Trading days with missing bins were removed from the input."""


class ConvergenceWarning(VolumeModelWarning):
    """The estimator ran out of iterations before meeting the tolerance."""
