from .diagnostics import Diagnostic, DiagnosticLog
from .metrics import calculate_mae, calculate_mape, calculate_rmse

__all__ = [
    "Diagnostic",
    "DiagnosticLog",
    "calculate_mae",
    "calculate_mape",
    "calculate_rmse",
]
