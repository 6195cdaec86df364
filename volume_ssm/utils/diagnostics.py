"""
Structured diagnostics channel.

Every non-fatal condition is stored as a :class:`Diagnostic` record and,
at the same time, raised through :func:`warnings.warn` so the usual
warning filters keep working. Callers that prefer to inspect the records
read them from the returned objects instead.
"""

import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple, Type

from volume_ssm.exceptions import VolumeModelWarning


@dataclass(frozen=True)
class Diagnostic:
    """One recorded warning or status note."""

    category: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)


class DiagnosticLog:
    """Collects diagnostics emitted during a single public call."""

    def __init__(self):
        self._records: List[Diagnostic] = []

    def warn(
        self,
        message: str,
        category: Type[VolumeModelWarning] = VolumeModelWarning,
        stacklevel: int = 3,
        **fields,
    ) -> Diagnostic:
        record = Diagnostic(category=category.__name__, message=message, fields=fields)
        self._records.append(record)
        warnings.warn(message, category, stacklevel=stacklevel)
        return record

    def note(self, message: str, **fields) -> Diagnostic:
        """Record a status message without raising a Python warning."""
        record = Diagnostic(category="note", message=message, fields=fields)
        self._records.append(record)
        return record

    @property
    def records(self) -> Tuple[Diagnostic, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)
