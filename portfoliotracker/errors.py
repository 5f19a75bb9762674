"""Exception types shared across the tracker.

Only failures are modelled here. A metric that cannot be computed is not an
error; see ``portfoliotracker.analysis.metrics.MetricUnavailable``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class FieldError:
    """A single field-level validation failure.

    Attributes:
        field: Name of the offending input field, as the caller spelled it.
        message: Human-readable description of the problem.
        rejected_value: The value that was rejected (None when missing).

    """

    field: str
    message: str
    rejected_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the wire names of the error envelope."""
        value = self.rejected_value
        if value is not None and not isinstance(value, (str, int, float, bool)):
            value = str(value)
        return {"field": self.field, "message": self.message, "rejectedValue": value}


class ValidationError(ValueError):
    """Input rejected with one or more field-level errors.

    Recoverable: the caller fixes the input and re-submits. All violations
    are collected before raising so they can be reported at once.
    """

    def __init__(self, errors: list[FieldError], message: str = "Validation failed") -> None:
        self.errors = list(errors)
        fields = ", ".join(e.field for e in self.errors)
        super().__init__(f"{message}: {fields}" if fields else message)


class InvalidHoldingError(ValueError):
    """A holding would violate the aggregate invariants.

    Signals corrupted or unvalidated input upstream. Never retried.
    """


class CurrencyMismatchError(ValueError):
    """Arithmetic attempted between amounts in different currencies."""


class NotFoundError(LookupError):
    """A referenced account, instrument, or position does not exist."""


class ConcurrentModificationError(RuntimeError):
    """A position was changed by another writer since it was loaded."""
