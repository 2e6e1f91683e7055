"""Operation result returned by application services.

Services translate low-level errors into a failed Result instead of
raising, so callers (the CLI, an HTTP layer) map outcomes to responses
without catching storage or scheduler exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from invoice_reminder.exceptions import ReminderError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success value or failure error of a service operation."""

    value: T | None = None
    error: ReminderError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: ReminderError) -> Result[T]:
        return cls(error=error)

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    @property
    def error_message(self) -> str | None:
        return str(self.error) if self.error is not None else None

    def unwrap(self) -> T | None:
        """Return the value, raising the failure error instead."""
        if self.error is not None:
            raise self.error
        return self.value
