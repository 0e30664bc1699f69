"""Exception hierarchy shared by the ingestion, storage and query layers."""
from __future__ import annotations

from typing import Optional


class ConnwatchError(Exception):
    """Base class for all connwatch failures."""


class InvalidEvent(ConnwatchError):
    """Raised when a submitted event fails validation.

    Carries the name of the offending field so callers can report it back to
    the agent without parsing the message.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class InvalidQuery(ConnwatchError):
    """Raised for malformed filters, page sizes or cursors."""


class StorageUnavailable(ConnwatchError):
    """The backing store could not be reached or failed transiently."""


class Timeout(StorageUnavailable):
    """A storage call exceeded the caller supplied timeout."""

    def __init__(self, message: str, timeout: Optional[float] = None) -> None:
        self.timeout = timeout
        super().__init__(message)


class ConstraintViolation(ConnwatchError):
    """A uniqueness or not-null constraint was rejected by the store."""


__all__ = [
    "ConnwatchError",
    "InvalidEvent",
    "InvalidQuery",
    "StorageUnavailable",
    "Timeout",
    "ConstraintViolation",
]
