"""Exceptions raised by HackHours."""

from __future__ import annotations


class HackHoursError(Exception):
    """Base exception for HackHours errors."""

    pass


class InvalidRange(HackHoursError, ValueError):
    """Raised when a time range is malformed or inverted."""

    def __init__(self, start: object, end: object, reason: str = "end is before start") -> None:
        self.start = start
        self.end = end
        super().__init__(f"Invalid range [{start}, {end}]: {reason}")


class PersistenceFailure(HackHoursError):
    """Raised when a storage read or write fails.

    Not retried. The underlying error is chained as ``__cause__``.
    """

    pass


class AlreadyRunning(HackHoursError):
    """Raised when the tracking daemon is started while another is alive."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        super().__init__(f"HackHours is already running (pid {pid}).")


class NotRunning(HackHoursError):
    """Raised when stop is requested but no live daemon is recorded."""

    def __init__(self) -> None:
        super().__init__("HackHours is not running.")
