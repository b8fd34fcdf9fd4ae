"""System clock implementation using Python's datetime."""

from datetime import UTC, datetime

from ..ports.clock import ClockPort


class SystemClock(ClockPort):
    """Clock returning the current UTC time."""

    def now(self) -> datetime:
        return datetime.now(UTC)
