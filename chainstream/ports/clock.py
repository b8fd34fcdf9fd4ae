"""Clock port abstraction for time handling."""

from abc import ABC, abstractmethod
from datetime import datetime


class ClockPort(ABC):
    """Abstract clock used to stamp received snapshots.

    Implementations MUST return timezone-aware datetimes.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time as a timezone-aware datetime."""
        ...
