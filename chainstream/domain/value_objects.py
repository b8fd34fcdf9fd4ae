"""Domain value objects following Domain-Driven Design principles.

These value objects encapsulate the subscription key, time spans and the
reconnection backoff schedule, giving validation and clear meaning to what
would otherwise be loose strings and numbers.
"""

from datetime import date, timedelta
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionKey(BaseModel):
    """Value object identifying what the consumer wants live data for.

    An ordered ``(instrument, expiry)`` pair. Equality is structural, so two
    keys built from the same strings are interchangeable everywhere.
    """

    model_config = ConfigDict(frozen=True, strict=True, str_strip_whitespace=True)

    instrument: str = Field(..., min_length=1, max_length=64, description="Instrument name")
    expiry: str = Field(..., min_length=1, max_length=32, description="Expiry identifier")

    @field_validator("instrument", "expiry")
    @classmethod
    def validate_no_control_chars(cls, v: str) -> str:
        """Reject control characters, which no instrument or expiry carries."""
        if any(ord(c) < 32 for c in v):
            raise ValueError("Key parts cannot contain control characters")
        return v

    @classmethod
    def of(cls, instrument: str, expiry: str) -> "SubscriptionKey":
        """Build a key from positional parts."""
        return cls(instrument=instrument, expiry=expiry)

    def expiry_date(self) -> date:
        """Parse the expiry as an ISO date.

        Raises:
            ValueError: If the expiry is not an ISO ``YYYY-MM-DD`` date
        """
        try:
            return date.fromisoformat(self.expiry)
        except ValueError as e:
            raise ValueError(f"Invalid expiry date: {self.expiry}") from e

    def group_name(self) -> str:
        """Name of the server-side group holding subscribers of this key."""
        return f"options:{self.instrument}:{self.expiry}"

    def __str__(self) -> str:
        """String representation as ``instrument:expiry``."""
        return f"{self.instrument}:{self.expiry}"


class Duration(BaseModel):
    """Value object representing a non-negative time span."""

    model_config = ConfigDict(frozen=True)

    seconds: float = Field(..., ge=0, description="Duration in seconds")

    @classmethod
    def from_milliseconds(cls, milliseconds: float) -> "Duration":
        """Create duration from milliseconds."""
        return cls(seconds=milliseconds / 1000)

    @classmethod
    def from_timedelta(cls, td: timedelta) -> "Duration":
        """Create duration from a timedelta."""
        return cls(seconds=td.total_seconds())

    def to_milliseconds(self) -> float:
        """Convert to milliseconds."""
        return self.seconds * 1000

    def to_timedelta(self) -> timedelta:
        """Convert to timedelta."""
        return timedelta(seconds=self.seconds)

    def is_zero(self) -> bool:
        """Check if duration is zero."""
        return self.seconds == 0

    def __str__(self) -> str:
        if self.seconds < 1:
            return f"{self.to_milliseconds():g}ms"
        return f"{self.seconds:g}s"

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Duration):
            return NotImplemented
        return self.seconds < other.seconds

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Duration):
            return NotImplemented
        return self.seconds <= other.seconds

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, Duration):
            return self.seconds == other.seconds
        return False

    def __hash__(self) -> int:
        return hash(self.seconds)


class BackoffSchedule(BaseModel):
    """Fixed reconnection delay schedule.

    ``delay(n)`` is the wait before reconnection attempt ``n``. Attempts past
    the end of the schedule hold at the last delay indefinitely. The schedule
    is pure: the transport that owns reconnection applies it.
    """

    model_config = ConfigDict(frozen=True)

    DEFAULT_DELAYS_MS: ClassVar[tuple[int, ...]] = (0, 2000, 5000, 10000, 30000)

    delays_ms: tuple[int, ...] = Field(
        default=DEFAULT_DELAYS_MS,
        min_length=1,
        description="Delay in milliseconds before each reconnection attempt",
    )

    @field_validator("delays_ms")
    @classmethod
    def validate_delays(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        """Delays must be non-negative and never shrink."""
        if any(d < 0 for d in v):
            raise ValueError("Backoff delays must be non-negative")
        if any(later < earlier for earlier, later in zip(v, v[1:], strict=False)):
            raise ValueError("Backoff delays must be non-decreasing")
        return v

    def delay(self, attempt: int) -> int:
        """Milliseconds to wait before the given attempt.

        Args:
            attempt: Zero-based attempt counter

        Raises:
            ValueError: If attempt is negative
        """
        if attempt < 0:
            raise ValueError("Attempt number must be non-negative")
        return self.delays_ms[min(attempt, len(self.delays_ms) - 1)]

    def delay_seconds(self, attempt: int) -> float:
        """Same as :meth:`delay`, in seconds for ``asyncio.sleep``."""
        return self.delay(attempt) / 1000

    @property
    def ceiling(self) -> int:
        """The delay every attempt past the schedule holds at."""
        return self.delays_ms[-1]


def backoff_delay(attempt: int) -> int:
    """Default backoff schedule as a plain function."""
    return _DEFAULT_SCHEDULE.delay(attempt)


_DEFAULT_SCHEDULE = BackoffSchedule()
