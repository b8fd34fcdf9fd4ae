"""Chain provider port - where the hub gets option chains from.

Computing a chain is outside this package; the hub only needs something
that returns a payload for an instrument and expiry date.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Any


class ChainProviderPort(ABC):
    """Abstract source of option chain payloads."""

    @abstractmethod
    async def get_option_chain(self, instrument: str, expiry: date) -> Any:
        """Return the chain payload for an instrument and expiry.

        The payload must be serializable (plain dicts, lists, numbers and
        strings). Implementations raise on failure; the hub reports the
        exception message to the requesting client.
        """
        ...
