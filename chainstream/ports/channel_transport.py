"""Channel transport interface - Port definition for the persistent channel."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from ..domain.enums import ChannelMethod
from ..domain.models import SendOutcome, TransportEvent
from ..domain.value_objects import SubscriptionKey

TransportEventHandler = Callable[[TransportEvent], Awaitable[None]]


class ChannelTransportPort(ABC):
    """Abstract interface for a persistent bidirectional channel.

    Contract every implementation honours:

    - events (opened, closed, reconnected, message) are delivered to the
      registered handler one at a time, in arrival order, each awaited
      before the next;
    - ``send`` while disconnected returns ``failed("not connected")``
      immediately instead of queuing;
    - reconnection after a drop is automatic, paced by the backoff schedule
      the transport was constructed with, and reported as ``closed``
      followed later by ``reconnected``.
    """

    @abstractmethod
    def set_event_handler(self, handler: TransportEventHandler) -> None:
        """Register the single consumer of transport events."""
        ...

    @abstractmethod
    async def open(self) -> None:
        """Start connecting. Emits ``opened`` once the channel is up."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and stop reconnecting. Idempotent."""
        ...

    @abstractmethod
    async def send(self, method: ChannelMethod, key: SubscriptionKey) -> SendOutcome:
        """Send a named request for a key.

        Never raises for transport problems; failures come back as
        ``SendOutcome.failed(reason)``.
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the channel is currently up."""
        ...
