"""Domain enums for type safety and consistency.

This module centralizes the enumeration types shared by the registry,
the refresh scheduler and the channel transport, so that method and
message names never travel as bare string literals.
"""

from enum import Enum


class ConnectionState(str, Enum):
    """Subscription registry state.

    Exactly one value holds at any time; CLOSED is terminal.
    """

    IDLE = "IDLE"  # No active interest
    CONNECTING = "CONNECTING"  # Transport opening, key remembered
    SUBSCRIBED = "SUBSCRIBED"  # Key subscribed, refresh timer running
    RECONNECTING = "RECONNECTING"  # Transport lost, waiting for reconnected
    CLOSED = "CLOSED"  # Torn down, inert

    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self is ConnectionState.CLOSED


class ChannelMethod(str, Enum):
    """Outbound method names sent over the channel."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    REFRESH = "refresh"


class InboundMessage(str, Enum):
    """Inbound push message names."""

    UPDATE = "update"
    ERROR = "error"


class TransportEventType(str, Enum):
    """Events raised by a channel transport, one at a time."""

    OPENED = "opened"
    CLOSED = "closed"
    RECONNECTED = "reconnected"
    MESSAGE = "message"
