"""Domain layer - Core subscription concepts and wire models."""

from .enums import ChannelMethod, ConnectionState, InboundMessage, TransportEventType
from .exceptions import (
    ChainProviderError,
    ChainStreamError,
    NotConnectedError,
    SerializationError,
    TransportError,
)
from .models import (
    ChannelReply,
    ChannelRequest,
    ErrorEvent,
    PushEnvelope,
    SendOutcome,
    Snapshot,
    SubscriptionView,
    TransportEvent,
)
from .patterns import SubjectPatterns
from .value_objects import BackoffSchedule, Duration, SubscriptionKey, backoff_delay

__all__ = [
    # Value objects
    "BackoffSchedule",
    # Exceptions
    "ChainProviderError",
    "ChainStreamError",
    # Enums
    "ChannelMethod",
    # Models
    "ChannelReply",
    "ChannelRequest",
    "ConnectionState",
    "Duration",
    "ErrorEvent",
    "InboundMessage",
    "NotConnectedError",
    "PushEnvelope",
    "SendOutcome",
    "SerializationError",
    "Snapshot",
    # Patterns
    "SubjectPatterns",
    "SubscriptionKey",
    "SubscriptionView",
    "TransportError",
    "TransportEvent",
    "TransportEventType",
    "backoff_delay",
]
