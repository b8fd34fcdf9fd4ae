"""chainstream - Live option chain subscriptions over NATS."""

from .application.subscription_registry import SubscriptionRegistry
from .domain.value_objects import BackoffSchedule, SubscriptionKey
from .infrastructure.factories import create_registry
from .infrastructure.nats_transport import NATSChannelTransport

__all__ = [
    "BackoffSchedule",
    "NATSChannelTransport",
    "SubscriptionKey",
    "SubscriptionRegistry",
    "create_registry",
]
__version__ = "0.1.0"
