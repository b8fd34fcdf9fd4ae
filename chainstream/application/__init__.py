"""Application layer - Subscription state machine and refresh timer."""

from .refresh_scheduler import RefreshScheduler
from .subscription_registry import RegistryConfig, SubscriptionRegistry, TransportFactory

__all__ = [
    "RefreshScheduler",
    "RegistryConfig",
    "SubscriptionRegistry",
    "TransportFactory",
]
