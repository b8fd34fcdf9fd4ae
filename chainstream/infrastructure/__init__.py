"""Infrastructure layer - Adapters for NATS, logging, metrics and time."""

from .config import ChainStreamConfig, LogContext, NATSTransportConfig
from .factories import NATSTransportFactory, create_registry
from .in_memory_metrics import InMemoryMetrics
from .nats_chain_hub import NATSChainHub, StaticChainProvider, build_demo_chain
from .nats_transport import NATSChannelTransport
from .serialization import Serializer
from .simple_logger import SimpleLogger
from .system_clock import SystemClock

__all__ = [
    "ChainStreamConfig",
    "InMemoryMetrics",
    "LogContext",
    "NATSChainHub",
    "NATSChannelTransport",
    "NATSTransportConfig",
    "NATSTransportFactory",
    "Serializer",
    "SimpleLogger",
    "StaticChainProvider",
    "SystemClock",
    "build_demo_chain",
    "create_registry",
]
