"""Ports layer - Interfaces for external communication."""

from .chain_provider import ChainProviderPort
from .channel_transport import ChannelTransportPort, TransportEventHandler
from .clock import ClockPort
from .logger import LoggerPort
from .metrics import MetricsPort

__all__ = [
    "ChainProviderPort",
    "ChannelTransportPort",
    "ClockPort",
    "LoggerPort",
    "MetricsPort",
    "TransportEventHandler",
]
