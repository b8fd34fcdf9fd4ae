"""Factory functions wiring the registry to the NATS transport."""

from __future__ import annotations

from ..application.subscription_registry import RegistryConfig, SubscriptionRegistry
from ..domain.value_objects import BackoffSchedule
from ..ports.clock import ClockPort
from ..ports.logger import LoggerPort
from ..ports.metrics import MetricsPort
from .config import ChainStreamConfig, NATSTransportConfig
from .in_memory_metrics import InMemoryMetrics
from .nats_transport import NATSChannelTransport


class NATSTransportFactory:
    """Builds a NATS channel transport for the backoff schedule it is given.

    The registry calls this once, on its first ``set_key``.
    """

    def __init__(
        self,
        config: NATSTransportConfig | None = None,
        logger: LoggerPort | None = None,
        metrics: MetricsPort | None = None,
    ):
        self._config = config or NATSTransportConfig()
        self._logger = logger
        self._metrics = metrics

    def __call__(self, backoff: BackoffSchedule) -> NATSChannelTransport:
        return NATSChannelTransport(
            config=self._config,
            backoff=backoff,
            logger=self._logger,
            metrics=self._metrics,
        )


def create_registry(
    config: ChainStreamConfig | None = None,
    logger: LoggerPort | None = None,
    metrics: MetricsPort | None = None,
    clock: ClockPort | None = None,
) -> SubscriptionRegistry:
    """Create a registry backed by NATS.

    Registry and transport share one metrics instance so counters from both
    show up together.

    Args:
        config: Client configuration; read from the environment when None
        logger: Optional logger shared by registry and transport
        metrics: Optional metrics port
        clock: Optional clock for snapshot timestamps
    """
    config = config or ChainStreamConfig.from_env()
    metrics = metrics or InMemoryMetrics()
    registry_config = RegistryConfig(
        refresh_interval=config.refresh_interval,
        backoff=config.transport.backoff_schedule(),
    )
    return SubscriptionRegistry(
        transport_factory=NATSTransportFactory(config.transport, logger=logger, metrics=metrics),
        config=registry_config,
        logger=logger,
        metrics=metrics,
        clock=clock,
    )
