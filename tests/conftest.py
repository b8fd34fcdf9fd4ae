"""Pytest configuration and shared fixtures."""

from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from chainstream.application.subscription_registry import RegistryConfig, SubscriptionRegistry
from chainstream.domain.value_objects import BackoffSchedule, Duration, SubscriptionKey
from chainstream.infrastructure.in_memory_metrics import InMemoryMetrics
from tests.fakes import FakeChannelTransport, FixedClock


@pytest.fixture
def key_a() -> SubscriptionKey:
    return SubscriptionKey(instrument="NIFTY", expiry="2024-06-27")


@pytest.fixture
def key_b() -> SubscriptionKey:
    return SubscriptionKey(instrument="BANKNIFTY", expiry="2024-06-26")


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    mock = MagicMock()
    mock.info = MagicMock()
    mock.warning = MagicMock()
    mock.error = MagicMock()
    mock.debug = MagicMock()
    mock.exception = MagicMock()
    return mock


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def transport() -> FakeChannelTransport:
    return FakeChannelTransport()


@pytest.fixture
def transport_factory(transport):
    """Factory handing out the shared fake transport, counting calls."""

    def build(backoff: BackoffSchedule) -> FakeChannelTransport:
        transport.backoff = backoff
        return transport

    return MagicMock(side_effect=build)


@pytest.fixture
def registry_config() -> RegistryConfig:
    return RegistryConfig(refresh_interval=Duration(seconds=30))


@pytest_asyncio.fixture
async def registry(transport_factory, registry_config, mock_logger, metrics, clock):
    """Registry wired to the fake transport; torn down after the test."""
    registry = SubscriptionRegistry(
        transport_factory,
        config=registry_config,
        logger=mock_logger,
        metrics=metrics,
        clock=clock,
    )
    yield registry
    await registry.teardown()


@pytest_asyncio.fixture
async def subscribed(registry, transport, key_a):
    """Registry already SUBSCRIBED to key_a, with the send log cleared."""
    await registry.set_key(key_a)
    await transport.emit_opened()
    transport.sent.clear()
    return registry
