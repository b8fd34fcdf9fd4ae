"""End-to-end subscription flow against a real NATS server."""

import uuid

import pytest
import pytest_asyncio

from chainstream.domain.enums import ConnectionState
from chainstream.domain.value_objects import Duration, SubscriptionKey
from chainstream.infrastructure.config import ChainStreamConfig, NATSTransportConfig
from chainstream.infrastructure.factories import create_registry
from chainstream.infrastructure.nats_chain_hub import (
    NATSChainHub,
    StaticChainProvider,
    build_demo_chain,
)
from tests.fakes import eventually

pytestmark = pytest.mark.integration

NIFTY = SubscriptionKey.of("NIFTY", "2024-06-27")
BANKNIFTY = SubscriptionKey.of("BANKNIFTY", "2024-06-26")


@pytest.fixture
def config(nats_container):
    prefix = f"it{uuid.uuid4().hex[:8]}"
    return ChainStreamConfig(
        transport=NATSTransportConfig(servers=[nats_container], subject_prefix=prefix),
        refresh_interval=Duration(seconds=0.2),
    )


@pytest_asyncio.fixture
async def hub(config):
    hub = NATSChainHub(StaticChainProvider(builder=build_demo_chain), config.transport)
    await hub.start()
    yield hub
    await hub.stop()


@pytest_asyncio.fixture
async def registry(config, hub):
    registry = create_registry(config)
    yield registry
    await registry.teardown()


class TestLiveSubscription:
    @pytest.mark.asyncio
    async def test_snapshot_arrives(self, registry):
        await registry.set_key(NIFTY)

        await eventually(lambda: registry.view.snapshot is not None, timeout=5)

        view = registry.view
        assert view.is_connected
        assert view.state is ConnectionState.SUBSCRIBED
        assert view.snapshot.key == NIFTY
        assert view.snapshot.payload["instrument"] == "NIFTY"

    @pytest.mark.asyncio
    async def test_hand_off_switches_groups(self, registry, hub):
        await registry.set_key(NIFTY)
        await eventually(lambda: registry.view.snapshot is not None, timeout=5)

        await registry.set_key(BANKNIFTY)
        await eventually(
            lambda: registry.view.snapshot.key == BANKNIFTY,
            timeout=5,
        )

        assert hub.members(NIFTY) == set()
        assert len(hub.members(BANKNIFTY)) == 1

    @pytest.mark.asyncio
    async def test_invalid_expiry_reported(self, registry):
        await registry.set_key(SubscriptionKey.of("NIFTY", "someday"))

        await eventually(lambda: registry.view.error is not None, timeout=5)

        assert registry.view.error == "Invalid expiry date: someday"
        assert registry.view.snapshot is None

    @pytest.mark.asyncio
    async def test_periodic_refresh_keeps_data_fresh(self, registry):
        await registry.set_key(NIFTY)
        await eventually(lambda: registry.view.snapshot is not None, timeout=5)
        first = registry.view.snapshot.received_at

        await eventually(lambda: registry.view.snapshot.received_at > first, timeout=5)

    @pytest.mark.asyncio
    async def test_teardown_leaves_group(self, registry, hub):
        await registry.set_key(NIFTY)
        await eventually(lambda: hub.members(NIFTY), timeout=5)

        await registry.teardown()

        assert registry.state is ConnectionState.CLOSED
        assert hub.members(NIFTY) == set()
