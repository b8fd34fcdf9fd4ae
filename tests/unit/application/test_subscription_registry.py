"""Unit tests for SubscriptionRegistry."""

import asyncio
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from chainstream.application.subscription_registry import RegistryConfig, SubscriptionRegistry
from chainstream.domain.enums import ChannelMethod, ConnectionState
from chainstream.domain.models import SendOutcome, TransportEvent
from chainstream.domain.value_objects import BackoffSchedule, Duration
from tests.fakes import FIXED_NOW, settle

SUBSCRIBE = ChannelMethod.SUBSCRIBE
UNSUBSCRIBE = ChannelMethod.UNSUBSCRIBE
REFRESH = ChannelMethod.REFRESH


class TestRegistryInit:
    """Test registry construction."""

    @pytest.mark.asyncio
    async def test_starts_idle_without_transport(self, registry, transport_factory):
        """A new registry is IDLE and has not built a transport."""
        assert registry.state is ConnectionState.IDLE
        assert registry.key is None
        assert registry.transport is None
        transport_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_initial_view_is_empty(self, registry):
        view = registry.view
        assert view.snapshot is None
        assert view.error is None
        assert view.is_connected is False
        assert view.state is ConnectionState.IDLE

    def test_default_config(self):
        """Defaults are a 30 second refresh and the standard backoff."""
        config = RegistryConfig()
        assert config.refresh_interval == Duration(seconds=30)
        assert config.backoff.delays_ms == (0, 2000, 5000, 10000, 30000)

    @pytest.mark.parametrize("seconds", [0, 0.001])
    def test_refresh_interval_floor(self, seconds):
        """A zero or near-zero interval would spin the refresh timer."""
        with pytest.raises(ValidationError, match="at least 10ms"):
            RegistryConfig(refresh_interval=Duration(seconds=seconds))

    @pytest.mark.asyncio
    async def test_transport_built_once_with_backoff(self, registry, transport_factory, key_a, key_b):
        """The transport is built lazily, once, with the configured schedule."""
        await registry.set_key(key_a)
        await registry.set_key(key_b)
        await registry.set_key(None)
        await registry.set_key(key_a)

        transport_factory.assert_called_once()
        backoff = transport_factory.call_args[0][0]
        assert isinstance(backoff, BackoffSchedule)
        assert backoff == RegistryConfig().backoff


class TestHappyPath:
    """Scenario A: select a key, connect, receive a snapshot."""

    @pytest.mark.asyncio
    async def test_connect_subscribe_and_deliver(self, registry, transport, key_a):
        await registry.set_key(key_a)

        assert registry.state is ConnectionState.CONNECTING
        assert transport.open_calls == 1
        assert transport.sent == []

        await transport.emit_opened()

        assert registry.state is ConnectionState.SUBSCRIBED
        assert transport.sent == [(SUBSCRIBE, key_a), (REFRESH, key_a)]

        await transport.push_update(key_a, {"strikes": [{"strike": 100}]})

        view = registry.view
        assert view.snapshot is not None
        assert view.snapshot.key == key_a
        assert view.snapshot.payload == {"strikes": [{"strike": 100}]}
        assert view.snapshot.received_at == FIXED_NOW
        assert view.error is None
        assert view.is_connected is True

    @pytest.mark.asyncio
    async def test_snapshot_replaced_by_later_update(self, subscribed, transport, key_a):
        await transport.push_update(key_a, {"v": 1})
        await transport.push_update(key_a, {"v": 2})

        assert subscribed.view.snapshot.payload == {"v": 2}

    @pytest.mark.asyncio
    async def test_delivery_metrics(self, subscribed, transport, metrics, key_a):
        await transport.push_update(key_a, {"v": 1})
        await transport.push_error(key_a, "oops")

        assert metrics.counter("registry.snapshots.delivered") == 1
        assert metrics.counter("registry.errors.delivered") == 1
        assert metrics.counter("registry.send.subscribe.ok") == 1


class TestHandOff:
    """Scenario B: changing the key while subscribed."""

    @pytest.mark.asyncio
    async def test_unsubscribe_old_before_subscribe_new(self, subscribed, transport, key_a, key_b):
        await subscribed.set_key(key_b)

        assert transport.sent == [(UNSUBSCRIBE, key_a), (SUBSCRIBE, key_b), (REFRESH, key_b)]
        assert subscribed.state is ConnectionState.SUBSCRIBED
        assert subscribed.key == key_b

    @pytest.mark.asyncio
    async def test_late_update_for_old_key_is_discarded(
        self, subscribed, transport, metrics, key_a, key_b
    ):
        await transport.push_update(key_a, {"v": "a"})
        await subscribed.set_key(key_b)

        await transport.push_update(key_a, {"v": "late a"})

        assert subscribed.view.snapshot.payload == {"v": "a"}
        assert metrics.counter("registry.messages.stale") == 1

        await transport.push_update(key_b, {"v": "b"})
        assert subscribed.view.snapshot.key == key_b
        assert subscribed.view.snapshot.payload == {"v": "b"}

    @pytest.mark.asyncio
    async def test_failed_unsubscribe_does_not_block_hand_off(
        self, subscribed, transport, key_a, key_b
    ):
        transport.fail_next(UNSUBSCRIBE, "unknown group")

        await subscribed.set_key(key_b)

        assert transport.count(SUBSCRIBE, key_b) == 1
        assert subscribed.view.error is None

    @pytest.mark.asyncio
    async def test_same_key_is_a_no_op(self, subscribed, transport, key_a):
        await subscribed.set_key(key_a)

        assert transport.sent == []
        assert subscribed.state is ConnectionState.SUBSCRIBED

    @pytest.mark.asyncio
    async def test_clear_key_goes_idle(self, subscribed, transport, key_a):
        await subscribed.set_key(None)

        assert subscribed.state is ConnectionState.IDLE
        assert subscribed.key is None
        assert transport.sent == [(UNSUBSCRIBE, key_a)]
        assert not subscribed.refresh_scheduler.is_running

    @pytest.mark.asyncio
    async def test_idle_with_open_channel_subscribes_directly(
        self, subscribed, transport, key_a, key_b
    ):
        """After going IDLE the channel stays open and is reused."""
        await subscribed.set_key(None)
        transport.sent.clear()

        await subscribed.set_key(key_b)

        assert subscribed.state is ConnectionState.SUBSCRIBED
        assert transport.open_calls == 1
        assert transport.sent == [(SUBSCRIBE, key_b), (REFRESH, key_b)]

    @pytest.mark.asyncio
    async def test_consumer_never_sees_two_keys(self, subscribed, transport, key_a, key_b):
        """Every published view carries exactly the key that is active."""
        views = []
        subscribed.observe(views.append)

        await subscribed.set_key(key_b)

        assert views
        assert all(view.key == key_b for view in views)


class TestReconnection:
    """Scenario C: channel drops and comes back."""

    @pytest.mark.asyncio
    async def test_drop_and_resubscribe(self, subscribed, transport, key_a):
        await transport.emit_closed()

        assert subscribed.state is ConnectionState.RECONNECTING
        assert subscribed.view.is_connected is False
        assert not subscribed.refresh_scheduler.is_running

        await transport.emit_reconnected()

        assert subscribed.state is ConnectionState.SUBSCRIBED
        assert subscribed.view.is_connected is True
        assert transport.sent == [(SUBSCRIBE, key_a), (REFRESH, key_a)]
        assert subscribed.refresh_scheduler.is_running

    @pytest.mark.asyncio
    async def test_key_change_while_reconnecting(self, subscribed, transport, key_b):
        await transport.emit_closed()
        await subscribed.set_key(key_b)

        assert subscribed.state is ConnectionState.RECONNECTING
        assert subscribed.key == key_b
        assert transport.sent == []

        await transport.emit_reconnected()

        assert transport.sent == [(SUBSCRIBE, key_b), (REFRESH, key_b)]

    @pytest.mark.asyncio
    async def test_clear_key_while_reconnecting(self, subscribed, transport):
        await transport.emit_closed()
        await subscribed.set_key(None)
        assert subscribed.state is ConnectionState.IDLE

        await transport.emit_reconnected()

        assert subscribed.state is ConnectionState.IDLE
        assert subscribed.view.is_connected is True
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_snapshot_survives_drop(self, subscribed, transport, key_a):
        await transport.push_update(key_a, {"v": 1})
        await transport.emit_closed()

        assert subscribed.view.snapshot.payload == {"v": 1}

    @pytest.mark.asyncio
    async def test_repeated_drops(self, subscribed, transport, key_a):
        for _ in range(3):
            await transport.emit_closed()
            await transport.emit_reconnected()

        assert subscribed.state is ConnectionState.SUBSCRIBED
        assert transport.count(SUBSCRIBE, key_a) == 3


class TestConnecting:
    """Transitions while the first connection is pending."""

    @pytest.mark.asyncio
    async def test_key_change_while_connecting(self, registry, transport, key_a, key_b):
        await registry.set_key(key_a)
        await registry.set_key(key_b)

        assert registry.state is ConnectionState.CONNECTING
        assert transport.open_calls == 1

        await transport.emit_opened()

        assert transport.sent == [(SUBSCRIBE, key_b), (REFRESH, key_b)]

    @pytest.mark.asyncio
    async def test_clear_key_while_connecting(self, registry, transport, key_a):
        await registry.set_key(key_a)
        await registry.set_key(None)
        assert registry.state is ConnectionState.IDLE

        await transport.emit_opened()

        assert registry.state is ConnectionState.IDLE
        assert registry.view.is_connected is True
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_reconnected_while_connecting_subscribes(self, registry, transport, key_a):
        await registry.set_key(key_a)
        await transport.emit_reconnected()

        assert registry.state is ConnectionState.SUBSCRIBED
        assert transport.count(SUBSCRIBE, key_a) == 1

    @pytest.mark.asyncio
    async def test_closed_while_connecting_keeps_waiting(self, registry, transport, key_a):
        await registry.set_key(key_a)
        await transport.emit_closed()

        assert registry.state is ConnectionState.CONNECTING
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_connectivity_tracked_while_idle(self, registry, transport, key_a):
        await registry.set_key(key_a)
        await registry.set_key(None)

        await transport.emit_opened()
        assert registry.view.is_connected is True
        await transport.emit_closed()
        assert registry.view.is_connected is False
        assert registry.state is ConnectionState.IDLE


class TestServerErrors:
    """Scenario D: error pushes from the server."""

    @pytest.mark.asyncio
    async def test_error_kept_alongside_snapshot(self, subscribed, transport, key_a):
        await transport.push_update(key_a, {"v": 1})
        await transport.push_error(key_a, "Invalid expiry date: 2024-13-01")

        view = subscribed.view
        assert view.error == "Invalid expiry date: 2024-13-01"
        assert view.snapshot.payload == {"v": 1}

    @pytest.mark.asyncio
    async def test_update_clears_error(self, subscribed, transport, key_a):
        await transport.push_error(key_a, "provider down")
        await transport.push_update(key_a, {"v": 2})

        assert subscribed.view.error is None

    @pytest.mark.asyncio
    async def test_error_for_other_key_discarded(self, subscribed, transport, key_b, metrics):
        await transport.push_error(key_b, "not yours")

        assert subscribed.view.error is None
        assert metrics.counter("registry.messages.stale") == 1

    @pytest.mark.asyncio
    async def test_error_does_not_change_state(self, subscribed, transport, key_a):
        await transport.push_error(key_a, "provider down")

        assert subscribed.state is ConnectionState.SUBSCRIBED
        assert subscribed.refresh_scheduler.is_running


class TestSubscribeFailure:
    """A rejected subscribe is surfaced and retried on the next tick."""

    @pytest.mark.asyncio
    async def test_failure_surfaced_and_retried_on_tick(
        self, registry, transport, metrics, key_a
    ):
        await registry.set_key(key_a)
        transport.fail_next(SUBSCRIBE, "hub unavailable")

        await transport.emit_opened()

        assert registry.state is ConnectionState.SUBSCRIBED
        assert registry.view.error == "hub unavailable"
        assert metrics.counter("registry.subscribe.failed") == 1
        assert transport.sent == [(SUBSCRIBE, key_a), (REFRESH, key_a)]

        transport.sent.clear()
        await registry.refresh_scheduler.fire()
        assert transport.sent == [(SUBSCRIBE, key_a), (REFRESH, key_a)]

        transport.sent.clear()
        await registry.refresh_scheduler.fire()
        assert transport.sent == [(REFRESH, key_a)]

    @pytest.mark.asyncio
    async def test_retry_keeps_trying_until_success(self, registry, transport, key_a):
        await registry.set_key(key_a)
        transport.fail_next(SUBSCRIBE, "busy")
        transport.fail_next(SUBSCRIBE, "busy")
        await transport.emit_opened()

        await registry.refresh_scheduler.fire()
        await registry.refresh_scheduler.fire()
        await registry.refresh_scheduler.fire()

        assert transport.count(SUBSCRIBE, key_a) == 3

    @pytest.mark.asyncio
    async def test_failure_after_hand_off(self, subscribed, transport, key_b):
        transport.fail_next(SUBSCRIBE, "rejected")

        await subscribed.set_key(key_b)

        assert subscribed.view.error == "rejected"
        transport.sent.clear()
        await subscribed.refresh_scheduler.fire()
        assert transport.sent == [(SUBSCRIBE, key_b), (REFRESH, key_b)]

    @pytest.mark.asyncio
    async def test_send_exception_becomes_failure(self, registry, transport, mock_logger, key_a):
        await registry.set_key(key_a)
        transport.raise_next(SUBSCRIBE, RuntimeError("socket exploded"))

        await transport.emit_opened()

        assert registry.view.error == "socket exploded"
        assert registry.state is ConnectionState.SUBSCRIBED
        mock_logger.exception.assert_called()


class TestTeardown:
    """Scenario E and teardown idempotence."""

    @pytest.mark.asyncio
    async def test_teardown_while_connecting(self, registry, transport, key_a):
        await registry.set_key(key_a)
        await registry.teardown()

        assert registry.state is ConnectionState.CLOSED
        assert transport.close_calls == 1

        await transport.emit_opened()

        assert transport.sent == []
        assert registry.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_teardown_while_subscribed(self, subscribed, transport, key_a):
        await subscribed.teardown()

        assert transport.sent == [(UNSUBSCRIBE, key_a)]
        assert transport.close_calls == 1
        assert not subscribed.refresh_scheduler.is_running
        view = subscribed.view
        assert view.state is ConnectionState.CLOSED
        assert view.is_connected is False

    @pytest.mark.asyncio
    async def test_teardown_is_idempotent(self, subscribed, transport):
        await subscribed.teardown()
        await subscribed.teardown()

        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_everything_after_teardown_is_a_no_op(self, subscribed, transport, key_a, key_b):
        await subscribed.teardown()
        transport.sent.clear()

        await subscribed.set_key(key_b)
        await transport.emit_reconnected()
        await transport.push_update(key_a, {"v": 1})
        outcome = await subscribed.refresh()

        assert transport.sent == []
        assert subscribed.key == key_a
        assert subscribed.view.snapshot is None
        assert outcome.ok is False
        assert subscribed.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_teardown_before_any_key(self, registry, transport_factory):
        await registry.teardown()

        assert registry.state is ConnectionState.CLOSED
        transport_factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_teardown_during_inflight_subscribe(self, registry, transport, key_a):
        """The subscribe outcome arriving after teardown starts nothing."""
        await registry.set_key(key_a)
        transport.hold(SUBSCRIBE)

        opened = asyncio.create_task(transport.emit_opened())
        await settle()
        closing = asyncio.create_task(registry.teardown())
        await settle()

        assert registry.state is ConnectionState.CLOSED

        transport.release(SUBSCRIBE)
        await opened
        await closing

        assert not registry.refresh_scheduler.is_running
        assert transport.count(REFRESH) == 0
        assert transport.methods() == [SUBSCRIBE, UNSUBSCRIBE]
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_async_context_manager_tears_down(
        self, transport_factory, transport, mock_logger, key_a
    ):
        async with SubscriptionRegistry(transport_factory, logger=mock_logger) as registry:
            await registry.set_key(key_a)

        assert registry.state is ConnectionState.CLOSED
        assert transport.close_calls == 1


class TestOrdering:
    """Transitions are serialized against transport events."""

    @pytest.mark.asyncio
    async def test_update_waits_for_hand_off(self, subscribed, transport, key_a, key_b):
        """An update for the new key queued during hand-off lands after it."""
        transport.hold(UNSUBSCRIBE)

        hand_off = asyncio.create_task(subscribed.set_key(key_b))
        await settle()
        assert subscribed.key == key_b

        update = asyncio.create_task(transport.push_update(key_b, {"v": "b"}))
        await settle()
        assert subscribed.view.snapshot is None

        transport.release(UNSUBSCRIBE)
        await hand_off
        await update

        assert transport.sent == [(UNSUBSCRIBE, key_a), (SUBSCRIBE, key_b), (REFRESH, key_b)]
        assert subscribed.view.snapshot.payload == {"v": "b"}

    @pytest.mark.asyncio
    async def test_rapid_key_changes_end_on_last_key(self, subscribed, transport, key_a, key_b):
        await subscribed.set_key(key_b)
        await subscribed.set_key(key_a)
        await subscribed.set_key(key_b)

        assert subscribed.key == key_b
        assert transport.sent[-2:] == [(SUBSCRIBE, key_b), (REFRESH, key_b)]
        assert transport.count(UNSUBSCRIBE) == 3


class TestRefreshTimer:
    """The refresh timer runs exactly while SUBSCRIBED."""

    @pytest.mark.asyncio
    async def test_timer_follows_state(self, registry, transport, key_a, key_b):
        scheduler = registry.refresh_scheduler
        assert not scheduler.is_running

        await registry.set_key(key_a)
        assert not scheduler.is_running

        await transport.emit_opened()
        assert scheduler.is_running

        await registry.set_key(key_b)
        assert scheduler.is_running

        await transport.emit_closed()
        assert not scheduler.is_running

        await transport.emit_reconnected()
        assert scheduler.is_running

        await registry.set_key(None)
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_periodic_refresh_targets_active_key(
        self, transport_factory, transport, mock_logger, key_a, key_b
    ):
        config = RegistryConfig(refresh_interval=Duration.from_milliseconds(20))
        registry = SubscriptionRegistry(transport_factory, config=config, logger=mock_logger)
        try:
            await registry.set_key(key_a)
            await transport.emit_opened()
            await asyncio.sleep(0.09)
            assert transport.count(REFRESH, key_a) >= 3

            await registry.set_key(key_b)
            refreshes_a = transport.count(REFRESH, key_a)
            await asyncio.sleep(0.09)

            assert transport.count(REFRESH, key_a) == refreshes_a
            assert transport.count(REFRESH, key_b) >= 3
        finally:
            await registry.teardown()

    @pytest.mark.asyncio
    async def test_no_ticks_after_teardown(
        self, transport_factory, transport, mock_logger, key_a
    ):
        config = RegistryConfig(refresh_interval=Duration.from_milliseconds(10))
        registry = SubscriptionRegistry(transport_factory, config=config, logger=mock_logger)
        await registry.set_key(key_a)
        await transport.emit_opened()
        await registry.teardown()
        sent = len(transport.sent)

        await asyncio.sleep(0.05)

        assert len(transport.sent) == sent

    @pytest.mark.asyncio
    async def test_refresh_failure_is_swallowed(self, subscribed, transport, key_a):
        transport.fail_next(REFRESH, "timeout")

        outcome = await subscribed.refresh_scheduler.fire()

        assert outcome.ok is False
        assert subscribed.view.error is None
        assert subscribed.state is ConnectionState.SUBSCRIBED


class TestManualRefresh:
    """On-demand refresh of the active key."""

    @pytest.mark.asyncio
    async def test_refresh_when_subscribed(self, subscribed, transport, key_a):
        outcome = await subscribed.refresh()

        assert outcome == SendOutcome.success()
        assert transport.sent == [(REFRESH, key_a)]

    @pytest.mark.asyncio
    async def test_refresh_when_not_subscribed(self, registry, transport, key_a):
        outcome = await registry.refresh()
        assert outcome == SendOutcome.failed("not subscribed")

        await registry.set_key(key_a)
        outcome = await registry.refresh()
        assert outcome == SendOutcome.failed("not subscribed")
        assert transport.sent == []


class TestObserve:
    """View listeners."""

    @pytest.mark.asyncio
    async def test_listener_receives_changes(self, registry, transport, key_a):
        views = []
        registry.observe(views.append)

        await registry.set_key(key_a)
        await transport.emit_opened()
        await transport.push_update(key_a, {"v": 1})

        states = [view.state for view in views]
        assert ConnectionState.CONNECTING in states
        assert ConnectionState.SUBSCRIBED in states
        assert views[-1].snapshot.payload == {"v": 1}

    @pytest.mark.asyncio
    async def test_unsubscribe_listener(self, subscribed, transport, key_a):
        listener = MagicMock()
        remove = subscribed.observe(listener)
        remove()
        remove()

        await transport.push_update(key_a, {"v": 1})

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_raising_listener_is_isolated(self, subscribed, transport, mock_logger, key_a):
        healthy = MagicMock()
        subscribed.observe(MagicMock(side_effect=RuntimeError("render failed")))
        subscribed.observe(healthy)

        await transport.push_update(key_a, {"v": 1})

        healthy.assert_called_once()
        assert subscribed.view.snapshot.payload == {"v": 1}
        mock_logger.exception.assert_called()

    @pytest.mark.asyncio
    async def test_closed_view_published_on_teardown(self, subscribed):
        views = []
        subscribed.observe(views.append)

        await subscribed.teardown()

        assert views[-1].state is ConnectionState.CLOSED
        assert views[-1].is_connected is False


class TestMessageEdgeCases:
    """Messages outside the normal subscribed flow."""

    @pytest.mark.asyncio
    async def test_message_while_idle_is_stale(self, registry, metrics, key_a):
        await registry.handle_transport_event(TransportEvent.update(key_a, {"v": 1}))

        assert registry.view.snapshot is None
        assert metrics.counter("registry.messages.stale") == 1

    @pytest.mark.asyncio
    async def test_late_update_for_active_key_while_reconnecting(
        self, subscribed, transport, key_a
    ):
        await transport.emit_closed()
        await transport.push_update(key_a, {"v": "late"})

        assert subscribed.view.snapshot.payload == {"v": "late"}
        assert subscribed.state is ConnectionState.RECONNECTING
