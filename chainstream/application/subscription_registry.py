"""Subscription registry: the single-key live subscription state machine.

The registry owns the one active :class:`SubscriptionKey`, the channel
transport and the refresh scheduler. Consumers drive it with ``set_key`` and
``teardown``; the transport drives it through ``handle_transport_event``.
Every entry point applies its transition under one ``asyncio.Lock`` and
mutates state and key before its first await, so a consumer never observes
two keys at once and a transport callback never lands mid-transition.

Transitions (CLOSED is terminal, every event there is a no-op)::

    IDLE          set_key(k)        open(), or subscribe if already up -> CONNECTING / SUBSCRIBED
    CONNECTING    opened            subscribe(k), refresh               -> SUBSCRIBED
    SUBSCRIBED    set_key(k2)       unsubscribe(k) best-effort,
                                    subscribe(k2), refresh              -> SUBSCRIBED
    SUBSCRIBED    set_key(None)     unsubscribe(k) best-effort          -> IDLE
    SUBSCRIBED    closed            stop refresh timer                  -> RECONNECTING
    RECONNECTING  reconnected       subscribe(k), refresh               -> SUBSCRIBED
    RECONNECTING  set_key(k2)       remember k2                         -> RECONNECTING
    any           teardown()        stop timer, unsubscribe best-effort,
                                    close()                             -> CLOSED
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..domain.enums import ChannelMethod, ConnectionState, InboundMessage, TransportEventType
from ..domain.models import ErrorEvent, SendOutcome, Snapshot, SubscriptionView, TransportEvent
from ..domain.value_objects import BackoffSchedule, Duration, SubscriptionKey
from ..ports.channel_transport import ChannelTransportPort
from ..ports.clock import ClockPort
from ..ports.logger import LoggerPort
from ..ports.metrics import MetricsPort
from .refresh_scheduler import RefreshScheduler

TransportFactory = Callable[[BackoffSchedule], ChannelTransportPort]
ViewListener = Callable[[SubscriptionView], None]


class RegistryConfig(BaseModel):
    """Configuration DTO for SubscriptionRegistry."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    refresh_interval: Duration = Field(default_factory=lambda: Duration(seconds=30))
    backoff: BackoffSchedule = Field(default_factory=BackoffSchedule)

    @field_validator("refresh_interval")
    @classmethod
    def validate_refresh_interval(cls, v: Duration) -> Duration:
        if v.seconds < 0.01:
            raise ValueError("Refresh interval must be at least 10ms")
        return v


class SubscriptionRegistry:
    """Keeps a consumer supplied with live pushes for one key at a time."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        config: RegistryConfig | None = None,
        logger: LoggerPort | None = None,
        metrics: MetricsPort | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        """Initialize the registry in IDLE with no key.

        Args:
            transport_factory: Builds the channel transport on first use; it
                receives the backoff schedule the transport must apply
            config: Refresh interval and backoff schedule
            logger: Optional logger
            metrics: Optional metrics port
            clock: Clock used to stamp received snapshots
        """
        self._transport_factory = transport_factory
        self._config = config or RegistryConfig()
        self._logger = logger or self._create_default_logger()
        self._metrics = metrics or self._create_default_metrics()
        self._clock = clock or self._create_default_clock()

        self._transport: ChannelTransportPort | None = None
        self._state = ConnectionState.IDLE
        self._key: SubscriptionKey | None = None
        self._snapshot: Snapshot | None = None
        self._error: ErrorEvent | None = None
        self._connected = False
        self._resubscribe_key: SubscriptionKey | None = None
        self._listeners: list[ViewListener] = []
        self._lock = asyncio.Lock()

        self._scheduler = RefreshScheduler(
            current_key=self._refresh_key,
            send_refresh=self._send_refresh,
            interval=self._config.refresh_interval,
            logger=self._logger,
        )

    def _create_default_logger(self) -> LoggerPort:
        from ..infrastructure.simple_logger import SimpleLogger

        return SimpleLogger("chainstream.registry")

    def _create_default_metrics(self) -> MetricsPort:
        from ..infrastructure.in_memory_metrics import InMemoryMetrics

        return InMemoryMetrics()

    def _create_default_clock(self) -> ClockPort:
        from ..infrastructure.system_clock import SystemClock

        return SystemClock()

    # Consumer-facing state

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def key(self) -> SubscriptionKey | None:
        return self._key

    @property
    def transport(self) -> ChannelTransportPort | None:
        return self._transport

    @property
    def refresh_scheduler(self) -> RefreshScheduler:
        return self._scheduler

    @property
    def view(self) -> SubscriptionView:
        """Current observable tuple."""
        return SubscriptionView(
            snapshot=self._snapshot,
            error=self._error.message if self._error else None,
            is_connected=self._connected,
            key=self._key,
            state=self._state,
        )

    def observe(self, listener: ViewListener) -> Callable[[], None]:
        """Register a listener called with the new view after every change.

        Listeners run synchronously inside the transition that changed the
        view and must not await registry operations.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # Consumer operations

    async def set_key(self, key: SubscriptionKey | None) -> None:
        """Change the active key; None drops the current interest."""
        if self._state.is_terminal():
            self._logger.debug("set_key after teardown ignored")
            return

        async with self._lock:
            if self._state.is_terminal() or key == self._key:
                return

            previous_key, previous_state = self._key, self._state
            self._key = key
            self._resubscribe_key = None
            self._logger.info(
                "Subscription key changed",
                previous=str(previous_key) if previous_key else None,
                current=str(key) if key else None,
                state=previous_state.value,
            )

            if previous_state is ConnectionState.SUBSCRIBED:
                await self._hand_off(previous_key, key)
            elif previous_state is ConnectionState.IDLE:
                await self._activate(key)
            else:
                # CONNECTING / RECONNECTING: the pending key is picked up on
                # opened / reconnected.
                if key is None:
                    self._set_state(ConnectionState.IDLE)
                self._publish()

    async def refresh(self) -> SendOutcome:
        """Request an immediate refresh of the active key."""
        if self._state is not ConnectionState.SUBSCRIBED or self._key is None:
            return SendOutcome.failed("not subscribed")
        outcome = await self._scheduler.fire()
        return outcome or SendOutcome.failed("not subscribed")

    async def teardown(self) -> None:
        """Release everything and make the instance inert. Idempotent."""
        if self._state.is_terminal():
            return

        previous_state = self._state
        self._set_state(ConnectionState.CLOSED)
        self._scheduler.stop()

        async with self._lock:
            transport, key = self._transport, self._key
            if transport is not None:
                if key is not None and previous_state in (
                    ConnectionState.SUBSCRIBED,
                    ConnectionState.RECONNECTING,
                ):
                    await self._send_best_effort(ChannelMethod.UNSUBSCRIBE, key)
                try:
                    await transport.close()
                except Exception as e:
                    self._logger.warning(f"Transport close failed: {e}")
            self._transport = None
            self._connected = False
            self._resubscribe_key = None

        self._logger.info("Subscription registry torn down")
        self._publish()
        self._listeners.clear()

    async def __aenter__(self) -> SubscriptionRegistry:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.teardown()

    # Transport entry point

    async def handle_transport_event(self, event: TransportEvent) -> None:
        """Feed one transport event into the state machine."""
        if self._state.is_terminal():
            return

        async with self._lock:
            if self._state.is_terminal():
                return

            if event.type in (TransportEventType.OPENED, TransportEventType.RECONNECTED):
                await self._on_channel_up(event.type)
            elif event.type is TransportEventType.CLOSED:
                self._on_channel_down()
            else:
                self._on_message(event)

    async def _on_channel_up(self, event_type: TransportEventType) -> None:
        self._set_connected(True)
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            self._publish()
            return

        self._logger.info(
            "Channel up",
            event_type=event_type.value,
            key=str(self._key) if self._key else None,
        )
        if self._key is None:
            self._set_state(ConnectionState.IDLE)
            self._publish()
        else:
            await self._enter_subscribed(self._key)

    def _on_channel_down(self) -> None:
        self._set_connected(False)
        if self._state is ConnectionState.SUBSCRIBED:
            self._scheduler.stop()
            self._set_state(ConnectionState.RECONNECTING)
            self._logger.warning(
                "Channel closed, waiting for reconnection",
                key=str(self._key) if self._key else None,
            )
        self._publish()

    def _on_message(self, event: TransportEvent) -> None:
        if event.key != self._key:
            self._metrics.increment("registry.messages.stale")
            self._logger.debug(
                "Discarded stale message",
                message_key=str(event.key),
                active_key=str(self._key) if self._key else None,
            )
            return

        if event.name is InboundMessage.UPDATE:
            self._snapshot = Snapshot(
                key=event.key, payload=event.payload, received_at=self._clock.now()
            )
            self._error = None
            self._metrics.increment("registry.snapshots.delivered")
        else:
            self._error = ErrorEvent(key=event.key, message=event.error or "Unknown error")
            self._metrics.increment("registry.errors.delivered")
        self._publish()

    # Transitions

    async def _activate(self, key: SubscriptionKey | None) -> None:
        """IDLE -> CONNECTING, or straight to SUBSCRIBED when already up."""
        if key is None:
            return

        transport = self._ensure_transport()
        if transport.is_connected:
            await self._enter_subscribed(key)
            return

        self._set_state(ConnectionState.CONNECTING)
        self._publish()
        try:
            await transport.open()
        except Exception as e:
            self._logger.error(f"Transport open failed: {e}", key=str(key))
            self._error = ErrorEvent(key=key, message=str(e))
            self._publish()

    async def _hand_off(
        self, previous_key: SubscriptionKey | None, key: SubscriptionKey | None
    ) -> None:
        """SUBSCRIBED(k) -> SUBSCRIBED(k2) or IDLE."""
        self._scheduler.stop()
        if key is None:
            self._set_state(ConnectionState.IDLE)
        self._publish()

        if previous_key is not None:
            await self._send_best_effort(ChannelMethod.UNSUBSCRIBE, previous_key)

        if key is not None and self._is_current(key):
            await self._subscribe(key)

    async def _enter_subscribed(self, key: SubscriptionKey) -> None:
        self._set_state(ConnectionState.SUBSCRIBED)
        self._publish()
        await self._subscribe(key)

    async def _subscribe(self, key: SubscriptionKey) -> None:
        """Subscribe the key, then start the refresh timer.

        A failed subscribe is surfaced to the consumer and retried on the
        next interval tick; the state stays SUBSCRIBED.
        """
        self._resubscribe_key = None
        outcome = await self._send(ChannelMethod.SUBSCRIBE, key)
        if not self._is_current(key):
            return

        if not outcome.ok:
            self._metrics.increment("registry.subscribe.failed")
            self._logger.warning(
                "Subscribe failed, retrying on next refresh tick",
                key=str(key),
                reason=outcome.reason,
            )
            self._error = ErrorEvent(key=key, message=outcome.reason or "subscribe failed")
            self._publish()

        await self._scheduler.start()
        if not outcome.ok and self._is_current(key):
            self._resubscribe_key = key

    # Refresh scheduler callbacks

    def _refresh_key(self) -> SubscriptionKey | None:
        if self._state is ConnectionState.SUBSCRIBED:
            return self._key
        return None

    async def _send_refresh(self, key: SubscriptionKey) -> SendOutcome:
        if self._resubscribe_key == key:
            outcome = await self._send(ChannelMethod.SUBSCRIBE, key)
            if outcome.ok and self._resubscribe_key == key:
                self._resubscribe_key = None
                self._logger.info("Resubscribed on refresh tick", key=str(key))
        return await self._send(ChannelMethod.REFRESH, key)

    # Helpers

    def _ensure_transport(self) -> ChannelTransportPort:
        if self._transport is None:
            self._transport = self._transport_factory(self._config.backoff)
            self._transport.set_event_handler(self.handle_transport_event)
        return self._transport

    async def _send(self, method: ChannelMethod, key: SubscriptionKey) -> SendOutcome:
        transport = self._transport
        if transport is None:
            return SendOutcome.failed("not connected")

        try:
            outcome = await transport.send(method, key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.exception(f"Transport send raised for {method.value}", exc_info=e)
            outcome = SendOutcome.failed(str(e))

        result = "ok" if outcome.ok else "failed"
        self._metrics.increment(f"registry.send.{method.value}.{result}")
        return outcome

    async def _send_best_effort(self, method: ChannelMethod, key: SubscriptionKey) -> None:
        """Send and ignore the outcome."""
        outcome = await self._send(method, key)
        if not outcome.ok:
            self._logger.debug(
                f"Best-effort {method.value} failed, ignored",
                key=str(key),
                reason=outcome.reason,
            )

    def _is_current(self, key: SubscriptionKey) -> bool:
        return self._state is ConnectionState.SUBSCRIBED and self._key == key

    def _set_state(self, state: ConnectionState) -> None:
        if self._state.is_terminal() or state is self._state:
            return
        self._logger.debug("Registry state changed", old_state=self._state.value, new_state=state.value)
        self._state = state

    def _set_connected(self, connected: bool) -> None:
        self._connected = connected
        self._metrics.gauge("registry.connected", 1 if connected else 0)

    def _publish(self) -> None:
        if not self._listeners:
            return
        view = self.view
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as e:
                self._logger.exception("View listener raised", exc_info=e)
