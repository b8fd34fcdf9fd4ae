"""NATS adapter - Concrete implementation of ChannelTransportPort."""

import asyncio
import contextlib

import nats
from nats.aio.client import Client as NATSClient
from nats.aio.msg import Msg

from ..domain.enums import ChannelMethod
from ..domain.models import ChannelReply, ChannelRequest, PushEnvelope, SendOutcome, TransportEvent
from ..domain.patterns import SubjectPatterns
from ..domain.value_objects import BackoffSchedule, SubscriptionKey
from ..ports.channel_transport import ChannelTransportPort, TransportEventHandler
from ..ports.logger import LoggerPort
from ..ports.metrics import MetricsPort
from .config import LogContext, NATSTransportConfig
from .in_memory_metrics import InMemoryMetrics
from .serialization import Serializer


class NATSChannelTransport(ChannelTransportPort):
    """NATS implementation of the channel transport port.

    Requests go out as NATS request/reply on ``{prefix}.{method}``; pushes
    arrive on ``{prefix}.push.{client_id}.{name}``. The nats-py client is
    created with its own reconnect disabled: a lost connection is detected
    through ``closed_cb`` and re-established here, paced by the backoff
    schedule, so the attempt counter and delays stay under our control.
    """

    def __init__(
        self,
        config: NATSTransportConfig | None = None,
        backoff: BackoffSchedule | None = None,
        logger: LoggerPort | None = None,
        metrics: MetricsPort | None = None,
    ):
        """Initialize the transport.

        Args:
            config: Connection configuration. If not provided, uses defaults.
            backoff: Reconnection schedule; defaults to the config's delays
            logger: Optional logger
            metrics: Optional metrics port
        """
        self._config = config or NATSTransportConfig()
        self._backoff = backoff or self._config.backoff_schedule()
        self._logger = logger or self._create_default_logger()
        self._metrics = metrics or InMemoryMetrics()
        self._serializer = Serializer(self._config.use_msgpack)

        self._nc: NATSClient | None = None
        self._generation = 0
        self._handler: TransportEventHandler | None = None
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._dispatcher: asyncio.Task | None = None
        self._connector: asyncio.Task | None = None
        self._closing = False

    def _create_default_logger(self) -> LoggerPort:
        from .simple_logger import SimpleLogger

        return SimpleLogger("chainstream.transport")

    @property
    def backoff(self) -> BackoffSchedule:
        return self._backoff

    @property
    def client_id(self) -> str:
        return self._config.client_id

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    @property
    def is_closed(self) -> bool:
        return self._closing

    def set_event_handler(self, handler: TransportEventHandler) -> None:
        self._handler = handler

    async def open(self) -> None:
        """Start connecting in the background.

        Returns immediately; ``opened`` is emitted once the first connection
        succeeds. Failed attempts are retried on the backoff schedule.
        Calling it again while connecting or connected does nothing.
        """
        if self._closing or self.is_connected:
            return
        if self._connector is not None and not self._connector.done():
            return

        self._ensure_dispatcher()
        self._connector = asyncio.create_task(self._connect_loop(reconnecting=False))

    async def close(self) -> None:
        """Close the connection and stop reconnecting. Idempotent."""
        if self._closing:
            return
        self._closing = True

        connector, self._connector = self._connector, None
        if connector is not None:
            connector.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await connector

        nc, self._nc = self._nc, None
        if nc is not None:
            try:
                await nc.close()
            except Exception as e:
                self._logger.warning(f"Error closing NATS connection: {e}")

        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None and dispatcher is not asyncio.current_task():
            dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await dispatcher

        self._metrics.gauge("transport.connected", 0)
        self._logger.info("Channel transport closed", **self._log_context("close"))

    async def send(self, method: ChannelMethod, key: SubscriptionKey) -> SendOutcome:
        """Send a request and wait for the hub's reply."""
        nc = self._nc
        if nc is None or not nc.is_connected:
            self._metrics.increment(f"transport.send.{method.value}.failed")
            return SendOutcome.failed("not connected")

        subject = SubjectPatterns.request(self._config.subject_prefix, method)
        request = ChannelRequest.for_key(method, self._config.client_id, key)

        with self._metrics.timer(f"transport.send.{method.value}"):
            try:
                response = await nc.request(
                    subject,
                    self._serializer.serialize(request),
                    timeout=self._config.request_timeout,
                )
                reply = self._serializer.deserialize(response.data, ChannelReply)
            except TimeoutError:
                self._metrics.increment(f"transport.send.{method.value}.failed")
                return SendOutcome.failed(f"Timeout sending {method.value}")
            except Exception as e:
                self._metrics.increment(f"transport.send.{method.value}.failed")
                return SendOutcome.failed(str(e) or type(e).__name__)

        if not reply.success:
            self._metrics.increment(f"transport.send.{method.value}.failed")
            return SendOutcome.failed(reply.error or f"{method.value} rejected")

        self._metrics.increment(f"transport.send.{method.value}.ok")
        return SendOutcome.success()

    # Connection management

    async def _connect_loop(self, reconnecting: bool) -> None:
        """Connect, retrying on the backoff schedule until it works or we close."""
        attempt = 0
        while not self._closing:
            delay = self._backoff.delay_seconds(attempt)
            if delay > 0:
                await asyncio.sleep(delay)
            attempt += 1
            if reconnecting:
                self._metrics.increment("transport.reconnect.attempts")

            nc = await self._try_connect(attempt)
            if nc is None:
                continue
            if self._closing:
                with contextlib.suppress(Exception):
                    await nc.close()
                return

            self._nc = nc
            self._metrics.gauge("transport.connected", 1)
            self._logger.info(
                "Reconnected to NATS" if reconnecting else "Connected to NATS",
                attempt=attempt,
                **self._log_context("connect"),
            )
            self._emit(TransportEvent.reconnected() if reconnecting else TransportEvent.opened())
            return

    async def _try_connect(self, attempt: int) -> NATSClient | None:
        """One connection attempt; returns None when it failed."""
        self._generation += 1
        generation = self._generation

        async def on_closed() -> None:
            self._on_connection_lost(generation)

        async def on_error(e: Exception) -> None:
            self._logger.debug(f"NATS client error: {e}", **self._log_context("connect"))

        params = self._config.to_connection_params()
        try:
            nc = await nats.connect(closed_cb=on_closed, error_cb=on_error, **params)
        except Exception as e:
            self._logger.warning(
                f"Connection attempt {attempt} failed: {e}",
                **self._log_context("connect"),
            )
            return None

        try:
            await nc.subscribe(
                SubjectPatterns.push_wildcard(self._config.subject_prefix, self._config.client_id),
                cb=self._on_push,
            )
        except Exception as e:
            self._logger.warning(
                f"Push subscription failed: {e}",
                **self._log_context("connect"),
            )
            self._generation += 1
            with contextlib.suppress(Exception):
                await nc.close()
            return None

        if not nc.is_connected:
            # Lost between connect and subscribe; its closed callback was ignored.
            return None
        return nc

    def _on_connection_lost(self, generation: int) -> None:
        if self._closing or generation != self._generation or self._nc is None:
            return

        self._nc = None
        self._metrics.gauge("transport.connected", 0)
        self._logger.warning("Connection to NATS lost, reconnecting", **self._log_context("reconnect"))
        self._emit(TransportEvent.closed())
        self._connector = asyncio.create_task(self._connect_loop(reconnecting=True))

    # Inbound pushes and event dispatch

    async def _on_push(self, msg: Msg) -> None:
        name = SubjectPatterns.message_name(msg.subject)
        if name is None:
            self._metrics.increment("transport.push.invalid")
            self._logger.warning(f"Ignoring push on unknown subject {msg.subject}")
            return

        try:
            envelope = self._serializer.deserialize(msg.data, PushEnvelope)
            event = envelope.to_event(name)
        except Exception as e:
            self._metrics.increment("transport.push.invalid")
            self._logger.warning(f"Dropping undecodable {name.value} push: {e}")
            return

        self._metrics.increment(f"transport.push.{name.value}")
        self._emit(event)

    def _emit(self, event: TransportEvent) -> None:
        self._ensure_dispatcher()
        self._events.put_nowait(event)

    def _ensure_dispatcher(self) -> None:
        if self._closing:
            return
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_events())

    async def _dispatch_events(self) -> None:
        """Deliver queued events one at a time, each awaited before the next."""
        while True:
            event = await self._events.get()
            handler = self._handler
            if handler is None:
                continue
            try:
                await handler(event)
            except Exception as e:
                self._logger.exception(
                    f"Transport event handler failed on {event.type.value}", exc_info=e
                )

    def _log_context(self, operation: str) -> dict:
        return LogContext(
            client_id=self._config.client_id,
            operation=operation,
            component="NATSChannelTransport",
        ).to_dict()
