"""Server side of the option chain channel over NATS.

The hub answers ``subscribe``, ``unsubscribe`` and ``refresh`` requests,
keeps group membership per key and pushes ``update`` / ``error`` messages to
clients' push subjects. Chains come from a :class:`ChainProviderPort`.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Any

import nats
from nats.aio.client import Client as NATSClient
from nats.aio.msg import Msg

from ..domain.enums import ChannelMethod, InboundMessage
from ..domain.exceptions import ChainProviderError, NotConnectedError
from ..domain.models import ChannelReply, ChannelRequest, PushEnvelope
from ..domain.patterns import SubjectPatterns
from ..domain.value_objects import Duration, SubscriptionKey
from ..ports.chain_provider import ChainProviderPort
from ..ports.clock import ClockPort
from ..ports.logger import LoggerPort
from ..ports.metrics import MetricsPort
from .config import LogContext, NATSTransportConfig
from .in_memory_metrics import InMemoryMetrics
from .serialization import Serializer


class StaticChainProvider(ChainProviderPort):
    """Chain provider serving registered payloads, or building them on demand."""

    def __init__(
        self,
        chains: dict[tuple[str, date], Any] | None = None,
        builder: Callable[[str, date], Any] | None = None,
    ):
        self._chains = dict(chains or {})
        self._builder = builder

    def set_chain(self, instrument: str, expiry: date, chain: Any) -> None:
        self._chains[(instrument, expiry)] = chain

    async def get_option_chain(self, instrument: str, expiry: date) -> Any:
        chain = self._chains.get((instrument, expiry))
        if chain is not None:
            return chain
        if self._builder is not None:
            return self._builder(instrument, expiry)
        raise ChainProviderError(f"No option chain for {instrument} {expiry.isoformat()}")


def build_demo_chain(
    instrument: str,
    expiry: date,
    spot: float = 100.0,
    strike_step: float = 5.0,
    strikes_each_side: int = 5,
) -> dict[str, Any]:
    """Deterministic toy chain for demos; no pricing model behind it."""
    rows = []
    for i in range(-strikes_each_side, strikes_each_side + 1):
        strike = spot + i * strike_step
        call_intrinsic = max(spot - strike, 0.0)
        put_intrinsic = max(strike - spot, 0.0)
        time_value = round(strike_step * math.exp(-abs(i) / 3), 2)
        rows.append(
            {
                "strike": strike,
                "call": round(call_intrinsic + time_value, 2),
                "put": round(put_intrinsic + time_value, 2),
            }
        )
    return {
        "instrument": instrument,
        "expiry": expiry.isoformat(),
        "spot": spot,
        "strikes": rows,
    }


DEFAULT_MEMBERSHIP_TTL = Duration(seconds=90)


class NATSChainHub:
    """Answers channel requests and pushes chains to subscribed clients.

    Clients refresh every 30 seconds by default, so a member that has been
    silent for three intervals is treated as gone and dropped from its group.
    """

    def __init__(
        self,
        provider: ChainProviderPort,
        config: NATSTransportConfig | None = None,
        logger: LoggerPort | None = None,
        metrics: MetricsPort | None = None,
        queue_group: str = "chainstream-hub",
        membership_ttl: Duration | None = DEFAULT_MEMBERSHIP_TTL,
        clock: ClockPort | None = None,
    ):
        """Initialize the hub.

        Args:
            provider: Source of chain payloads
            config: Servers, subject prefix and body format
            logger: Optional logger
            metrics: Optional metrics port
            queue_group: Queue group shared by hub instances
            membership_ttl: Drop a client from a group when it has sent no
                subscribe or refresh for this long; None keeps members
                until they unsubscribe
            clock: Clock used to age memberships
        """
        self._provider = provider
        self._config = config or NATSTransportConfig()
        self._logger = logger or self._create_default_logger()
        self._metrics = metrics or InMemoryMetrics()
        self._clock = clock or self._create_default_clock()
        self._queue_group = queue_group
        self._membership_ttl = membership_ttl
        self._serializer = Serializer(self._config.use_msgpack)
        self._nc: NATSClient | None = None
        self._owns_connection = False
        self._subscriptions: list[Any] = []
        # group name -> client id -> last subscribe/refresh
        self._groups: dict[str, dict[str, datetime]] = defaultdict(dict)
        self._group_keys: dict[str, SubscriptionKey] = {}

    def _create_default_logger(self) -> LoggerPort:
        from .simple_logger import SimpleLogger

        return SimpleLogger("chainstream.hub")

    def _create_default_clock(self) -> ClockPort:
        from .system_clock import SystemClock

        return SystemClock()

    @property
    def is_running(self) -> bool:
        return self._nc is not None

    def members(self, key: SubscriptionKey) -> set[str]:
        """Client ids currently in the key's group, after expiring silent ones."""
        group = key.group_name()
        self._expire(group)
        return set(self._groups.get(group, ()))

    def active_keys(self) -> list[SubscriptionKey]:
        """Keys with at least one live subscribed client."""
        for group in list(self._groups):
            self._expire(group)
        return [self._group_keys[group] for group in self._groups]

    async def start(self, nc: NATSClient | None = None) -> None:
        """Start answering requests.

        Args:
            nc: An existing connection to reuse; one is created when None
        """
        if self._nc is not None:
            return

        if nc is None:
            nc = await nats.connect(servers=self._config.servers, name="chainstream-hub")
            self._owns_connection = True
        self._nc = nc

        for method in ChannelMethod:
            subject = SubjectPatterns.request(self._config.subject_prefix, method)
            sub = await nc.subscribe(subject, queue=self._queue_group, cb=self._handle_request)
            self._subscriptions.append(sub)

        self._logger.info(
            "Chain hub started",
            subject_prefix=self._config.subject_prefix,
            queue_group=self._queue_group,
        )

    async def stop(self) -> None:
        nc, self._nc = self._nc, None
        if nc is None:
            return

        for sub in self._subscriptions:
            try:
                await sub.unsubscribe()
            except Exception as e:
                self._logger.debug(f"Unsubscribe failed during stop: {e}")
        self._subscriptions.clear()

        if self._owns_connection:
            await nc.close()
            self._owns_connection = False
        self._logger.info("Chain hub stopped")

    # Group membership

    def join(self, client_id: str, key: SubscriptionKey) -> None:
        self._groups[key.group_name()][client_id] = self._clock.now()
        self._group_keys[key.group_name()] = key
        self._logger.info(
            "Client subscribed", **self._log_context(key, client_id, "subscribe")
        )

    def leave(self, client_id: str, key: SubscriptionKey) -> None:
        group = key.group_name()
        members = self._groups.get(group)
        if members is None:
            return
        members.pop(client_id, None)
        if not members:
            self._drop_group(group)
        self._logger.info(
            "Client unsubscribed", **self._log_context(key, client_id, "unsubscribe")
        )

    def touch(self, client_id: str, key: SubscriptionKey) -> None:
        """Mark a member as still alive; non-members are not added."""
        members = self._groups.get(key.group_name())
        if members is not None and client_id in members:
            members[client_id] = self._clock.now()

    def _expire(self, group: str) -> None:
        members = self._groups.get(group)
        if members is None or self._membership_ttl is None:
            return
        cutoff = self._clock.now() - self._membership_ttl.to_timedelta()
        stale = [client_id for client_id, seen in members.items() if seen < cutoff]
        if not stale:
            return
        key = self._group_keys[group]
        for client_id in stale:
            del members[client_id]
            self._logger.info(
                "Client membership expired", **self._log_context(key, client_id, "expire")
            )
        self._metrics.increment("hub.members.expired", len(stale))
        if not members:
            self._drop_group(group)

    def _drop_group(self, group: str) -> None:
        self._groups.pop(group, None)
        self._group_keys.pop(group, None)

    # Request handling

    async def _handle_request(self, msg: Msg) -> None:
        with self._metrics.timer("hub.request"):
            try:
                request = self._serializer.deserialize(msg.data, ChannelRequest)
                await self.handle(request)
                reply = ChannelReply()
                self._metrics.increment("hub.request.success")
            except Exception as e:
                reply = ChannelReply(success=False, error=str(e) or type(e).__name__)
                self._metrics.increment("hub.request.error")
                self._logger.warning(f"Request failed: {e}")

            await msg.respond(self._serializer.serialize(reply))

    async def handle(self, request: ChannelRequest) -> None:
        """Apply one channel request."""
        key = request.key()
        if request.method is ChannelMethod.SUBSCRIBE:
            self.join(request.client_id, key)
        elif request.method is ChannelMethod.UNSUBSCRIBE:
            self.leave(request.client_id, key)
        else:
            self.touch(request.client_id, key)
            await self.refresh(request.client_id, key)

    async def refresh(self, client_id: str, key: SubscriptionKey) -> None:
        """Fetch the chain for a key and push it to the key's group.

        An invalid expiry or a provider failure is pushed as an ``error`` to
        the requesting client only.
        """
        try:
            chain = await self._load_chain(key)
        except Exception as e:
            self._logger.warning(
                f"Refresh failed for {key}: {e}", **self._log_context(key, client_id, "refresh")
            )
            await self._push_error([client_id], key, str(e))
            return

        await self._push_update(key, chain)

    async def publish_update(self, key: SubscriptionKey) -> int:
        """Push a freshly fetched chain to everyone subscribed to a key.

        When the chain cannot be produced, the failure is pushed to the
        group as an ``error`` instead.

        Returns:
            Number of clients the update was pushed to
        """
        members = self.members(key)
        if not members:
            return 0

        try:
            chain = await self._load_chain(key)
        except Exception as e:
            self._logger.warning(
                f"Publish failed for {key}: {e}", **self._log_context(key, None, "publish")
            )
            await self._push_error(members, key, str(e))
            return 0

        return await self._push_update(key, chain)

    async def _load_chain(self, key: SubscriptionKey) -> Any:
        try:
            expiry = key.expiry_date()
        except ValueError as e:
            raise ChainProviderError(f"Invalid expiry date: {key.expiry}") from e
        return await self._provider.get_option_chain(key.instrument, expiry)

    async def _push_update(self, key: SubscriptionKey, chain: Any) -> int:
        members = self.members(key)
        body = self._serializer.serialize(PushEnvelope.for_key(key, payload=chain))
        for client_id in members:
            await self._publish(client_id, InboundMessage.UPDATE, body)
        self._metrics.increment("hub.push.update", len(members))
        return len(members)

    async def _push_error(
        self, recipients: Iterable[str], key: SubscriptionKey, error: str
    ) -> None:
        body = self._serializer.serialize(PushEnvelope.for_key(key, error=error))
        for client_id in recipients:
            await self._publish(client_id, InboundMessage.ERROR, body)
            self._metrics.increment("hub.push.error")

    async def _publish(self, client_id: str, name: InboundMessage, body: bytes) -> None:
        if self._nc is None:
            raise NotConnectedError(f"push {name.value}")
        subject = SubjectPatterns.push(self._config.subject_prefix, client_id, name)
        await self._nc.publish(subject, body)

    def _log_context(
        self, key: SubscriptionKey, client_id: str | None, operation: str
    ) -> dict:
        return LogContext.for_key(
            key, client_id=client_id, operation=operation, component="NATSChainHub"
        ).to_dict()
