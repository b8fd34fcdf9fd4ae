"""Domain models using Pydantic for validation."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import ChannelMethod, ConnectionState, InboundMessage, TransportEventType
from .value_objects import SubscriptionKey


class Snapshot(BaseModel):
    """Latest accepted payload for a key.

    The payload is opaque to the client; it is whatever the remote service
    computed for the key (an option chain in practice).
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: SubscriptionKey
    payload: Any = Field(default=None, description="Opaque payload from the remote service")
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ErrorEvent(BaseModel):
    """An error reported against a key."""

    model_config = ConfigDict(frozen=True)

    key: SubscriptionKey
    message: str = Field(..., description="Error text, surfaced verbatim")

    def __str__(self) -> str:
        return self.message


class SubscriptionView(BaseModel):
    """Observable tuple the consumer renders.

    ``snapshot``, ``error`` and ``is_connected`` are the consumer contract;
    ``key`` and ``state`` are carried along for diagnostics.
    """

    model_config = ConfigDict(frozen=True)

    snapshot: Snapshot | None = None
    error: str | None = None
    is_connected: bool = False
    key: SubscriptionKey | None = None
    state: ConnectionState = ConnectionState.IDLE


class SendOutcome(BaseModel):
    """Result of a transport ``send``: ok or failed(reason)."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    reason: str | None = None

    @model_validator(mode="after")
    def validate_reason_consistency(self) -> SendOutcome:
        """Ensure a reason is present exactly when the send failed."""
        if self.ok and self.reason is not None:
            raise ValueError("Reason must be None when ok is True")
        if not self.ok and not self.reason:
            raise ValueError("Reason required when ok is False")
        return self

    @classmethod
    def success(cls) -> SendOutcome:
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: str) -> SendOutcome:
        return cls(ok=False, reason=reason)


class TransportEvent(BaseModel):
    """A single event delivered by a channel transport.

    ``name``, ``key``, ``payload`` and ``error`` are only meaningful for
    MESSAGE events.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: TransportEventType
    name: InboundMessage | None = None
    key: SubscriptionKey | None = None
    payload: Any = None
    error: str | None = None

    @model_validator(mode="after")
    def validate_message_fields(self) -> TransportEvent:
        """Message events need a name and a key; others carry neither."""
        if self.type is TransportEventType.MESSAGE:
            if self.name is None or self.key is None:
                raise ValueError("Message events require a name and a key")
        elif self.name is not None or self.key is not None:
            raise ValueError(f"{self.type.value} events carry no name or key")
        return self

    @classmethod
    def opened(cls) -> TransportEvent:
        return cls(type=TransportEventType.OPENED)

    @classmethod
    def closed(cls) -> TransportEvent:
        return cls(type=TransportEventType.CLOSED)

    @classmethod
    def reconnected(cls) -> TransportEvent:
        return cls(type=TransportEventType.RECONNECTED)

    @classmethod
    def update(cls, key: SubscriptionKey, payload: Any) -> TransportEvent:
        return cls(
            type=TransportEventType.MESSAGE,
            name=InboundMessage.UPDATE,
            key=key,
            payload=payload,
        )

    @classmethod
    def error_message(cls, key: SubscriptionKey, error: str) -> TransportEvent:
        return cls(
            type=TransportEventType.MESSAGE,
            name=InboundMessage.ERROR,
            key=key,
            error=error,
        )


class ChannelRequest(BaseModel):
    """Wire body of an outbound subscribe/unsubscribe/refresh request."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    method: ChannelMethod
    client_id: str = Field(..., min_length=1, description="Push target of the caller")
    instrument: str = Field(..., min_length=1)
    expiry: str = Field(..., min_length=1)

    @classmethod
    def for_key(cls, method: ChannelMethod, client_id: str, key: SubscriptionKey) -> ChannelRequest:
        return cls(method=method, client_id=client_id, instrument=key.instrument, expiry=key.expiry)

    def key(self) -> SubscriptionKey:
        return SubscriptionKey(instrument=self.instrument, expiry=self.expiry)


class ChannelReply(BaseModel):
    """Wire body of the reply to a :class:`ChannelRequest`."""

    model_config = ConfigDict(extra="forbid")

    success: bool = Field(default=True)
    error: str | None = Field(default=None)

    @model_validator(mode="after")
    def validate_error_consistency(self) -> ChannelReply:
        """Ensure error is consistent with success status."""
        if self.success and self.error is not None:
            raise ValueError("Error must be None when success is True")
        if not self.success and self.error is None:
            raise ValueError("Error message required when success is False")
        return self


class PushEnvelope(BaseModel):
    """Wire body of an inbound ``update`` or ``error`` push."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    instrument: str = Field(..., min_length=1)
    expiry: str = Field(..., min_length=1)
    payload: Any = None
    error: str | None = None

    @classmethod
    def for_key(
        cls, key: SubscriptionKey, payload: Any = None, error: str | None = None
    ) -> PushEnvelope:
        return cls(instrument=key.instrument, expiry=key.expiry, payload=payload, error=error)

    def key(self) -> SubscriptionKey:
        return SubscriptionKey(instrument=self.instrument, expiry=self.expiry)

    def to_event(self, name: InboundMessage) -> TransportEvent:
        """Convert to the transport event the registry consumes."""
        if name is InboundMessage.UPDATE:
            return TransportEvent.update(self.key(), self.payload)
        return TransportEvent.error_message(self.key(), self.error or "Unknown error")
