"""Configuration objects for infrastructure layer following DDD principles."""

from __future__ import annotations

import os
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..domain.patterns import SubjectPatterns
from ..domain.value_objects import BackoffSchedule, Duration, SubscriptionKey


class NATSTransportConfig(BaseModel):
    """Strongly-typed configuration for the NATS channel transport.

    Reconnection is driven by the transport's own backoff schedule, so the
    nats-py client is always created with its built-in reconnect disabled.
    """

    model_config = ConfigDict(
        extra="forbid",
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    servers: list[str] = Field(
        default_factory=lambda: ["nats://localhost:4222"],
        min_length=1,
        description="List of NATS server URLs",
    )
    subject_prefix: str = Field(
        default=SubjectPatterns.DEFAULT_PREFIX,
        min_length=1,
        description="Prefix of every request and push subject",
    )
    client_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        min_length=1,
        max_length=128,
        description="Identifies this client's push subjects",
    )
    request_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait for a reply to subscribe/unsubscribe/refresh",
    )
    connect_timeout: float = Field(
        default=2.0,
        gt=0,
        description="Seconds to wait for a single connection attempt",
    )
    use_msgpack: bool = Field(
        default=True,
        description="Use MessagePack for request bodies (replies are auto-detected)",
    )
    backoff_delays_ms: tuple[int, ...] = Field(
        default=BackoffSchedule.DEFAULT_DELAYS_MS,
        min_length=1,
        description="Reconnection delay schedule in milliseconds",
    )

    @field_validator("servers")
    @classmethod
    def validate_servers(cls, v: list[str]) -> list[str]:
        """Validate server URLs format."""
        for server in v:
            if not server.startswith(("nats://", "tls://", "ws://", "wss://")):
                raise ValueError(
                    f"Invalid server URL: {server}. "
                    "Must start with nats://, tls://, ws://, or wss://"
                )
        return v

    @field_validator("subject_prefix")
    @classmethod
    def validate_subject_prefix(cls, v: str) -> str:
        """The prefix may span several subject tokens."""
        if not all(SubjectPatterns.is_valid_token(part) for part in v.split(".")):
            raise ValueError(f"Invalid subject prefix: {v!r}")
        return v

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        """The client id is exactly one token of its push subjects."""
        if not SubjectPatterns.is_valid_token(v):
            raise ValueError(f"Invalid client id: {v!r}")
        return v

    def backoff_schedule(self) -> BackoffSchedule:
        return BackoffSchedule(delays_ms=self.backoff_delays_ms)

    def to_connection_params(self) -> dict[str, Any]:
        """Convert to parameters for ``nats.connect``."""
        return {
            "servers": self.servers,
            "connect_timeout": self.connect_timeout,
            "allow_reconnect": False,
            "max_reconnect_attempts": 0,
            "name": f"chainstream-{self.client_id}",
        }


class ChainStreamConfig(BaseModel):
    """Top-level client configuration."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    transport: NATSTransportConfig = Field(default_factory=NATSTransportConfig)
    refresh_interval: Duration = Field(
        default_factory=lambda: Duration(seconds=30),
        description="Interval between periodic refresh requests",
    )

    @field_validator("refresh_interval")
    @classmethod
    def validate_refresh_interval(cls, v: Duration) -> Duration:
        if v.seconds < 0.01:
            raise ValueError("Refresh interval must be at least 10ms")
        return v

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ChainStreamConfig:
        """Build configuration from ``CHAINSTREAM_*`` environment variables.

        Recognised variables:
            CHAINSTREAM_NATS_URL: comma-separated server URLs
            CHAINSTREAM_SUBJECT_PREFIX: subject prefix
            CHAINSTREAM_CLIENT_ID: fixed client id
            CHAINSTREAM_REFRESH_SECONDS: refresh interval
            CHAINSTREAM_REQUEST_TIMEOUT: request timeout in seconds
        """
        env = os.environ if environ is None else environ
        transport: dict[str, Any] = {}

        if servers := env.get("CHAINSTREAM_NATS_URL"):
            transport["servers"] = [s.strip() for s in servers.split(",") if s.strip()]
        if prefix := env.get("CHAINSTREAM_SUBJECT_PREFIX"):
            transport["subject_prefix"] = prefix
        if client_id := env.get("CHAINSTREAM_CLIENT_ID"):
            transport["client_id"] = client_id
        if timeout := env.get("CHAINSTREAM_REQUEST_TIMEOUT"):
            transport["request_timeout"] = timeout

        settings: dict[str, Any] = {"transport": NATSTransportConfig(**transport)}
        if refresh := env.get("CHAINSTREAM_REFRESH_SECONDS"):
            settings["refresh_interval"] = {"seconds": refresh}
        return cls(**settings)


class LogContext(BaseModel):
    """Strongly-typed context for structured logging."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True, validate_assignment=True)

    client_id: str | None = Field(default=None, description="Transport client id")
    instrument: str | None = Field(default=None)
    expiry: str | None = Field(default=None)
    operation: str | None = Field(default=None, description="Operation being performed")
    component: str | None = Field(default=None, description="Component name")

    @classmethod
    def for_key(cls, key: SubscriptionKey | None, **kwargs: Any) -> LogContext:
        if key is None:
            return cls(**kwargs)
        return cls(instrument=key.instrument, expiry=key.expiry, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Non-empty fields, ready to pass as logger keyword arguments."""
        return {k: v for k, v in self.model_dump().items() if v is not None}
