"""Domain-specific exceptions for the chain stream client."""


class ChainStreamError(Exception):
    """Base exception for all chainstream errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransportError(ChainStreamError):
    """Channel transport errors."""

    pass


class NotConnectedError(TransportError):
    """Raised when an operation needs a live connection and there is none."""

    def __init__(self, operation: str):
        super().__init__(
            f"Transport not connected. Cannot perform '{operation}' operation.",
            details={"operation": operation},
        )
        self.operation = operation


class SerializationError(TransportError):
    """Serialization/deserialization errors."""

    pass


class ChainProviderError(ChainStreamError):
    """Raised by chain providers when a chain cannot be produced."""

    pass
