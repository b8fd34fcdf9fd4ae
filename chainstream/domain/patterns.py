"""Subject pattern management for NATS messaging."""

from .enums import ChannelMethod, InboundMessage


class SubjectPatterns:
    """Centralized subject pattern management following DDD principles."""

    DEFAULT_PREFIX = "optionchain"

    @staticmethod
    def request(prefix: str, method: ChannelMethod) -> str:
        """Subject the hub answers for a channel method."""
        return f"{prefix}.{method.value}"

    @staticmethod
    def push(prefix: str, client_id: str, name: InboundMessage) -> str:
        """Subject a single client receives pushes on."""
        return f"{prefix}.push.{client_id}.{name.value}"

    @staticmethod
    def push_wildcard(prefix: str, client_id: str) -> str:
        """Subscription pattern covering every push for a client."""
        return f"{prefix}.push.{client_id}.*"

    @staticmethod
    def message_name(subject: str) -> InboundMessage | None:
        """Extract the inbound message name from a push subject.

        Returns None for subjects whose last token is not a known name.
        """
        token = subject.rsplit(".", 1)[-1]
        try:
            return InboundMessage(token)
        except ValueError:
            return None

    @staticmethod
    def is_valid_token(token: str) -> bool:
        """Check a value can be used as a single subject token."""
        if not token:
            return False
        return not any(c in token for c in ".*> \t\r\n")
