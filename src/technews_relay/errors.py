"""Exception hierarchy shared by the producer and consumer."""


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigError(RelayError):
    """Required configuration is missing or malformed."""


class MailboxError(RelayError):
    """IMAP command failed or returned an unexpected response."""


class EnvelopeError(RelayError):
    """A record does not conform to the envelope schema."""


class EncodeError(EnvelopeError):
    """Record could not be serialized."""


class DecodeError(EnvelopeError):
    """Payload could not be deserialized into a complete record."""


class TransportError(RelayError):
    """Broker or webhook call failed."""


class PublishError(TransportError):
    """Broker did not acknowledge a record."""


class DeliveryError(TransportError):
    """Webhook rejected or never received a payload."""
