"""Error taxonomy for the relay.

Transport and decode errors stay inside the component that hit them; store
errors stay inside the transit tracker. Only ConfigError is allowed to stop
the process, and only at startup.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class TransportError(RelayError):
    """Upstream or subscriber socket failure."""


class StreamSubscriptionError(TransportError):
    """Raised when AISStream returns a subscription/authentication error."""


class DecodeError(RelayError):
    """Upstream frame could not be decoded."""


class StoreError(RelayError):
    """Persistence store unreachable or an operation on it failed."""


class ConfigError(RelayError):
    """Required configuration is missing or invalid."""
