"""Error taxonomy for the bridge.

Startup errors (configuration, transport setup) are fatal and surface from the
CLI as exit code 1. Per-message errors are logged and contained by the
component that hits them.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigError(BridgeError):
    """Configuration file missing, unparseable or incomplete."""


class TransportInitError(BridgeError):
    """A transport could not bind or connect."""


class DecodeError(BridgeError):
    """A payload is not a well-formed CloudEvent envelope."""


class CreationError(BridgeError):
    """A new outbound envelope could not be built."""


class SendError(BridgeError):
    """A payload could not be handed to the underlying channel."""


class TransportClosedError(BridgeError):
    """A transport's inbound channel terminated (e.g. broker disconnect)."""
