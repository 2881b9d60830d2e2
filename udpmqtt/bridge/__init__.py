"""UDP <-> MQTT CloudEvent bridge core.

The Bridge relays CloudEvent envelopes between a UDP device endpoint and an
MQTT broker, and measures round-trip latency for pings sent from the
keyboard.
"""

from .bridge import Bridge, BridgeState
from .correlation import CorrelationTable
from .protocol import Envelope, create, decode, encode
from .trigger import Command, KeyboardInput, ManualTrigger, classify_key

__all__ = [
    "Bridge",
    "BridgeState",
    "CorrelationTable",
    "Envelope",
    "create",
    "decode",
    "encode",
    "Command",
    "KeyboardInput",
    "ManualTrigger",
    "classify_key",
]
