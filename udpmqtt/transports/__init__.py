from .base import TransportInterface
from .mock import MockTransport
from .mqtt import MqttTransport
from .udp import UdpTransport

__all__ = [
    "TransportInterface",
    "MockTransport",
    "MqttTransport",
    "UdpTransport",
]
