"""UDP <-> MQTT CloudEvent bridge."""

__version__ = "0.1.0"
