"""Crispify runtime: on-device text leveling over a local GGUF model."""

__version__ = "0.1.0"
