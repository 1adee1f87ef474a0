"""Greenhouse IoT backend: sensor ingestion, device control over MQTT, health checks."""

__version__ = "1.0.0"
