"""MQTT telemetry ingest worker: devices/+/telemetry -> device registry + telemetry log."""

__version__ = "1.0.0"
