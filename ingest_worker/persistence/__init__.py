"""Persistence: datastore pool, device registry and telemetry sink."""

from .datastore import Datastore, DatastoreError
from .device_registry import DeviceRegistry
from .schema import ensure_schema
from .telemetry_sink import TelemetrySink

__all__ = [
    "Datastore",
    "DatastoreError",
    "DeviceRegistry",
    "TelemetrySink",
    "ensure_schema",
]
