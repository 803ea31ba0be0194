"""MQTT ingestion.

Estructura modular:
- topics.py: topic -> device id
- validators.py: validación y normalización del payload
- handler.py: pipeline por mensaje
- receiver.py: conexión MQTT, reconexión y despacho
- receiver_stats.py: estadísticas del receptor
"""

from .handler import IngestPipeline, PipelineOutcome
from .receiver import BusConnectionManager, BusState
from .topics import TopicRouter
from .validators import NormalizationResult, PayloadNormalizer, Telemetry, normalize_payload

__all__ = [
    "BusConnectionManager",
    "BusState",
    "IngestPipeline",
    "NormalizationResult",
    "PayloadNormalizer",
    "PipelineOutcome",
    "Telemetry",
    "TopicRouter",
    "normalize_payload",
]
