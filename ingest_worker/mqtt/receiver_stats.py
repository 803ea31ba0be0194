"""Statistics for the MQTT bus connection manager."""

from __future__ import annotations


class ReceiverStats:
    """Estadísticas del receptor MQTT."""

    def __init__(self):
        self.received = 0
        self.completed = 0
        self.dropped = 0
        self.backpressure_waits = 0
        self.connects = 0
        self.reconnect_count = 0
        self.last_message_at: float = 0

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} completed={self.completed} "
            f"dropped={self.dropped} reconnects={self.reconnect_count}"
        )

    def to_dict(self) -> dict:
        return {
            "received": self.received,
            "completed": self.completed,
            "dropped": self.dropped,
            "backpressure_waits": self.backpressure_waits,
            "reconnect_count": self.reconnect_count,
            "last_message_at": self.last_message_at,
        }
