"""Topic routing: maps an MQTT topic to the device that published it."""

from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class TopicRouter:
    """Extracts the device id from topics shaped like the subscription filter.

    The filter holds exactly one single-level wildcard (``+``); that segment
    is the device id. Every other segment must match literally and the
    segment count must be identical, e.g. ``devices/+/telemetry``.
    """

    def __init__(self, topic_filter: str = "devices/+/telemetry"):
        segments = topic_filter.split("/")
        if "#" in topic_filter:
            raise ValueError(f"Multi-level wildcard not supported: {topic_filter!r}")
        wildcards = [i for i, s in enumerate(segments) if s == "+"]
        if len(wildcards) != 1:
            raise ValueError(
                f"Topic filter needs exactly one '+' segment: {topic_filter!r}"
            )
        if any("+" in s and s != "+" for s in segments):
            raise ValueError(f"'+' must occupy a whole segment: {topic_filter!r}")

        self._filter = topic_filter
        self._segments = segments
        self._device_index = wildcards[0]

    @property
    def topic_filter(self) -> str:
        return self._filter

    def route(self, topic: str) -> Optional[str]:
        """Returns the device id, or None when the topic is not ours."""
        parts = topic.split("/")
        if len(parts) != len(self._segments):
            logger.debug("[ROUTER] Ignored topic (segment count): %s", topic)
            return None

        for i, (part, expected) in enumerate(zip(parts, self._segments)):
            if i == self._device_index:
                continue
            if part != expected:
                logger.debug("[ROUTER] Ignored topic (segment %d): %s", i, topic)
                return None

        device_id = parts[self._device_index]
        if not device_id:
            logger.debug("[ROUTER] Ignored topic (empty device id): %s", topic)
            return None
        return device_id
