"""Registro de mensajes descartados.

Every discarded message is logged and counted. When a Redis client is
configured the discard is also appended to a capped Redis stream so the raw
content can be inspected later; Redis problems never reach the pipeline.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

RAW_LOG_LIMIT = 200
RAW_STREAM_LIMIT = 5000


def _raw_preview(raw: bytes, limit: int) -> str:
    return raw[:limit].decode("utf-8", errors="replace")


class DiscardRecorder:
    """Dead-letter record of discarded messages.

    Attributes:
        stream_name: Redis stream receiving discard entries.
        max_len: Approximate cap of the stream (XADD MAXLEN ~).
    """

    STREAM_NAME = "dlq:ingest"
    DEFAULT_MAX_LEN = 10000

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        stream_name: str = STREAM_NAME,
        max_len: int = DEFAULT_MAX_LEN,
    ):
        self._redis = redis_client
        self._stream = stream_name
        self._max_len = max_len
        self._by_reason: Counter[str] = Counter()
        self._stream_errors = 0

    @classmethod
    def from_url(cls, redis_url: Optional[str]) -> "DiscardRecorder":
        if not redis_url:
            return cls()
        client = aioredis.Redis.from_url(
            redis_url,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        logger.info("[DLQ] Discards mirrored to Redis stream %s", cls.STREAM_NAME)
        return cls(redis_client=client)

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    @property
    def total(self) -> int:
        return sum(self._by_reason.values())

    async def record(
        self,
        topic: str,
        raw: bytes,
        reason: str,
        detail: Optional[str] = None,
    ) -> None:
        """Records one discard. Never raises."""
        self._by_reason[reason] += 1
        logger.warning(
            "[DLQ] Discarded message topic=%s reason=%s detail=%s raw=%r",
            topic,
            reason,
            detail,
            _raw_preview(raw, RAW_LOG_LIMIT),
        )

        if self._redis is None:
            return

        entry = {
            "topic": topic,
            "reason": reason,
            "detail": (detail or "")[:1000],
            "raw": _raw_preview(raw, RAW_STREAM_LIMIT),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._redis.xadd(self._stream, entry, maxlen=self._max_len, approximate=True)
        except Exception as e:
            self._stream_errors += 1
            logger.error("[DLQ] Redis stream write failed: %s", e)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()

    @property
    def stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "stream_name": self._stream,
            "total_discarded": self.total,
            "by_reason": dict(self._by_reason),
            "stream_errors": self._stream_errors,
        }
