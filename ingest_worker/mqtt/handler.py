"""Pipeline de ingesta por mensaje.

One invocation per inbound message:

  topic -> TopicRouter -> PayloadNormalizer -> DeviceRegistry.upsert
                                            -> TelemetrySink.append

The registry upsert and the telemetry insert are two independent writes,
each atomic on its own. A crash or failure between them can leave a device
refreshed without its telemetry row, or the reverse.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from ..persistence.datastore import DatastoreError
from ..persistence.device_registry import DeviceRegistry
from ..persistence.telemetry_sink import TelemetrySink
from ..resilience.dead_letter import DiscardRecorder
from .topics import TopicRouter
from .validators import PayloadNormalizer, utc_now

logger = logging.getLogger(__name__)


class PipelineOutcome(str, enum.Enum):
    IGNORED = "ignored"
    DISCARDED = "discarded"
    STORED = "stored"
    FAILED = "failed"


@dataclass
class PipelineStats:
    """Contadores del pipeline."""

    received: int = 0
    ignored: int = 0
    discarded: int = 0
    stored: int = 0
    failed: int = 0
    registry_errors: int = 0
    sink_errors: int = 0
    last_stored_at: float = 0

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} stored={self.stored} "
            f"discarded={self.discarded} ignored={self.ignored} failed={self.failed}"
        )

    def to_dict(self) -> dict:
        return {
            "received": self.received,
            "ignored": self.ignored,
            "discarded": self.discarded,
            "stored": self.stored,
            "failed": self.failed,
            "registry_errors": self.registry_errors,
            "sink_errors": self.sink_errors,
            "last_stored_at": self.last_stored_at,
        }


class DeviceLocks:
    """Per-device asyncio locks, created on demand and dropped when idle.

    asyncio.Lock wakes waiters in FIFO order, so messages of one device are
    written in the order their invocations started.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, device_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        self._users[device_id] = self._users.get(device_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[device_id] -= 1
            if self._users[device_id] == 0:
                del self._users[device_id]
                del self._locks[device_id]

    def __len__(self) -> int:
        return len(self._locks)


class IngestPipeline:
    """Procesa un mensaje MQTT de extremo a extremo.

    Never raises: every failure is logged and reflected in the outcome and
    the stats, since there is no caller to report to.
    """

    def __init__(
        self,
        router: TopicRouter,
        registry: DeviceRegistry,
        sink: TelemetrySink,
        normalizer: Optional[PayloadNormalizer] = None,
        discards: Optional[DiscardRecorder] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._router = router
        self._registry = registry
        self._sink = sink
        self._clock = clock
        self._normalizer = normalizer or PayloadNormalizer(clock=clock)
        self._discards = discards or DiscardRecorder()
        self._locks = DeviceLocks()
        self._stats = PipelineStats()

    async def handle(self, topic: str, raw: bytes) -> PipelineOutcome:
        self._stats.received += 1
        try:
            outcome = await self._handle(topic, raw)
        except Exception as e:
            logger.exception("[PIPELINE] Unexpected error topic=%s: %s", topic, e)
            outcome = PipelineOutcome.FAILED
            self._stats.failed += 1
        return outcome

    async def _handle(self, topic: str, raw: bytes) -> PipelineOutcome:
        # 1. Routing
        device_id = self._router.route(topic)
        if device_id is None:
            self._stats.ignored += 1
            return PipelineOutcome.IGNORED

        # 2. Normalización
        result = self._normalizer.normalize(raw)
        if not result.accepted:
            self._stats.discarded += 1
            await self._discards.record(topic, raw, result.reason, result.detail)
            return PipelineOutcome.DISCARDED
        telemetry = result.telemetry

        # 3. Persistencia, serializada por dispositivo
        async with self._locks.hold(device_id):
            ok = True
            try:
                await self._registry.upsert(device_id, self._clock())
            except DatastoreError as e:
                ok = False
                self._stats.registry_errors += 1
                logger.error("[PIPELINE] Registry upsert failed device=%s err=%s", device_id, e)

            try:
                await self._sink.append(device_id, telemetry.ts, telemetry.payload)
            except DatastoreError as e:
                ok = False
                self._stats.sink_errors += 1
                logger.error(
                    "[PIPELINE] Telemetry dropped device=%s ts=%s err=%s",
                    device_id,
                    telemetry.ts.isoformat(),
                    e,
                )

        if not ok:
            self._stats.failed += 1
            return PipelineOutcome.FAILED

        self._stats.stored += 1
        self._stats.last_stored_at = time.time()
        if self._stats.stored % 100 == 0:
            logger.info("[PIPELINE] %s", self._stats)
        return PipelineOutcome.STORED

    @property
    def stats(self) -> dict:
        stats = self._stats.to_dict()
        stats["discards"] = self._discards.stats
        return stats
