"""Tests del pipeline de ingesta (mensaje -> registro + telemetría)."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from ingest_worker.mqtt.handler import DeviceLocks, IngestPipeline, PipelineOutcome
from ingest_worker.mqtt.topics import TopicRouter
from ingest_worker.persistence.datastore import DatastoreError
from ingest_worker.persistence.device_registry import DeviceRegistry
from ingest_worker.persistence.telemetry_sink import TelemetrySink
from ingest_worker.resilience.dead_letter import DiscardRecorder

from .conftest import FIXED_NOW, as_naive_utc, fetch_devices, fetch_telemetry


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def discards() -> DiscardRecorder:
    return DiscardRecorder()


@pytest.fixture
def pipeline(datastore, discards, fixed_clock) -> IngestPipeline:
    """Pipeline completo sobre SQLite."""
    return IngestPipeline(
        router=TopicRouter("devices/+/telemetry"),
        registry=DeviceRegistry(datastore),
        sink=TelemetrySink(datastore),
        discards=discards,
        clock=fixed_clock,
    )


@pytest.fixture
def registry_mock() -> AsyncMock:
    return AsyncMock(spec=DeviceRegistry)


@pytest.fixture
def sink_mock() -> AsyncMock:
    return AsyncMock(spec=TelemetrySink)


@pytest.fixture
def mocked_pipeline(registry_mock, sink_mock, fixed_clock) -> IngestPipeline:
    return IngestPipeline(
        router=TopicRouter(),
        registry=registry_mock,
        sink=sink_mock,
        clock=fixed_clock,
    )


# =============================================================================
# END TO END (SQLite)
# =============================================================================

class TestStore:
    @pytest.mark.asyncio
    async def test_accepted_message(self, pipeline, datastore):
        outcome = await pipeline.handle("devices/abc/telemetry", b'{"v":3,"ts":1700000000}')

        assert outcome == PipelineOutcome.STORED
        devices = fetch_devices(datastore)
        assert [(d.id, d.last_seen) for d in devices] == [("abc", as_naive_utc(FIXED_NOW))]
        rows = fetch_telemetry(datastore)
        assert len(rows) == 1
        assert rows[0].device_id == "abc"
        assert rows[0].ts == datetime(2023, 11, 14, 22, 13, 20)
        assert rows[0].payload == {"v": 3, "ts": 1700000000}

    @pytest.mark.asyncio
    async def test_repeated_messages(self, pipeline, datastore):
        for _ in range(3):
            await pipeline.handle("devices/abc/telemetry", b'{"v":1}')
        await pipeline.handle("devices/xyz/telemetry", b'{"v":2}')

        assert [d.id for d in fetch_devices(datastore)] == ["abc", "xyz"]
        assert len(fetch_telemetry(datastore)) == 4
        assert pipeline.stats["stored"] == 4

    @pytest.mark.asyncio
    async def test_malformed_payload_writes_nothing(self, pipeline, datastore, discards, caplog):
        with caplog.at_level(logging.WARNING):
            outcome = await pipeline.handle("devices/abc/telemetry", b"not json")

        assert outcome == PipelineOutcome.DISCARDED
        assert fetch_devices(datastore) == []
        assert fetch_telemetry(datastore) == []
        assert discards.stats["by_reason"] == {"non-structured payload": 1}
        assert "non-structured payload" in caplog.text

    @pytest.mark.asyncio
    async def test_out_of_range_ts_is_stored_with_ingestion_time(self, pipeline, datastore):
        outcome = await pipeline.handle("devices/abc/telemetry", b'{"v":1,"ts":-1e306}')

        assert outcome == PipelineOutcome.STORED
        rows = fetch_telemetry(datastore)
        assert rows[0].ts == as_naive_utc(FIXED_NOW)

    @pytest.mark.asyncio
    async def test_locks_released(self, pipeline):
        await pipeline.handle("devices/abc/telemetry", b'{"v":1}')
        assert len(pipeline._locks) == 0


# =============================================================================
# ROUTING / DISCARDS (mocks)
# =============================================================================

class TestNoWrites:
    @pytest.mark.asyncio
    async def test_foreign_topic_ignored(self, mocked_pipeline, registry_mock, sink_mock):
        outcome = await mocked_pipeline.handle("sensors/abc/data", b'{"v":1}')

        assert outcome == PipelineOutcome.IGNORED
        registry_mock.upsert.assert_not_called()
        sink_mock.append.assert_not_called()
        assert mocked_pipeline.stats["ignored"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [b"\xff\xfe", b"[1]", b'{"v":"3"}', b""])
    async def test_invalid_payload_discarded(self, mocked_pipeline, registry_mock, sink_mock, raw):
        outcome = await mocked_pipeline.handle("devices/abc/telemetry", raw)

        assert outcome == PipelineOutcome.DISCARDED
        registry_mock.upsert.assert_not_called()
        sink_mock.append.assert_not_called()
        assert mocked_pipeline.stats["discards"]["total_discarded"] == 1


# =============================================================================
# WRITE FAILURES
# =============================================================================

class TestWriteFailures:
    @pytest.mark.asyncio
    async def test_sink_failure(self, mocked_pipeline, registry_mock, sink_mock):
        sink_mock.append.side_effect = DatastoreError("timeout")

        outcome = await mocked_pipeline.handle("devices/abc/telemetry", b'{"v":1}')

        assert outcome == PipelineOutcome.FAILED
        registry_mock.upsert.assert_awaited_once_with("abc", FIXED_NOW)
        stats = mocked_pipeline.stats
        assert stats["failed"] == 1
        assert stats["sink_errors"] == 1
        assert stats["stored"] == 0

    @pytest.mark.asyncio
    async def test_registry_failure_still_appends(self, mocked_pipeline, registry_mock, sink_mock):
        registry_mock.upsert.side_effect = DatastoreError("connection reset")

        outcome = await mocked_pipeline.handle("devices/abc/telemetry", b'{"v":1,"ts":1700000000}')

        assert outcome == PipelineOutcome.FAILED
        sink_mock.append.assert_awaited_once_with(
            "abc",
            datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
            {"v": 1, "ts": 1700000000},
        )
        assert mocked_pipeline.stats["registry_errors"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_never_escapes(self, mocked_pipeline, sink_mock):
        sink_mock.append.side_effect = RuntimeError("boom")

        outcome = await mocked_pipeline.handle("devices/abc/telemetry", b'{"v":1}')

        assert outcome == PipelineOutcome.FAILED
        assert mocked_pipeline.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_pipeline_keeps_working_after_failure(self, mocked_pipeline, sink_mock):
        sink_mock.append.side_effect = [DatastoreError("down"), None]

        first = await mocked_pipeline.handle("devices/abc/telemetry", b'{"v":1}')
        second = await mocked_pipeline.handle("devices/abc/telemetry", b'{"v":2}')

        assert (first, second) == (PipelineOutcome.FAILED, PipelineOutcome.STORED)


# =============================================================================
# ORDERING
# =============================================================================

class RecordingSink:
    """Sink falso: la latencia de cada escritura viene en el payload."""

    def __init__(self):
        self.written = []

    async def append(self, device_id, ts, payload):
        await asyncio.sleep(payload.get("delay", 0))
        self.written.append((device_id, payload["seq"]))


class TestOrdering:
    @pytest.mark.asyncio
    async def test_same_device_written_in_arrival_order(self, registry_mock, fixed_clock):
        sink = RecordingSink()
        pipeline = IngestPipeline(TopicRouter(), registry_mock, sink, clock=fixed_clock)

        delays = [0.05, 0.0, 0.02, 0.0]
        await asyncio.gather(
            *(
                pipeline.handle("devices/abc/telemetry", json.dumps({"seq": i, "delay": d}).encode())
                for i, d in enumerate(delays)
            )
        )

        assert sink.written == [("abc", 0), ("abc", 1), ("abc", 2), ("abc", 3)]

    @pytest.mark.asyncio
    async def test_devices_do_not_block_each_other(self, registry_mock, fixed_clock):
        sink = RecordingSink()
        pipeline = IngestPipeline(TopicRouter(), registry_mock, sink, clock=fixed_clock)

        await asyncio.gather(
            pipeline.handle("devices/slow/telemetry", b'{"seq":0,"delay":0.05}'),
            pipeline.handle("devices/fast/telemetry", b'{"seq":0}'),
        )

        assert sink.written == [("fast", 0), ("slow", 0)]


class TestDeviceLocks:
    @pytest.mark.asyncio
    async def test_lock_dropped_when_idle(self):
        locks = DeviceLocks()
        async with locks.hold("abc"):
            assert len(locks) == 1
        assert len(locks) == 0
