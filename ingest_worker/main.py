"""Entry point of the telemetry ingest worker.

Startup order:
1. configuration and logging
2. datastore pool + connectivity check (fatal on failure)
3. schema bootstrap
4. MQTT bus (background reconnect loop)
5. optional health server

Shutdown (SIGINT/SIGTERM): the bus stops accepting messages, in-flight
messages get a grace period, then the datastore pool is closed.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Optional

import uvicorn
from sqlalchemy.exc import SQLAlchemyError

from common.config import ConfigError, Settings, get_settings
from common.logging_setup import configure_logging

from .health import create_health_app
from .mqtt.handler import IngestPipeline
from .mqtt.receiver import BusConnectionManager
from .mqtt.topics import TopicRouter
from .persistence.datastore import Datastore, DatastoreError
from .persistence.device_registry import DeviceRegistry
from .persistence.schema import ensure_schema
from .persistence.telemetry_sink import TelemetrySink
from .resilience.dead_letter import DiscardRecorder

logger = logging.getLogger(__name__)


@dataclass
class IngestService:
    """Components of one worker process, each owned exactly once."""

    settings: Settings
    datastore: Datastore
    discards: DiscardRecorder
    pipeline: IngestPipeline
    bus: BusConnectionManager


def build_service(settings: Settings) -> IngestService:
    datastore = Datastore(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        statement_timeout=settings.db_statement_timeout,
    )
    discards = DiscardRecorder.from_url(settings.redis_url)
    pipeline = IngestPipeline(
        router=TopicRouter(settings.mqtt_topic),
        registry=DeviceRegistry(datastore),
        sink=TelemetrySink(datastore),
        discards=discards,
    )
    bus = BusConnectionManager(settings, on_message=pipeline.handle)
    return IngestService(
        settings=settings,
        datastore=datastore,
        discards=discards,
        pipeline=pipeline,
        bus=bus,
    )


def _start_health_server(service: IngestService) -> tuple[uvicorn.Server, threading.Thread]:
    app = create_health_app(service.bus, service.datastore, service.pipeline)
    config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=service.settings.health_port,
        log_level="warning",
        lifespan="off",
    )
    server = uvicorn.Server(config)
    # Off the main thread uvicorn leaves signal handling to us.
    thread = threading.Thread(target=server.run, name="health-server", daemon=True)
    thread.start()
    logger.info("[MAIN] Health server on :%d", service.settings.health_port)
    return server, thread


async def run(
    settings: Settings,
    stop_event: Optional[asyncio.Event] = None,
    apply_schema: bool = True,
) -> None:
    """Runs the worker until ``stop_event`` is set or a signal arrives.

    Raises:
        DatastoreError: if the datastore is unreachable at startup.
    """
    service = build_service(settings)
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)

    service.datastore.connect()
    health = None
    try:
        if apply_schema:
            try:
                await asyncio.to_thread(ensure_schema, service.datastore.engine)
            except SQLAlchemyError as e:
                raise DatastoreError(f"schema bootstrap failed: {e}") from e

        await service.bus.start()

        if settings.health_port > 0:
            health = _start_health_server(service)

        logger.info("[MAIN] Ingest worker running")
        await stop_event.wait()
        logger.info("[MAIN] Shutdown requested")
    finally:
        if service.bus.is_started:
            await service.bus.stop(settings.shutdown_grace)
        if health is not None:
            server, thread = health
            server.should_exit = True
            await asyncio.to_thread(thread.join, 5.0)
        await service.discards.close()
        service.datastore.dispose()
        logger.info("[MAIN] Pipeline %s", service.pipeline.stats)


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(description="MQTT telemetry ingest worker")
    p.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    p.add_argument("--skip-schema", action="store_true", help="do not run the schema bootstrap")
    args = p.parse_args(argv)

    try:
        settings = get_settings()
    except ConfigError as e:
        configure_logging("INFO")
        logger.critical("[MAIN] Invalid configuration: %s", e)
        return 1

    configure_logging(args.log_level or settings.log_level)

    try:
        asyncio.run(run(settings, apply_schema=not args.skip_schema))
    except DatastoreError as e:
        logger.critical("[MAIN] Fatal: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
