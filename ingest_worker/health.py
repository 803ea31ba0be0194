"""Health and readiness endpoints of the ingest worker."""

from __future__ import annotations

from fastapi import FastAPI, HTTPException

from .mqtt.handler import IngestPipeline
from .mqtt.receiver import BusConnectionManager
from .persistence.datastore import Datastore


def create_health_app(
    bus: BusConnectionManager,
    datastore: Datastore,
    pipeline: IngestPipeline,
) -> FastAPI:
    app = FastAPI(title="Telemetry Ingest Worker", version="1.0.0")

    @app.get("/health")
    def health():
        """Liveness probe: ok while the process is running."""
        return {"status": "ok"}

    @app.get("/ready")
    async def ready():
        """Readiness probe: broker connected and database reachable."""
        bus_health = bus.health_check()
        latency_ms = await datastore.ping_latency_ms()
        if not bus_health["healthy"] or latency_ms is None:
            raise HTTPException(
                status_code=503,
                detail={"bus": bus_health, "db_latency_ms": latency_ms},
            )
        return {"status": "ready", "bus": bus_health, "db_latency_ms": latency_ms}

    @app.get("/stats")
    def stats():
        return {
            "bus": bus.stats,
            "bus_health": bus.health_check(),
            "pipeline": pipeline.stats,
            "datastore": datastore.stats,
        }

    return app
