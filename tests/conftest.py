from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import JSON, DateTime, text

from ingest_worker.persistence.datastore import Datastore
from ingest_worker.persistence.schema import ensure_schema


FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_clock():
    """Reloj fijo para tests deterministas."""
    return lambda: FIXED_NOW


@pytest.fixture
def datastore(tmp_path) -> Datastore:
    """SQLite file database with the ingest schema applied."""
    ds = Datastore(f"sqlite:///{tmp_path / 'ingest.db'}", statement_timeout=5.0)
    ds.connect()
    ensure_schema(ds.engine)
    yield ds
    ds.dispose()


def fetch_telemetry(ds: Datastore) -> list[Any]:
    with ds.engine.connect() as conn:
        return list(
            conn.execute(
                text("SELECT device_id, ts, payload FROM telemetry ORDER BY rowid").columns(
                    ts=DateTime(), payload=JSON()
                )
            )
        )


def fetch_devices(ds: Datastore) -> list[Any]:
    with ds.engine.connect() as conn:
        return list(
            conn.execute(
                text("SELECT id, last_seen FROM device ORDER BY id").columns(last_seen=DateTime())
            )
        )


def as_naive_utc(dt: datetime) -> datetime:
    """SQLite drops tzinfo; stored values are UTC."""
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
