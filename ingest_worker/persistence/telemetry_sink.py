"""Telemetry sink: append-only log of accepted messages."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, bindparam, text

from .datastore import Datastore

logger = logging.getLogger(__name__)

INSERT_TELEMETRY = text(
    """
    INSERT INTO telemetry (device_id, ts, payload)
    VALUES (:device_id, :ts, :payload)
    """
).bindparams(
    bindparam("ts", type_=DateTime(timezone=True)),
    bindparam("payload", type_=JSON),
)


class TelemetrySink:
    """Inserta una fila inmutable por mensaje aceptado.

    No deduplication: telemetry is a log, two identical appends are two rows.
    """

    def __init__(self, datastore: Datastore):
        self._datastore = datastore

    async def append(self, device_id: str, ts: datetime, payload: dict[str, Any]) -> None:
        """Stores one telemetry record.

        Raises:
            DatastoreError: if the insert fails.
        """
        await self._datastore.execute(
            INSERT_TELEMETRY,
            {"device_id": device_id, "ts": ts, "payload": payload},
        )
        logger.debug("[SINK] Stored telemetry device=%s ts=%s", device_id, ts.isoformat())
