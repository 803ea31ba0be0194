"""Device registry: last-seen state per device."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import DateTime, bindparam, text

from .datastore import Datastore

logger = logging.getLogger(__name__)

# Insert-or-update in one statement: concurrent upserts for the same device
# never produce a second row and never need a read first.
UPSERT_DEVICE = text(
    """
    INSERT INTO device (id, last_seen)
    VALUES (:device_id, :last_seen)
    ON CONFLICT (id) DO UPDATE SET last_seen = excluded.last_seen
    """
).bindparams(bindparam("last_seen", type_=DateTime(timezone=True)))


class DeviceRegistry:
    """Mantiene last_seen por dispositivo (upsert idempotente)."""

    def __init__(self, datastore: Datastore):
        self._datastore = datastore

    async def upsert(self, device_id: str, now: datetime) -> None:
        """Registers the device or refreshes its last_seen.

        Raises:
            DatastoreError: if the write fails.
        """
        await self._datastore.execute(
            UPSERT_DEVICE,
            {"device_id": device_id, "last_seen": now},
        )
        logger.debug("[REGISTRY] Upserted device=%s last_seen=%s", device_id, now.isoformat())
