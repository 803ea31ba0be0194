"""Datastore connection manager.

Owns the SQLAlchemy engine (connection pool) shared by the device registry
and the telemetry sink. Statements run in worker threads so the event loop
never blocks on the database, each one inside its own transaction and
bounded by a timeout.

A statement that exceeds the timeout is cancelled on its connection and
the caller then waits for the worker thread to finish, so the reported
result is always the real one: an error means the transaction was rolled
back, and the pooled connection is back in the pool before ``execute``
returns. On PostgreSQL the server-side ``statement_timeout`` bounds that
wait.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.expression import Executable

from common.config import mask_url
from common.db import build_engine

logger = logging.getLogger(__name__)


class DatastoreError(Exception):
    """A datastore operation failed (unreachable, rejected or timed out)."""


class StatementCancelled(Exception):
    """The statement was cancelled before its transaction committed."""


class _StatementCall:
    """One statement running in a worker thread, cancellable from the loop."""

    def __init__(self):
        self._lock = threading.Lock()
        self._dbapi_conn: Any = None
        self.cancelled = False

    def attach(self, conn: Connection) -> None:
        with self._lock:
            self._dbapi_conn = conn.connection.dbapi_connection

    def detach(self) -> None:
        with self._lock:
            self._dbapi_conn = None

    def check(self) -> None:
        with self._lock:
            if self.cancelled:
                raise StatementCancelled("statement cancelled after timeout")

    def cancel(self) -> None:
        # Under the lock so the connection cannot go back to the pool meanwhile.
        with self._lock:
            self.cancelled = True
            if self._dbapi_conn is None:
                return
            # psycopg2: cancel(); sqlite3: interrupt()
            interrupt = getattr(self._dbapi_conn, "cancel", None) or getattr(
                self._dbapi_conn, "interrupt", None
            )
            if interrupt is None:
                return
            try:
                interrupt()
            except Exception as e:
                logger.warning("[DB] Could not cancel running statement: %s", e)


class Datastore:
    """Gestiona el pool de conexiones a la base de datos."""

    def __init__(
        self,
        url: str,
        pool_size: int = 5,
        max_overflow: int = 5,
        statement_timeout: float = 5.0,
    ):
        self._url = url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._statement_timeout = statement_timeout
        self._engine: Optional[Engine] = None
        self._last_error: Optional[str] = None

    @property
    def engine(self) -> Optional[Engine]:
        return self._engine

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def statement_timeout(self) -> float:
        return self._statement_timeout

    def connect(self) -> None:
        """Builds the pool and checks connectivity.

        Raises:
            DatastoreError: if the database cannot be reached. The caller
                treats this as fatal at startup.
        """
        logger.info("[DB] Connecting to %s", mask_url(self._url))
        engine = None
        try:
            engine = build_engine(
                self._url,
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                statement_timeout=self._statement_timeout,
            )
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        # ImportError: dialect known to SQLAlchemy but its driver is not installed.
        except (SQLAlchemyError, ImportError) as e:
            if engine is not None:
                engine.dispose()
            self._last_error = type(e).__name__
            raise DatastoreError(f"cannot reach datastore: {e}") from e

        self._engine = engine
        self._last_error = None
        logger.info("[DB] Connection test OK")

    async def execute(self, statement: Executable, params: Optional[Mapping[str, Any]] = None) -> None:
        """Runs one statement in its own transaction.

        Raises:
            DatastoreError: on any database error or when the statement does
                not complete within the configured timeout.
        """
        if self._engine is None:
            raise DatastoreError("datastore is not connected")

        call = _StatementCall()
        worker = asyncio.ensure_future(
            asyncio.to_thread(self._execute_sync, statement, dict(params or {}), call)
        )
        try:
            await asyncio.wait_for(asyncio.shield(worker), timeout=self._statement_timeout)
        except asyncio.TimeoutError:
            call.cancel()
            await self._finish_cancelled(worker)
        except asyncio.CancelledError:
            call.cancel()
            raise
        except SQLAlchemyError as e:
            self._last_error = type(e).__name__
            raise DatastoreError(str(e).splitlines()[0]) from e

    async def _finish_cancelled(self, worker: asyncio.Future) -> None:
        """Waits for a timed-out statement and reports how it really ended."""
        try:
            await worker
        except (SQLAlchemyError, StatementCancelled) as e:
            self._last_error = "timeout"
            raise DatastoreError(f"statement timed out after {self._statement_timeout:.1f}s") from e
        logger.warning(
            "[DB] Statement committed after exceeding the %.1fs timeout",
            self._statement_timeout,
        )

    def _execute_sync(self, statement: Executable, params: dict[str, Any], call: _StatementCall) -> None:
        with self._engine.connect() as conn:
            call.attach(conn)
            try:
                with conn.begin():
                    conn.execute(statement, params)
                    # Raising here rolls the transaction back.
                    call.check()
            finally:
                call.detach()

    async def ping(self) -> bool:
        """Health probe: SELECT 1 with the statement timeout."""
        if self._engine is None:
            return False
        try:
            await self.execute(text("SELECT 1"))
            return True
        except DatastoreError as e:
            logger.warning("[DB] Health check failed: %s", e)
            return False

    async def ping_latency_ms(self) -> Optional[float]:
        start = time.perf_counter()
        if not await self.ping():
            return None
        return round((time.perf_counter() - start) * 1000, 2)

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("[DB] Connection pool closed")

    @property
    def stats(self) -> dict:
        stats: dict[str, Any] = {
            "connected": self.is_connected,
            "url": mask_url(self._url),
            "statement_timeout_s": self._statement_timeout,
            "last_error": self._last_error,
        }
        if self._engine is not None:
            stats["pool"] = self._engine.pool.status()
        return stats
