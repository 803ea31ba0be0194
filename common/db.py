from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool


logger = logging.getLogger(__name__)


def build_engine(
    url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 5,
    statement_timeout: float = 5.0,
) -> Engine:
    """Create the SQLAlchemy engine used by the ingest worker.

    PostgreSQL gets a bounded QueuePool plus a server-side statement timeout.
    SQLite (tests, local runs) gets the pool that makes it usable from the
    worker threads the datastore dispatches to.
    """
    sa_url = make_url(url)
    kwargs: dict[str, Any] = {"pool_pre_ping": True, "future": True}

    if sa_url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if sa_url.database in (None, "", ":memory:"):
            # In-memory databases only exist on one connection.
            kwargs["poolclass"] = StaticPool
        return create_engine(sa_url, **kwargs)

    kwargs.update(
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=300,
        pool_timeout=statement_timeout,
    )
    if sa_url.get_backend_name() == "postgresql":
        timeout_ms = int(statement_timeout * 1000)
        kwargs["connect_args"] = {"options": f"-c statement_timeout={timeout_ms}"}

    logger.info(
        "[DB] Create engine backend=%s host=%s port=%s db=%s user=%s pool=%d+%d",
        sa_url.get_backend_name(),
        sa_url.host,
        sa_url.port,
        sa_url.database,
        sa_url.username,
        pool_size,
        max_overflow,
    )
    return create_engine(sa_url, **kwargs)
