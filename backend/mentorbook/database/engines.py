"""Database engine factory."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from mentorbook.core.config import settings

logger = logging.getLogger(__name__)


def _is_sqlite(db_url: str) -> bool:
    return db_url.startswith("sqlite")


def _build_connect_args(db_url: str) -> dict[str, Any]:
    if _is_sqlite(db_url):
        # Celery workers and threaded tests share connections across threads.
        return {"check_same_thread": False}
    args: dict[str, Any] = {
        "keepalives": 1,
        "keepalives_idle": 15,
        "keepalives_interval": 5,
        "keepalives_count": 3,
        "connect_timeout": 5,
        "application_name": "mentorbook",
    }
    if settings.db_statement_timeout_ms:
        args["options"] = f"-c statement_timeout={settings.db_statement_timeout_ms}"
    return args


def _add_pool_events(engine: Engine, pool_name: str) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(_dbapi_connection: Any, _connection_record: Any) -> None:
        logger.info("[%s] Database connection established", pool_name)

    @event.listens_for(engine, "checkout")
    def _on_checkout(
        _dbapi_connection: Any, _connection_record: Any, _connection_proxy: Any
    ) -> None:
        logger.debug("[%s] Connection checked out from pool", pool_name)

    @event.listens_for(engine, "checkin")
    def _on_checkin(_dbapi_connection: Any, _connection_record: Any) -> None:
        logger.debug("[%s] Connection returned to pool", pool_name)

    @event.listens_for(engine, "invalidate")
    def _on_invalidate(_dbapi_connection: Any, _connection_record: Any, exception: Any) -> None:
        logger.warning(
            "[%s] Connection invalidated",
            pool_name,
            extra={
                "event": "db_connection_invalidated",
                "exception": str(exception) if exception else "unknown",
            },
        )


def create_db_engine(db_url: str | None = None, *, pool_name: str = "API") -> Engine:
    """
    Build an engine for ``db_url`` (defaults to the configured database).

    Postgres gets a QueuePool sized from settings; SQLite uses the dialect's
    default pool since it has no server-side connection limit.
    """
    url = db_url or settings.get_database_url()
    if _is_sqlite(url):
        engine = create_engine(url, connect_args=_build_connect_args(url), future=True)
    else:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
            pool_use_lifo=True,
            future=True,
            connect_args=_build_connect_args(url),
        )
    _add_pool_events(engine, pool_name)
    return engine


_engine: Engine | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def set_engine(engine: Engine | None) -> None:
    """Replace the process-wide engine (used by workers and test harnesses)."""
    global _engine
    _engine = engine


__all__ = ["create_db_engine", "get_engine", "set_engine"]
