"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Generator

from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker

from .engines import create_db_engine, get_engine, set_engine

logger = logging.getLogger(__name__)

# Unbound; sessions are bound to the current engine at creation time so tests
# and workers can swap engines without re-importing this module.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()


def new_session() -> Session:
    return SessionLocal(bind=get_engine())


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = new_session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Context-managed session that commits on success and rolls back on error."""
    db = new_session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


__all__ = [
    "Base",
    "SessionLocal",
    "create_db_engine",
    "get_db",
    "get_db_session",
    "get_engine",
    "new_session",
    "set_engine",
]
