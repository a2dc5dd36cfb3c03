"""
Dialect lookup for sessions.

Row locks and the overlap constraint differ between PostgreSQL and SQLite, so
repositories ask the session which backend they are talking to.
"""

from __future__ import annotations

from sqlalchemy.exc import UnboundExecutionError
from sqlalchemy.orm import Session


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """Return the bound dialect name, or ``default`` for an unbound session."""
    try:
        bind = session.get_bind()
    except UnboundExecutionError:
        return default
    return getattr(getattr(bind, "dialect", None), "name", None) or default
