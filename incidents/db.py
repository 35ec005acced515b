"""Database connection and SQLAlchemy engine setup."""

from __future__ import annotations

from sqlalchemy import Engine, create_engine

from incidents.config import settings

_engine: Engine | None = None


def get_engine() -> Engine:
    """Create (or memoize) the SQLAlchemy engine."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,  # Verify connections before use
            echo=False,
            future=True,
        )
    return _engine
