"""Database helpers for the practice calendar.

The engine is created lazily from :func:`get_database_settings`.  Tests and
embedding applications may hand over their own engine or session factory via
:func:`configure_database`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import Base

logger = structlog.get_logger(__name__)

_ENGINE: Optional[Engine] = None
_SESSION_FACTORY: Optional[sessionmaker[Session]] = None


def create_engine_from_settings(settings: Optional[DatabaseSettings] = None) -> Engine:
    settings = settings or get_database_settings()
    return sa.create_engine(settings.url, future=True, **settings.engine_options())


def configure_database(conn: Engine | sessionmaker[Session]) -> None:
    """Configure the session factory used by :func:`session_scope`."""

    global _ENGINE, _SESSION_FACTORY

    if isinstance(conn, sessionmaker):
        _SESSION_FACTORY = conn
        _ENGINE = None
        return

    if _ENGINE is not None and _ENGINE is not conn:
        _ENGINE.dispose()

    _ENGINE = conn
    _SESSION_FACTORY = sessionmaker(
        bind=conn,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )


def _session_factory() -> sessionmaker[Session]:
    if _SESSION_FACTORY is None:
        engine = create_engine_from_settings()
        configure_database(engine)
        create_all(engine)
        logger.info("database.configured", dialect=engine.dialect.name)
    assert _SESSION_FACTORY is not None
    return _SESSION_FACTORY


def create_all(engine: Optional[Engine] = None) -> None:
    target = engine or _ENGINE
    if target is None:
        raise RuntimeError("Database engine is not configured")
    Base.metadata.create_all(target)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Context manager yielding a session that commits on success."""

    session = _session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "create_engine_from_settings",
    "configure_database",
    "create_all",
    "session_scope",
]
