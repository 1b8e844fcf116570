"""Database engine and session helpers.

The engine is created lazily from :func:`dentbill.config.get_settings` so tests
and scripts can point the service at another database before first use.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from dentbill import models
from dentbill.config import get_settings

logger = structlog.get_logger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Return the process wide engine, creating it on first use."""

    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(settings.database_url, **settings.engine_options())
        logger.info("db.engine_created", sqlite=settings.is_sqlite)
    return _engine


def _factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(), autoflush=False, expire_on_commit=False, future=True
        )
    return _session_factory


def configure(engine: Engine) -> None:
    """Bind the module to ``engine`` (used by scripts and tests)."""

    global _engine, _session_factory
    _engine = engine
    _session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def init_schema(engine: Optional[Engine] = None) -> None:
    models.create_all(engine or get_engine())


@contextmanager
def session_scope() -> Iterator[Session]:
    """Context manager yielding a session that commits on success."""

    session = _factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request scoped session."""

    with session_scope() as session:
        yield session


__all__ = ["get_engine", "configure", "init_schema", "session_scope", "get_session"]
