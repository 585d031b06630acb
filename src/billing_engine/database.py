"""Database engine and session management."""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from billing_engine.config import get_settings

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def create_db_engine(database_url: str | None = None, *, echo: bool = False) -> Engine:
    """Create a synchronous engine for the given (or configured) URL."""
    url = database_url or get_settings().database_url
    kwargs: dict = {"echo": echo, "future": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=10)
    return create_engine(url, **kwargs)


def init_db(database_url: str | None = None) -> sessionmaker[Session]:
    """Initialize the process-wide engine and session factory."""
    global _engine, _session_factory

    if _session_factory is None:
        _engine = create_db_engine(database_url, echo=get_settings().debug)
        _session_factory = sessionmaker(
            bind=_engine,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


def get_engine() -> Engine:
    """Return the process-wide engine, initializing it if needed."""
    init_db()
    if _engine is None:
        raise RuntimeError("Database not initialized")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Return the process-wide session factory."""
    return init_db()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Session scope that commits on success and rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dispose_db() -> None:
    """Dispose the process-wide engine (used on shutdown and in tests)."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
