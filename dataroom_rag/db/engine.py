# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# The chunk store, document status tracking, and chat persistence all use a
# synchronous SQLAlchemy engine (psycopg2 against PostgreSQL). Celery
# workers call it directly; the async query pipeline reaches it through
# asyncio.to_thread() in the store classes.
#
# SESSION LIFECYCLE (session_scope / get_sync_session):
#   create → yield → commit (or rollback on error) → close
#
# Tests pass their own sessionmaker bound to in-memory SQLite; everything
# else uses the lazily created process-wide engine.
# =============================================================================

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dataroom_rag.config import get_settings

# ---------------------------------------------------------------------------
# Sync Engine — Lazy Initialization
# ---------------------------------------------------------------------------
# Lazy so importing the package never needs a reachable database or the
# psycopg2 driver (unit tests, query-only processes).
# ---------------------------------------------------------------------------

_sync_engine: Engine | None = None
_sync_session_factory: sessionmaker | None = None


def create_sync_engine(url: str, echo: bool = False) -> Engine:
    """
    Build an engine for ``url``.

    SQLite (tests) gets a single shared connection so an in-memory database
    survives across sessions; PostgreSQL gets a small connection pool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=echo, pool_size=5, max_overflow=10, pool_pre_ping=True)


def _get_sync_engine() -> Engine:
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        s = get_settings()
        _sync_engine = create_sync_engine(s.database_url_sync, echo=s.debug)
    return _sync_engine


def _get_sync_session_factory() -> sessionmaker:
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """Commit on success, roll back on error, always close."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Session on the process-wide engine.

    Usage in Celery tasks:
        with get_sync_session() as session:
            doc = session.get(DocumentRecord, document_id)
            doc.status = DocumentStatus.COMPLETED
            # Auto-commits on exit, auto-rollbacks on exception
    """
    with session_scope(_get_sync_session_factory()) as session:
        yield session


def init_db(engine: Engine | None = None) -> None:
    """Create all tables that don't exist yet."""
    from dataroom_rag.db.models import Base

    Base.metadata.create_all(engine or _get_sync_engine())


def dispose_engine() -> None:
    global _sync_engine, _sync_session_factory
    if _sync_engine is not None:
        _sync_engine.dispose()
    _sync_engine = None
    _sync_session_factory = None
