"""Database session and base configuration.

WHAT:
    Provides the sync SQLAlchemy engine and session factory used by the
    workers, the scheduler and the orchestrator.

WHY:
    - Job handlers run in worker threads (asyncio.to_thread) and need
      plain sync sessions
    - One engine per process keeps the connection pool shared

USAGE:
    from adsync.database import SessionLocal, get_sync_session

    with get_sync_session() as db:
        accounts = db.query(AdAccount).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - adsync/workers/start_worker.py (passes SessionLocal to handlers)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from adsync.config import get_settings


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """DATABASE_URL from settings (environment, .env or the sqlite default)."""
    return get_settings().DATABASE_URL


def build_engine(database_url: str):
    """Create an engine with pool settings suited to the backend.

    NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


DATABASE_URL = _get_database_url()
engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in adsync.models to ensure a single registry
from .models import Base  # noqa: E402


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sync sessions in workers and scripts.

    Example:
        with get_sync_session() as db:
            jobs = db.query(SyncJob).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create tables that do not exist yet (dev and sqlite deployments)."""
    Base.metadata.create_all(bind=engine)
