"""Database engine and session configuration.

WHAT:
    Builds the sync SQLAlchemy engine and session factory, and exposes the
    FastAPI dependency plus a context manager for workers and scripts.

WHY:
    The engine's services (orchestrator, writers, reconciliation) are sync and
    run inside request handlers or `asyncio.to_thread` from arq jobs; one sync
    session per unit of work keeps transactions simple.

USAGE:
    from donorlink.database import SessionLocal, get_db

    @router.post("/items")
    def create_item(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - donorlink/routers/ (consumers of get_db)
    - donorlink/workers/arq_worker.py (SessionLocal per job)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from donorlink.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    if database_url.startswith("postgres://"):
        # Heroku-style URL
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


DATABASE_URL = _get_database_url()

# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in donorlink.models to ensure a single registry across the app
from .models import Base  # noqa: E402,F401


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, scripts).

    Example:
        with get_sync_session() as db:
            jobs = db.query(BackfillJob).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
