"""Database configuration and session management."""

import os
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how rows are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_database_path():
    """Get the database path from environment or default."""
    return os.environ.get(
        "DATABASE_PATH",
        str(Path.home() / ".podbrief" / "podbrief.db")
    )


def get_database_url(database_url: str | None = None) -> str:
    """Resolve the database URL, falling back to the local SQLite file."""
    if database_url is None:
        database_url = os.environ.get("DATABASE_URL")
    if database_url is None:
        # Get database path (can be overridden by environment)
        database_path = get_database_path()

        # Ensure directory exists (unless it's :memory:)
        if database_path != ":memory:":
            db_path = Path(database_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)

        database_url = f"sqlite:///{database_path}"
    return database_url


def get_engine(database_url: str | None = None):
    """Create database engine with WAL mode for SQLite."""
    database_url = get_database_url(database_url)

    # In-memory databases share one connection so every session sees the same data
    engine_kwargs = {}
    if ":memory:" in database_url:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, echo=False, **engine_kwargs)

    # Enable WAL mode for SQLite
    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_session_factory(engine=None):
    """Create a session factory."""
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine=None):
    """Initialize the database, creating all tables."""
    # Register models on Base.metadata
    from . import models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(engine)
    return engine
