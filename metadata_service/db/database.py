"""
Database engine and session management.
Default database: data/programs.db (SQLite), overridable with PROGRAMS_DATABASE_URL.
"""
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

# Base class for models
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections may be shared across worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # Concurrent jobs wait for the write lock instead of failing fast
        connect_args["timeout"] = 30
        sqlite_path = database_url.removeprefix("sqlite:///")
        if sqlite_path != database_url and sqlite_path not in ("", ":memory:"):
            # Ensure data directory exists
            Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        database_url,
        connect_args=connect_args,
        echo=False,  # No SQL logging
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


def init_db(bind: Engine) -> None:
    """Initialize database tables."""
    from metadata_service.db.models import Program  # noqa: F401
    Base.metadata.create_all(bind=bind)
