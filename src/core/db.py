"""Database connection and session management."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator, List

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from .config import get_settings
from .logging_config import get_logger

LOGGER = get_logger(__name__)

SETTINGS = get_settings()

# Tables the conversion store cannot work without
REQUIRED_TABLES = [
    "conversion_event",
    "lead_conversion_state",
    "stage_transition",
    "score_override",
]


def build_engine(database_url: str) -> Engine:
    """
    Create an engine suited to the configured backend.

    SQLite gets a single shared connection for in-memory databases and
    NullPool plus WAL for file databases; other backends get a real pool.
    """
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            built = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            built = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=NullPool,
            )

            @event.listens_for(built, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=30000")
                cursor.close()

        return built

    return create_engine(
        database_url,
        pool_size=SETTINGS.db_pool_size,
        max_overflow=SETTINGS.db_max_overflow,
        pool_timeout=SETTINGS.db_pool_timeout,
        pool_pre_ping=True,
    )


engine = build_engine(SETTINGS.database_url)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Yields:
        SQLAlchemy Session object.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Engine | None = None) -> Dict[str, Any]:
    """
    Create any missing tables.

    Args:
        bind: Engine to initialize. Defaults to the configured engine.

    Returns:
        Dict with initialization results.
    """
    # Import models to ensure they are registered with Base
    from . import models  # noqa: F401

    target = bind or engine
    existing = set(inspect(target).get_table_names())
    Base.metadata.create_all(bind=target)
    created = sorted(set(inspect(target).get_table_names()) - existing)

    if created:
        LOGGER.info(f"Created tables: {created}")

    return {
        "status": "success",
        "tables_created": created,
        "tables_existing": sorted(existing),
    }


def validate_database(bind: Engine | None = None) -> Dict[str, Any]:
    """
    Validate database connection and required tables.

    Returns:
        Dict with validation results.
    """
    target = bind or engine
    result: Dict[str, Any] = {
        "status": "ok",
        "tables_found": [],
        "tables_missing": [],
        "errors": [],
    }

    try:
        with target.connect() as conn:
            conn.execute(text("SELECT 1"))

        existing_tables: List[str] = inspect(target).get_table_names()
        result["tables_found"] = existing_tables
        missing = [t for t in REQUIRED_TABLES if t not in existing_tables]
        result["tables_missing"] = missing

        if missing:
            result["status"] = "missing_tables"
            result["errors"].append(f"Missing required tables: {missing}")

    except Exception as e:
        LOGGER.error(f"Database validation failed: {e}")
        result["status"] = "error"
        result["errors"].append(str(e))

    return result


__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "build_engine",
    "get_session",
    "init_db",
    "validate_database",
    "REQUIRED_TABLES",
]
