"""Database connection and session management."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings
from .logging_config import get_logger

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

# Tables the assignment and billing engines cannot run without
REQUIRED_TABLES = [
    "lead",
    "partner",
    "partner_assignment",
    "invoice",
    "invoice_line_item",
    "revenue",
    "platform_settings",
]

_is_sqlite = SETTINGS.database_url.startswith("sqlite")

if _is_sqlite:
    from sqlalchemy.pool import NullPool

    engine = create_engine(
        SETTINGS.database_url,
        connect_args={"check_same_thread": False},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside a real transaction
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")
else:
    engine = create_engine(
        SETTINGS.database_url,
        pool_size=SETTINGS.db_pool_size,
        max_overflow=SETTINGS.db_max_overflow,
        pool_timeout=SETTINGS.db_pool_timeout,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager for a unit of work.

    Commits on success, rolls back everything on any exception.
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


@contextmanager
def get_readonly_session() -> Generator[Session, None, None]:
    """Context manager for read-only database sessions."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def init_db(create_missing_only: bool = True) -> Dict[str, Any]:
    """
    Initialize database tables.

    Args:
        create_missing_only: If True, only creates tables that are absent.

    Returns:
        Dict with initialization results.
    """
    from . import models  # noqa: F401

    result: Dict[str, Any] = {
        "status": "success",
        "tables_created": [],
        "tables_existing": [],
        "warnings": [],
    }

    try:
        existing_tables = set(inspect(engine).get_table_names())

        if create_missing_only and existing_tables:
            missing_tables = set(Base.metadata.tables.keys()) - existing_tables
            if missing_tables:
                Base.metadata.create_all(
                    bind=engine,
                    tables=[Base.metadata.tables[name] for name in missing_tables],
                )
                result["tables_created"] = sorted(missing_tables)
                LOGGER.info("Created missing tables: %s", sorted(missing_tables))
        else:
            Base.metadata.create_all(bind=engine)
            new_tables = set(inspect(engine).get_table_names())
            result["tables_created"] = sorted(new_tables - existing_tables)

        result["tables_existing"] = sorted(existing_tables)

        final_tables = set(inspect(engine).get_table_names())
        missing_required = [t for t in REQUIRED_TABLES if t not in final_tables]
        if missing_required:
            result["warnings"].append(f"Missing required tables: {missing_required}")
            result["status"] = "warning"

    except SQLAlchemyError as e:
        result["status"] = "error"
        result["error"] = str(e)
        LOGGER.error("init_db failed: %s", e)

    return result


def validate_database() -> Dict[str, Any]:
    """
    Validate database connection and required tables.

    Call this at application startup to ensure the database is ready.
    """
    result: Dict[str, Any] = {
        "status": "ok",
        "database_url": SETTINGS.database_url,
        "tables_found": [],
        "tables_missing": [],
        "errors": [],
    }

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        existing_tables = inspect(engine).get_table_names()
        result["tables_found"] = existing_tables

        missing = [t for t in REQUIRED_TABLES if t not in existing_tables]
        result["tables_missing"] = missing
        if missing:
            result["status"] = "missing_tables"
            result["errors"].append(f"Missing required tables: {missing}")

    except SQLAlchemyError as e:
        result["status"] = "error"
        result["errors"].append(str(e))

    return result


__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "get_session",
    "get_readonly_session",
    "init_db",
    "validate_database",
    "REQUIRED_TABLES",
]
