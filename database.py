"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, table creation and
connection guard rails for the tip ledger.
"""

import logging
from typing import Any, Dict

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models import Base

logger = logging.getLogger(__name__)

# SQLSTATE raised by PostgreSQL when writing through a read-only transaction
READ_ONLY_SQL_TRANSACTION = "25006"


def is_postgres(bind) -> bool:
    """True when the engine/connection/session talks to PostgreSQL"""
    if isinstance(bind, Session):
        bind = bind.get_bind()
    return bind.dialect.name == "postgresql"


def build_engine(database_url: str, **overrides: Any) -> Engine:
    """Create an engine with dialect-appropriate pool and connect settings"""
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {
            "connect_args": {"check_same_thread": False, "timeout": 15},
            "echo": False,
        }
    else:
        kwargs = {
            "pool_size": Config.DB_POOL_SIZE,
            "max_overflow": Config.DB_MAX_OVERFLOW,
            "pool_pre_ping": True,  # Validate connections before use
            "pool_recycle": 3600,
            "pool_timeout": 30,
            "echo": False,
            "connect_args": {
                "connect_timeout": 10,
                "application_name": Config.DB_APPLICATION_NAME,  # Visible in pg_stat_activity
            },
        }
    kwargs.update(overrides)
    new_engine = create_engine(database_url, **kwargs)

    if new_engine.dialect.name == "postgresql":
        event.listen(new_engine, "connect", _configure_pg_session)
    elif new_engine.dialect.name == "sqlite":
        event.listen(new_engine, "connect", _configure_sqlite_session)
        event.listen(new_engine, "begin", _begin_sqlite_transaction)

    return new_engine


def _configure_pg_session(dbapi_connection, connection_record) -> None:
    """Apply per-connection timeouts so a stuck statement cannot stall the worker"""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"SET statement_timeout = {int(Config.DB_STATEMENT_TIMEOUT_MS)}")
        cursor.execute(f"SET lock_timeout = {int(Config.DB_LOCK_TIMEOUT_MS)}")
        cursor.execute(
            "SET idle_in_transaction_session_timeout = "
            f"{int(Config.DB_IDLE_IN_TRANSACTION_TIMEOUT_MS)}"
        )
        cursor.execute("SHOW transaction_read_only")
        row = cursor.fetchone()
        if row and str(row[0]).lower() == "on":
            logger.warning("⚠️ DB_READ_ONLY: connected session is read-only (standby replica?)")
    finally:
        cursor.close()
    # psycopg2 opens an implicit transaction for the SET statements
    dbapi_connection.commit()


def _configure_sqlite_session(dbapi_connection, connection_record) -> None:
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT and locking behave
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=15000")
    finally:
        cursor.close()


def _begin_sqlite_transaction(connection) -> None:
    """Take the write lock up front; SQLite has no row locks to serialize spends"""
    connection.exec_driver_sql("BEGIN IMMEDIATE")


engine = build_engine(Config.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def create_tables(bind: Engine = None) -> bool:
    """Create all database tables if they don't exist"""
    bind = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        Base.metadata.create_all(bind=bind, checkfirst=True)
        existing_tables = inspect(bind).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def test_connection(bind: Engine = None) -> bool:
    """Test database connection"""
    bind = bind or engine
    try:
        with bind.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


def is_session_writable(session: Session) -> bool:
    """
    Check whether the session can write.

    PostgreSQL standbys report transaction_read_only = on. Other dialects are
    assumed writable.
    """
    if not is_postgres(session):
        return True
    try:
        value = session.execute(text("SHOW transaction_read_only")).scalar()
    except DBAPIError as e:
        if getattr(e.orig, "pgcode", None) == READ_ONLY_SQL_TRANSACTION:
            return False
        raise
    return str(value).lower() != "on"


# Not a pytest test when imported into test modules
test_connection.__test__ = False
