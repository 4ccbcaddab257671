"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the OTC payments feed.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_transactions(engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite connections.

    The driver's implicit transaction handling breaks SAVEPOINTs and lets two
    writers read the same row before either locks it. Emitting BEGIN IMMEDIATE
    takes the write lock up front, which is the closest SQLite gets to
    SELECT ... FOR UPDATE.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine configured for the backend in database_url"""
    if database_url.startswith("sqlite"):
        in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
        kwargs = {
            "echo": echo,
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }
        if in_memory:
            # One shared connection so every session sees the same database
            kwargs["poolclass"] = StaticPool
        sqlite_engine = create_engine(database_url, **kwargs)
        _enable_sqlite_transactions(sqlite_engine)
        return sqlite_engine

    return create_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
        connect_args={
            "connect_timeout": 10,
            "application_name": "otc_payments_feed",
        },
    )


if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def make_session_factory(bind: Engine) -> sessionmaker:
    """Session factory with the same settings as SessionLocal, bound to another engine"""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


@contextmanager
def managed_session(session_factory: Optional[sessionmaker] = None):
    """
    Context manager for a unit of work.

    Commits when the block exits cleanly, rolls back on any exception and
    always closes the session.
    """
    session: Session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except OperationalError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def test_connection(bind: Optional[Engine] = None) -> bool:
    """Test database connection"""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("✅ Database connection successful")
        return True
    except OperationalError as e:
        logger.error(f"❌ Database connection failed: {e}")
        return False
