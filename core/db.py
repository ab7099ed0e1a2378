# core/db.py
"""
Database management for the commission ledger engine.
Single database, SQLAlchemy engine + session factory.
"""
import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import Config
from models.base import Base

logger = logging.getLogger(__name__)

# Database engines
_engine = None
_SessionFactory = None


def _enable_sqlite_savepoints(engine: Engine):
    """
    Let pysqlite run real SAVEPOINTs.

    The driver opens transactions lazily on its own, which breaks
    session.begin_nested(); we take over BEGIN emission instead.
    """

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine with dialect-specific tweaks applied.

    Args:
        database_url: SQLAlchemy URL
        echo: Log SQL statements

    Returns:
        Engine instance
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
        _enable_sqlite_savepoints(engine)
    else:
        engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
    return engine


def get_engine():
    """Get or create database engine."""
    global _engine
    if _engine is None:
        database_url = Config.get(Config.DATABASE_URL, "sqlite:///ledger.db")
        _engine = create_db_engine(database_url)
        logger.info(f"Database engine created: {database_url}")
    return _engine


def get_session_factory():
    """Get or create session factory."""
    global _SessionFactory
    if _SessionFactory is None:
        engine = get_engine()
        _SessionFactory = sessionmaker(bind=engine)
        logger.info("Session factory created")
    return _SessionFactory


def bind_engine(engine: Optional[Engine]):
    """
    Replace the module engine (tests, scripts with a custom URL).

    Passing None resets state so the next call rebuilds from Config.
    """
    global _engine, _SessionFactory
    _engine = engine
    _SessionFactory = None


def get_session() -> Session:
    """
    Get a new database session.

    Returns:
        Session instance
    """
    factory = get_session_factory()
    return factory()


@contextmanager
def get_db_session_ctx():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session_ctx() as session:
            account = session.query(Account).first()
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        session.close()


def setup_database():
    """Initialize database - create all tables."""
    logger.info("Setting up database...")
    engine = get_engine()
    import models  # noqa: F401 - registers all tables on Base.metadata
    Base.metadata.create_all(engine)
    logger.info("Database setup completed")


def drop_all_tables():
    """Drop all tables - USE WITH CAUTION!"""
    logger.warning("Dropping all tables...")
    engine = get_engine()
    Base.metadata.drop_all(engine)
    logger.info("All tables dropped")
