"""
Database connection and session management module.

Uses SQLAlchemy for ORM operations. Supports PostgreSQL (production/Docker)
and SQLite (local development and tests).
Provides session factory and dependency injection for FastAPI routes.

The attempt engine keeps no state between requests: every coordination
point (PIN use counter, submission lock) is a conditional UPDATE against
this database.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from exam_gate.settings import DATABASE_URL


def configure_sqlite(engine: Engine) -> Engine:
    """
    Apply the SQLite connection settings the engine relies on.

    - WAL journal and foreign keys on every new connection
    - pysqlite's implicit transaction handling is switched off and every
      transaction starts with BEGIN IMMEDIATE, so conditional updates from
      concurrent sessions are serialised instead of failing with
      "database is locked" on lock upgrade
    """
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_engine(url: str) -> Engine:
    """Create an engine with pool/connect settings matching the database type."""
    # SQLite does not support pool_size, max_overflow, or pool_pre_ping
    engine_kwargs = {"echo": False}

    if url.startswith("postgresql"):
        engine_kwargs.update({
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
        })
    elif url.startswith("sqlite"):
        # FastAPI runs sync endpoints in a thread pool
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(url, **engine_kwargs)
    if url.startswith("sqlite"):
        configure_sqlite(engine)
    return engine


engine = build_engine(DATABASE_URL)

# Session factory - creates new database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


def get_db():
    """
    FastAPI dependency that provides a database session.

    Yields a session and ensures proper cleanup after request completion.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind: Engine = None):
    """
    Create all database tables directly (used for SQLite local dev and tests).
    For PostgreSQL, use Alembic migrations instead.
    """
    Base.metadata.create_all(bind=bind or engine)
