from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
import logging
import os

from models import Base

logger = logging.getLogger(__name__)


def get_engine(db_path: str):
    """Create SQLAlchemy engine for SQLite with connection pooling.

    Sessions are short-lived and opened per request; the ledger and the
    session counters are written from concurrent requests, so every
    connection gets a busy timeout instead of failing on lock contention.
    """
    directory = os.path.dirname(db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": 30,
        },
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        # Enable foreign keys
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")  # 30 seconds
        cursor.close()

    return engine


def init_database(engine):
    """Create all tables (prompts, sessions, interactions, fine-tune records)"""
    Base.metadata.create_all(engine)
    logger.info(f"Database initialized ({len(Base.metadata.tables)} tables)")


def get_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


# Global engine for FastAPI dependency injection
_global_engine = None


def set_global_engine(engine):
    """Set the global engine for FastAPI dependencies"""
    global _global_engine
    _global_engine = engine


def get_global_engine():
    return _global_engine


def get_db():
    """
    FastAPI dependency for database sessions

    Usage:
        @router.get("/api/endpoint")
        def endpoint(db: Session = Depends(get_db)):
            # Use db here
    """
    if _global_engine is None:
        raise RuntimeError("Database engine not initialized. Call set_global_engine first.")

    SessionLocal = get_session_factory(_global_engine)
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
