"""Database engine and session management.

Request handlers get a session through the ``DbSession`` dependency;
scheduler jobs and startup tasks open their own with ``session_scope``.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Annotated, Any

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from stocksync.core.config import settings

# Seconds a SQLite writer waits on a locked database before giving up
SQLITE_BUSY_TIMEOUT = 15


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            "pool_pre_ping": True,
        }
    # PostgreSQL: deductions are short transactions, keep a warm pool
    return {
        "pool_size": 20,
        "max_overflow": 40,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


engine = create_engine(
    settings.database_url,
    echo=settings.debug and settings.log_level == "DEBUG",
    **_engine_options(settings.database_url),
)

# Store foreign keys (stores -> items -> movements) are only enforced with this pragma
if settings.database_url.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session for work outside a request. Uncommitted changes are rolled back."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Type alias for dependency injection
DbSession = Annotated[Session, Depends(get_db)]
