"""
Database engine, session factory, and initialization utilities.

Usage:
    from piping_revisions.data.database import get_session, init_db

    init_db()  # call once at application startup

    with get_session() as session:
        revision = session.get(EngineeringRevision, 1)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from piping_revisions.config.settings import settings
from piping_revisions.data.models import Base

_is_sqlite = settings.database_url.startswith("sqlite")

# Module-level engine singleton.
# check_same_thread=False lets request threads share the SQLite pool.
_engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=settings.db_echo,
)


if _is_sqlite:
    @event.listens_for(_engine, "connect")
    def _configure_sqlite(dbapi_connection, connection_record):
        """Enable WAL mode and enforce foreign key constraints on every connection."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


_SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)


def init_db() -> None:
    """
    Create all tables if they do not exist.
    Safe to call multiple times (idempotent).
    """
    Base.metadata.create_all(_engine)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager providing a transactional database session.

    Automatically rolls back on exception and always closes the session.

    Usage:
        with get_session() as session:
            session.add(obj)
            session.commit()
    """
    session = _SessionFactory()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
