"""
pytest fixtures shared across all tests.

Uses an in-memory SQLite database for fast, isolated test runs.
Each test function gets a fresh database. Fixture data is inserted
directly (bypassing RevisionService) and committed, and verification
reads through a fresh session so nothing is served from a stale
identity map.
"""

from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from piping_revisions.core.locks import KeyedLock
from piping_revisions.core.revision_service import Actor, RevisionService
from piping_revisions.data.models import (
    Base,
    EngineeringRevision,
    Isometric,
    IsometricStatus,
    Spool,
    Weld,
)


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite engine, fresh per test function."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


def make_session_factory(engine):
    """get_session() replacement bound to ``engine``."""
    Factory = sessionmaker(bind=engine, expire_on_commit=False)

    @contextmanager
    def _session():
        s = Factory()
        try:
            yield s
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    return _session


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture(scope="function")
def file_session_factory(tmp_path):
    """Session factory over an on-disk SQLite file, for multi-threaded tests."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'revisions.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Plain session for repository-level tests; rolls back after each test."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def service(session_factory):
    return RevisionService(session_factory=session_factory, locks=KeyedLock())


@pytest.fixture
def actor():
    return Actor("user-1")


class Seeder:
    """Inserts fixture rows directly and commits each call."""

    def __init__(self, session_factory) -> None:
        self._factory = session_factory

    def isometric(self, iso_number: str = "ISO-100", project_id: int = 1) -> int:
        with self._factory() as s:
            iso = Isometric(
                project_id=project_id,
                iso_number=iso_number,
                status=IsometricStatus.EMPTY.value,
            )
            s.add(iso)
            s.commit()
            return iso.id

    def revision(
        self,
        isometric_id: int,
        rev_code: str,
        status: str = "DRAFT",
        project_id: int = 1,
        current: bool = False,
    ) -> int:
        with self._factory() as s:
            rev = EngineeringRevision(
                isometric_id=isometric_id,
                project_id=project_id,
                rev_code=rev_code,
                status=status,
                created_by="seed",
            )
            s.add(rev)
            s.flush()
            if current:
                iso = s.get(Isometric, isometric_id)
                iso.current_revision_id = rev.id
                iso.revision = rev.rev_code
                iso.status = IsometricStatus.ACTIVE.value
            s.commit()
            return rev.id

    def spool(
        self,
        isometric_id: int,
        spool_number: str,
        fabrication_status: str = "PENDING",
        dispatched: bool = False,
        welds: tuple = (),
        project_id: int = 1,
    ) -> int:
        with self._factory() as s:
            spool = Spool(
                isometric_id=isometric_id,
                project_id=project_id,
                spool_number=spool_number,
                fabrication_status=fabrication_status,
                dispatched_at="2026-01-15T10:00:00+00:00" if dispatched else None,
            )
            s.add(spool)
            s.flush()
            for idx, weld_status in enumerate(welds, start=1):
                s.add(Weld(
                    spool_id=spool.id,
                    weld_number=f"{spool_number}-W{idx}",
                    execution_status=weld_status,
                ))
            s.commit()
            return spool.id


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def file_seed(file_session_factory):
    return Seeder(file_session_factory)
