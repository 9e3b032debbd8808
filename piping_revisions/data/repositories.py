"""
Repository classes for data access.

Each repository operates on a single aggregate root.
All methods accept an explicit Session argument. The caller (typically
RevisionService in core/) is responsible for session lifecycle.
Repositories flush but never commit.

Example:
    with get_session() as session:
        repo = RevisionRepository(session)
        revision = repo.get_by_id(1)
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session, selectinload

from piping_revisions.data.models import (
    EngineeringRevision,
    ImpactSeverity,
    ImpactType,
    Isometric,
    IsometricStatus,
    ResolutionType,
    RevisionEvent,
    RevisionEventType,
    RevisionImpact,
    RevisionStatus,
    Spool,
)


def _utcnow_str() -> str:
    return datetime.now(timezone.utc).isoformat()


class IsometricRepository:
    """Access to the isometric aggregate root and its current-revision pointer."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_id(self, isometric_id: int) -> Optional[Isometric]:
        return self._session.get(Isometric, isometric_id)

    def get_for_update(self, isometric_id: int) -> Optional[Isometric]:
        """Load the isometric holding a row lock (ignored by SQLite)."""
        return self._session.execute(
            select(Isometric)
            .where(Isometric.id == isometric_id)
            .with_for_update()
        ).scalar_one_or_none()

    def get_all(self) -> list[Isometric]:
        return list(
            self._session.scalars(select(Isometric).order_by(Isometric.id.asc()))
        )

    def point_to(self, isometric: Isometric, revision: Optional[EngineeringRevision]) -> Isometric:
        """Repoint the isometric at ``revision``, or mark it empty when None."""
        if revision is None:
            isometric.current_revision_id = None
            isometric.revision = None
            isometric.status = IsometricStatus.EMPTY.value
        else:
            isometric.current_revision_id = revision.id
            isometric.revision = revision.rev_code
            isometric.status = IsometricStatus.ACTIVE.value
        isometric.updated_at = _utcnow_str()
        self._session.flush()
        return isometric


class RevisionRepository:
    """Header records of engineering revisions. Status is the only mutable field."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_id(self, revision_id: int) -> Optional[EngineeringRevision]:
        return self._session.get(EngineeringRevision, revision_id)

    def get_by_isometric(self, isometric_id: int) -> list[EngineeringRevision]:
        """Revisions of one isometric, newest first by natural code order."""
        revisions = self._session.scalars(
            select(EngineeringRevision).where(EngineeringRevision.isometric_id == isometric_id)
        ).all()
        return sort_revisions_newest_first(revisions)

    def get_by_project(self, project_id: int) -> list[EngineeringRevision]:
        return list(
            self._session.scalars(
                select(EngineeringRevision)
                .where(EngineeringRevision.project_id == project_id)
                .order_by(EngineeringRevision.created_at.desc(), EngineeringRevision.id.desc())
            )
        )

    def create(
        self,
        isometric_id: int,
        project_id: int,
        rev_code: str,
        created_by: str,
        company_id: Optional[int] = None,
        description: Optional[str] = None,
        model_url: Optional[str] = None,
        model_data: Optional[dict] = None,
        transmittal_number: Optional[str] = None,
        transmittal_date: Optional[str] = None,
    ) -> EngineeringRevision:
        revision = EngineeringRevision(
            isometric_id=isometric_id,
            project_id=project_id,
            company_id=company_id,
            rev_code=rev_code,
            status=RevisionStatus.DRAFT.value,
            description=description,
            model_url=model_url,
            transmittal_number=transmittal_number,
            transmittal_date=transmittal_date,
            created_by=created_by,
        )
        revision.model_data = model_data
        self._session.add(revision)
        self._session.flush()
        return revision

    def update_status(
        self,
        revision_id: int,
        status: RevisionStatus | str,
        actor_id: Optional[str] = None,
    ) -> Optional[EngineeringRevision]:
        """
        Set the lifecycle status. Any status may follow any other; the
        transition graph is enforced by callers.

        Raises:
            ValueError: if ``status`` is not a RevisionStatus value.
        """
        try:
            new_status = RevisionStatus(status)
        except ValueError:
            allowed = {s.value for s in RevisionStatus}
            raise ValueError(f"status must be one of {allowed}, got {status!r}") from None

        revision = self.get_by_id(revision_id)
        if revision is None:
            return None
        now = _utcnow_str()
        revision.status = new_status.value
        if new_status is RevisionStatus.APPROVED:
            revision.approved_at = now
            revision.approved_by = actor_id
        elif new_status is RevisionStatus.APPLIED:
            revision.announced_at = now
        self._session.flush()
        return revision

    def clear_model(self, revision_id: int) -> Optional[EngineeringRevision]:
        """Drop the 3D model reference and its viewer metadata."""
        revision = self.get_by_id(revision_id)
        if revision:
            revision.model_url = None
            revision.model_data = None
            self._session.flush()
        return revision

    def delete(self, revision: EngineeringRevision) -> None:
        """Hard-delete a revision together with its events and impacts."""
        self._session.delete(revision)
        self._session.flush()


class RevisionEventRepository:
    """Append-only access to the revision event log (create + read; no updates)."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def append(
        self,
        revision_id: int,
        event_type: RevisionEventType | str,
        created_by: str,
        payload: Optional[dict] = None,
    ) -> RevisionEvent:
        event = RevisionEvent(
            revision_id=revision_id,
            event_type=RevisionEventType(event_type).value,
            created_by=created_by,
        )
        event.payload = payload
        self._session.add(event)
        self._session.flush()
        return event

    def get_by_revision(self, revision_id: int) -> list[RevisionEvent]:
        return list(
            self._session.scalars(
                select(RevisionEvent)
                .where(RevisionEvent.revision_id == revision_id)
                .order_by(RevisionEvent.created_at.asc(), RevisionEvent.id.asc())
            )
        )


class RevisionImpactRepository:
    """Detected production impacts. Created in batches, resolved once, never deleted."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_id(self, impact_id: int) -> Optional[RevisionImpact]:
        return self._session.get(RevisionImpact, impact_id)

    def get_by_revision(self, revision_id: int) -> list[RevisionImpact]:
        """Impacts of a revision, most severe first."""
        rank = case(
            {severity.value: severity.rank for severity in ImpactSeverity},
            value=RevisionImpact.severity,
        )
        return list(
            self._session.scalars(
                select(RevisionImpact)
                .where(RevisionImpact.revision_id == revision_id)
                .order_by(rank.desc(), RevisionImpact.id.asc())
            )
        )

    def get_unresolved_by_revision(self, revision_id: int) -> list[RevisionImpact]:
        return [i for i in self.get_by_revision(revision_id) if not i.is_resolved]

    def create_batch(self, revision_id: int, items: Iterable[dict]) -> list[RevisionImpact]:
        """
        Insert all impacts for a revision in one flush.

        Args:
            items: dicts with keys 'impact_type', 'affected_entity_id',
                   'severity' and optionally 'affected_entity_type'.
        """
        created = []
        for item in items:
            impact = RevisionImpact(
                revision_id=revision_id,
                impact_type=ImpactType(item["impact_type"]).value,
                affected_entity_type=item.get("affected_entity_type", "spool"),
                affected_entity_id=item["affected_entity_id"],
                severity=ImpactSeverity(item["severity"]).value,
            )
            self._session.add(impact)
            created.append(impact)
        self._session.flush()
        return created

    def resolve(
        self,
        impact_id: int,
        resolution_type: ResolutionType,
        resolution_notes: Optional[str],
        resolved_by: str,
    ) -> bool:
        """
        Fill the resolution fields of an unresolved impact.

        The UPDATE is conditional on ``resolved_at IS NULL`` so an impact
        can only be resolved once. Returns False when no row was updated.
        """
        result = self._session.execute(
            update(RevisionImpact)
            .where(RevisionImpact.id == impact_id, RevisionImpact.resolved_at.is_(None))
            .values(
                resolution_type=ResolutionType(resolution_type).value,
                resolution_notes=resolution_notes,
                resolved_by=resolved_by,
                resolved_at=_utcnow_str(),
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1


class SpoolRepository:
    """Read-only access to spools and their welds."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_with_welds(self, spool_id: int) -> Optional[Spool]:
        return self._session.scalars(
            select(Spool).options(selectinload(Spool.welds)).where(Spool.id == spool_id)
        ).first()

    def get_by_isometric(self, isometric_id: int, project_id: int) -> list[Spool]:
        return list(
            self._session.scalars(
                select(Spool)
                .options(selectinload(Spool.welds))
                .where(Spool.isometric_id == isometric_id, Spool.project_id == project_id)
                .order_by(Spool.id.asc())
            )
        )


_CODE_CHUNK = re.compile(r"(\d+)")


def natural_code_key(code: str) -> tuple:
    """
    Sort key for revision codes that compares digit runs numerically.

    Digit chunks sort before letter chunks and letters compare
    case-insensitively, so '2' < '10' and '0' < 'A' < 'b' < 'C'.

    Examples:
        sorted(['10', '2', '1', '0'], key=natural_code_key) -> ['0', '1', '2', '10']
        sorted(['B', 'a', 'C'], key=natural_code_key)       -> ['a', 'B', 'C']
    """
    key = []
    for chunk in _CODE_CHUNK.split(code.strip()):
        if not chunk:
            continue
        if chunk.isdigit():
            key.append((0, int(chunk), ""))
        else:
            key.append((1, 0, chunk.casefold()))
    return tuple(key)


def sort_revisions_newest_first(
    revisions: Iterable[EngineeringRevision],
) -> list[EngineeringRevision]:
    # id breaks ties between codes that only differ in case or padding
    return sorted(
        revisions,
        key=lambda r: (natural_code_key(r.rev_code), r.id),
        reverse=True,
    )
