"""
RevisionService — application layer facade for the revision lifecycle.

Coordinates between:
  - Data layer (repositories)
  - Event log (audit trail)
  - Production status oracle
  - Impact detector

Surrounding features (upload, viewer, UI) call only RevisionService.
Every public method returns an OperationResult and never raises for
expected failures: not-found and store errors come back as
``success=False`` with a message.

Each operation runs in one transaction: the state mutation and the event
that documents it commit together. Event inserts that fail are logged
and skipped (see EventLog), never surfaced.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from piping_revisions.core.event_log import EventLog
from piping_revisions.core.impact_detector import ImpactDetector
from piping_revisions.core.locks import KeyedLock, isometric_locks
from piping_revisions.core.production_status import ProductionStatusOracle
from piping_revisions.data.database import get_session
from piping_revisions.data.models import (
    EngineeringRevision,
    Isometric,
    IsometricStatus,
    ResolutionType,
    RevisionEventType,
    RevisionStatus,
)
from piping_revisions.data.repositories import (
    IsometricRepository,
    RevisionImpactRepository,
    RevisionRepository,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an operation."""
    id: str


@dataclass
class CreateRevisionParams:
    isometric_id: int
    project_id: int
    rev_code: str
    company_id: Optional[int] = None
    description: Optional[str] = None
    model_url: Optional[str] = None
    model_data: Optional[dict] = None
    transmittal_number: Optional[str] = None
    transmittal_date: Optional[str] = None


@dataclass
class OperationResult:
    success: bool
    message: str = ""
    data: Any = None


@dataclass
class RevisionStats:
    total: int = 0
    vigentes: int = 0
    spooleadas: int = 0
    obsoletas: int = 0


@dataclass
class Promotion:
    """Outcome of re-establishing an isometric's current revision."""
    current: Optional[EngineeringRevision]
    promoted: bool = False
    demoted: list[EngineeringRevision] = field(default_factory=list)


def _describe(promotion: Promotion) -> str:
    parts = []
    if promotion.promoted:
        parts.append(f"promoted rev {promotion.current.rev_code}")
    if promotion.demoted:
        parts.append("demoted " + ", ".join(r.rev_code for r in promotion.demoted))
    return f" ({'; '.join(parts)})" if parts else ""


def _detach(session: Session, *objects) -> None:
    for obj in objects:
        if obj is not None:
            session.expunge(obj)


class RevisionService:
    """
    Facade for all revision lifecycle operations.
    Instantiate once and reuse; it is stateless between calls.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        locks: KeyedLock = isometric_locks,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks

    # ------------------------------------------------------------------
    # Creation and generic status transitions
    # ------------------------------------------------------------------

    def create_revision(self, params: CreateRevisionParams, actor: Actor) -> OperationResult:
        """Insert a DRAFT revision and record its CREATED event."""
        if not isinstance(params.rev_code, str) or not params.rev_code.strip():
            return OperationResult(False, "Código de revisión requerido.")

        try:
            with self._session_factory() as session:
                isometric = IsometricRepository(session).get_by_id(params.isometric_id)
                if isometric is None:
                    return OperationResult(False, "Isométrico no encontrado.")

                revision = RevisionRepository(session).create(
                    isometric_id=params.isometric_id,
                    project_id=params.project_id,
                    company_id=params.company_id,
                    rev_code=params.rev_code.strip().upper(),
                    created_by=actor.id,
                    description=params.description,
                    model_url=params.model_url,
                    model_data=params.model_data,
                    transmittal_number=params.transmittal_number,
                    transmittal_date=params.transmittal_date,
                )
                EventLog(session).emit(
                    revision.id,
                    RevisionEventType.CREATED,
                    actor.id,
                    payload={
                        "rev_code": revision.rev_code,
                        "isometric_id": isometric.id,
                        "iso_number": isometric.iso_number,
                    },
                )
                session.commit()
                _detach(session, revision)
        except SQLAlchemyError as exc:
            logger.exception("create_revision failed for isometric %s", params.isometric_id)
            return OperationResult(False, f"Error al crear revisión: {exc}")

        logger.info(
            "Created revision %s (rev %s) on isometric %s",
            revision.id, revision.rev_code, revision.isometric_id,
        )
        return OperationResult(True, "Revisión creada exitosamente.", revision)

    def update_revision_status(
        self, revision_id: int, new_status: RevisionStatus | str, actor: Actor
    ) -> OperationResult:
        """
        Set any status on a revision and append the matching event.
        Transition validity is the caller's concern.
        """
        try:
            status = RevisionStatus(new_status)
        except ValueError:
            return OperationResult(False, f"Estado de revisión inválido: {new_status!r}.")

        try:
            with self._session_factory() as session:
                repo = RevisionRepository(session)
                revision = repo.get_by_id(revision_id)
                if revision is None:
                    return OperationResult(False, "Revisión no encontrada.")
                previous = revision.status

                repo.update_status(revision_id, status, actor_id=actor.id)
                EventLog(session).emit(
                    revision_id,
                    RevisionEventType.for_status(status),
                    actor.id,
                    payload={"previous_status": previous, "new_status": status.value},
                )
                session.commit()
                _detach(session, revision)
        except SQLAlchemyError as exc:
            logger.exception("update_revision_status failed for revision %s", revision_id)
            return OperationResult(False, f"Error al actualizar estado: {exc}")

        logger.info("Revision %s: %s -> %s", revision_id, previous, status.value)
        return OperationResult(True, f"Revisión {status.value.lower()}.", revision)

    def clear_revision_model(self, revision_id: int, actor: Actor) -> OperationResult:
        """Drop the revision's 3D model URL and viewer metadata; status is untouched."""
        try:
            with self._session_factory() as session:
                revision = RevisionRepository(session).clear_model(revision_id)
                if revision is None:
                    return OperationResult(False, "Revisión no encontrada.")
                session.commit()
                _detach(session, revision)
        except SQLAlchemyError as exc:
            logger.exception("clear_revision_model failed for revision %s", revision_id)
            return OperationResult(False, f"Error al eliminar modelo: {exc}")

        logger.info(
            "Cleared model of revision %s", revision_id,
            extra={"revision_id": revision_id, "actor_id": actor.id},
        )
        return OperationResult(True, "Modelo eliminado.", revision)

    # ------------------------------------------------------------------
    # Impact detection and auto-apply
    # ------------------------------------------------------------------

    def detect_revision_impacts(
        self,
        revision_id: int,
        old_code: Optional[str],
        new_code: Optional[str],
        isometric_id: int,
        project_id: int,
        actor: Actor,
    ) -> OperationResult:
        """
        Persist impacts for every affected spool with production.
        Not idempotent: running it twice records the impacts twice.
        """
        try:
            with self._session_factory() as session:
                if RevisionRepository(session).get_by_id(revision_id) is None:
                    return OperationResult(False, "Revisión no encontrada.", [])
                impacts = ImpactDetector(session).detect_revision_impacts(
                    revision_id, old_code, new_code, isometric_id, project_id, actor.id
                )
                session.commit()
                _detach(session, *impacts)
        except SQLAlchemyError as exc:
            logger.exception("detect_revision_impacts failed for revision %s", revision_id)
            return OperationResult(False, f"Error al crear impactos: {exc}", [])

        if not impacts:
            return OperationResult(True, "Sin impactos - puede auto-aplicarse.", [])
        return OperationResult(True, f"{len(impacts)} impacto(s) detectado(s).", impacts)

    def attempt_auto_apply(
        self, revision_id: int, isometric_id: int, project_id: int, actor: Actor
    ) -> OperationResult:
        """
        Apply the revision straight away when no spool has production.

        ``data`` is True when the revision was auto-applied. With impacts
        present nothing about the revision changes and ``data`` is False;
        routing it to manual resolution is up to the caller.
        """
        try:
            with self._session_factory() as session:
                revisions = RevisionRepository(session)
                revision = revisions.get_by_id(revision_id)
                if revision is None:
                    return OperationResult(False, "Revisión no encontrada.", False)
                isometric = IsometricRepository(session).get_by_id(isometric_id)
                old_code = isometric.revision if isometric is not None else None

                impacts = ImpactDetector(session).detect_revision_impacts(
                    revision_id, old_code, revision.rev_code, isometric_id, project_id, actor.id
                )
                if impacts:
                    session.commit()
                    logger.info(
                        "Revision %s needs manual resolution (%d impacts)",
                        revision_id, len(impacts),
                    )
                    return OperationResult(
                        True, "Impactos detectados - requiere revisión manual.", False
                    )

                revisions.update_status(revision_id, RevisionStatus.APPLIED, actor_id=actor.id)
                EventLog(session).emit(
                    revision_id,
                    RevisionEventType.APPLIED,
                    actor.id,
                    payload={"auto_applied": True, "reason": "no_production"},
                )
                session.commit()
        except SQLAlchemyError as exc:
            logger.exception("attempt_auto_apply failed for revision %s", revision_id)
            return OperationResult(False, f"Error al auto-aplicar: {exc}", False)

        logger.info("Revision %s auto-applied (no production)", revision_id)
        return OperationResult(True, "Revisión auto-aplicada (sin impactos).", True)

    def can_auto_apply_revision(self, isometric_id: int, project_id: int) -> OperationResult:
        """Read-only pre-check: True when no affected spool has production."""
        try:
            with self._session_factory() as session:
                blocked = ProductionStatusOracle(session).has_production(isometric_id, project_id)
        except SQLAlchemyError as exc:
            logger.exception("can_auto_apply_revision failed for isometric %s", isometric_id)
            return OperationResult(False, f"Error al consultar producción: {exc}", False)
        return OperationResult(True, "Producción consultada.", not blocked)

    # ------------------------------------------------------------------
    # Impact resolution
    # ------------------------------------------------------------------

    def resolve_impact(
        self,
        impact_id: int,
        resolution_type: ResolutionType | str,
        resolution_notes: Optional[str],
        actor: Actor,
    ) -> OperationResult:
        """
        Record a human decision on an open impact. An impact resolves once;
        later attempts are rejected. The revision status is left untouched.
        """
        try:
            resolution = ResolutionType(resolution_type)
        except ValueError:
            return OperationResult(False, f"Tipo de resolución inválido: {resolution_type!r}.")

        try:
            with self._session_factory() as session:
                repo = RevisionImpactRepository(session)
                impact = repo.get_by_id(impact_id)
                if impact is None:
                    return OperationResult(False, "Impacto no encontrado.")
                if not repo.resolve(impact_id, resolution, resolution_notes, actor.id):
                    return OperationResult(False, "El impacto ya fue resuelto.")

                EventLog(session).emit(
                    impact.revision_id,
                    RevisionEventType.RESOLVED,
                    actor.id,
                    payload={"impact_id": impact_id, "resolution_type": resolution.value},
                )
                session.commit()
                session.refresh(impact)
                _detach(session, impact)
        except SQLAlchemyError as exc:
            logger.exception("resolve_impact failed for impact %s", impact_id)
            return OperationResult(False, f"Error al resolver impacto: {exc}")

        logger.info("Impact %s resolved as %s by %s", impact_id, resolution.value, actor.id)
        return OperationResult(True, "Impacto resuelto.", impact)

    # ------------------------------------------------------------------
    # Deletion and promotion
    # ------------------------------------------------------------------

    def delete_revision(self, revision_id: int, actor: Actor) -> OperationResult:
        """
        Hard-delete a revision and re-point its isometric.

        Serialized per isometric. Steps:
        1. Resolve the parent isometric (fail if the revision is missing)
        2. Lock the isometric, delete the revision with its events/impacts
        3. Promote the natural-order latest survivor to VIGENTE and repoint,
           or mark the isometric empty when nothing survives
        All of 2-3 commit together or not at all.
        """
        try:
            with self._session_factory() as session:
                revision = RevisionRepository(session).get_by_id(revision_id)
                if revision is None:
                    return OperationResult(False, "Revisión no encontrada.")
                isometric_id = revision.isometric_id
        except SQLAlchemyError as exc:
            logger.exception("delete_revision lookup failed for revision %s", revision_id)
            return OperationResult(False, f"Error al eliminar revisión: {exc}")

        with self._locks.hold(isometric_id):
            try:
                with self._session_factory() as session:
                    isometric = IsometricRepository(session).get_for_update(isometric_id)
                    revisions = RevisionRepository(session)
                    revision = revisions.get_by_id(revision_id)
                    if revision is None or isometric is None:
                        return OperationResult(False, "Revisión no encontrada.")
                    deleted_code = revision.rev_code
                    deleted_status = revision.status

                    if isometric.current_revision_id == revision.id:
                        isometric.current_revision_id = None
                        session.flush()
                    revisions.delete(revision)

                    promotion = self._reestablish_current(
                        session,
                        isometric,
                        actor,
                        reason="promoted_after_delete",
                        context={"deleted_rev_code": deleted_code},
                    )
                    session.commit()
                    current_code = promotion.current.rev_code if promotion.current else None
            except SQLAlchemyError as exc:
                logger.exception("delete_revision failed for revision %s", revision_id)
                return OperationResult(False, f"Error al eliminar revisión: {exc}")

        logger.info(
            "Deleted revision %s (rev %s, %s) of isometric %s by %s; current is now %s%s",
            revision_id, deleted_code, deleted_status, isometric_id, actor.id, current_code,
            _describe(promotion),
            extra={"isometric_id": isometric_id, "actor_id": actor.id},
        )
        return OperationResult(True, f"Revisión {deleted_code} eliminada.", current_code)

    def refresh_current_revision(self, isometric_id: int, actor: Actor) -> OperationResult:
        """
        Re-establish the isometric's current revision without deleting
        anything, e.g. after a bulk announcement upload.
        """
        with self._locks.hold(isometric_id):
            try:
                with self._session_factory() as session:
                    isometric = IsometricRepository(session).get_for_update(isometric_id)
                    if isometric is None:
                        return OperationResult(False, "Isométrico no encontrado.")
                    promotion = self._reestablish_current(
                        session, isometric, actor, reason="refreshed"
                    )
                    session.commit()
                    _detach(session, promotion.current)
            except SQLAlchemyError as exc:
                logger.exception("refresh_current_revision failed for isometric %s", isometric_id)
                return OperationResult(False, f"Error al actualizar revisión vigente: {exc}")

        if promotion.promoted or promotion.demoted:
            logger.info(
                "Refreshed isometric %s%s", isometric_id, _describe(promotion),
                extra={"isometric_id": isometric_id, "actor_id": actor.id},
            )

        return OperationResult(True, "Revisión vigente actualizada.", promotion.current)

    def _reestablish_current(
        self,
        session: Session,
        isometric: Isometric,
        actor: Actor,
        reason: str,
        context: Optional[dict] = None,
    ) -> Promotion:
        """
        Make the natural-order latest revision the only VIGENTE one and
        point the isometric at it. Caller holds the isometric lock.
        """
        revisions = RevisionRepository(session)
        survivors = revisions.get_by_isometric(isometric.id)
        isometrics = IsometricRepository(session)
        if not survivors:
            isometrics.point_to(isometric, None)
            logger.info("Isometric %s has no revisions left", isometric.id)
            return Promotion(current=None)

        latest = survivors[0]
        events = EventLog(session)
        promotion = Promotion(current=latest)

        if latest.status != RevisionStatus.VIGENTE.value:
            previous = latest.status
            revisions.update_status(latest.id, RevisionStatus.VIGENTE, actor_id=actor.id)
            events.emit(
                latest.id,
                RevisionEventType.VIGENTE,
                actor.id,
                payload={"previous_status": previous, "reason": reason, **(context or {})},
            )
            promotion.promoted = True
            logger.info("Promoted revision %s (rev %s) to VIGENTE", latest.id, latest.rev_code)

        for older in survivors[1:]:
            if older.status == RevisionStatus.VIGENTE.value:
                revisions.update_status(older.id, RevisionStatus.OBSOLETA, actor_id=actor.id)
                events.emit(
                    older.id,
                    RevisionEventType.OBSOLETA,
                    actor.id,
                    payload={"previous_status": RevisionStatus.VIGENTE.value,
                             "superseded_by": latest.rev_code},
                )
                promotion.demoted.append(older)

        isometrics.point_to(isometric, latest)
        return promotion

    # ------------------------------------------------------------------
    # Invariant checks
    # ------------------------------------------------------------------

    def check_isometric_invariant(self, isometric_id: int) -> OperationResult:
        """``data`` lists every violation of the current-revision invariant."""
        try:
            with self._session_factory() as session:
                isometric = IsometricRepository(session).get_by_id(isometric_id)
                if isometric is None:
                    return OperationResult(False, "Isométrico no encontrado.", [])
                violations = find_invariant_violations(session, isometric)
        except SQLAlchemyError as exc:
            logger.exception("check_isometric_invariant failed for isometric %s", isometric_id)
            return OperationResult(False, f"Error al verificar isométrico: {exc}", [])
        if violations:
            return OperationResult(True, f"{len(violations)} inconsistencia(s).", violations)
        return OperationResult(True, "Isométrico consistente.", [])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_revision_events(self, revision_id: int) -> OperationResult:
        return self._list(
            "eventos", lambda s: EventLog(s).history(revision_id)
        )

    def get_revision_impacts(self, revision_id: int) -> OperationResult:
        return self._list(
            "impactos", lambda s: RevisionImpactRepository(s).get_by_revision(revision_id)
        )

    def get_pending_impacts(self, revision_id: int) -> OperationResult:
        """Unresolved impacts of a revision, most severe first."""
        return self._list(
            "impactos pendientes",
            lambda s: RevisionImpactRepository(s).get_unresolved_by_revision(revision_id),
        )

    def get_project_revisions(self, project_id: int) -> OperationResult:
        return self._list(
            "revisiones", lambda s: RevisionRepository(s).get_by_project(project_id)
        )

    def get_isometric_revisions(self, isometric_id: int) -> OperationResult:
        return self._list(
            "revisiones", lambda s: RevisionRepository(s).get_by_isometric(isometric_id)
        )

    def get_isometric_revision_stats(self, isometric_id: int) -> OperationResult:
        result = self.get_isometric_revisions(isometric_id)
        if not result.success:
            return result
        statuses = [r.status for r in result.data]
        stats = RevisionStats(
            total=len(statuses),
            vigentes=statuses.count(RevisionStatus.VIGENTE.value),
            spooleadas=statuses.count(RevisionStatus.SPOOLEADO.value),
            obsoletas=statuses.count(RevisionStatus.OBSOLETA.value),
        )
        return OperationResult(True, "Estadísticas obtenidas.", stats)

    def _list(self, label: str, query: Callable[[Session], list]) -> OperationResult:
        try:
            with self._session_factory() as session:
                rows = query(session)
                _detach(session, *rows)
        except SQLAlchemyError as exc:
            logger.exception("Query for %s failed", label)
            return OperationResult(False, f"Error al obtener {label}: {exc}", [])
        return OperationResult(True, f"Consulta de {label} completada.", rows)


def find_invariant_violations(session: Session, isometric: Isometric) -> list[str]:
    """
    Check the current-revision invariant for one isometric.

    Either no revisions exist and the pointer is null, or the pointer
    references the natural-order latest revision, which is the single
    VIGENTE one.
    """
    revisions = RevisionRepository(session).get_by_isometric(isometric.id)
    label = isometric.iso_number
    if not revisions:
        problems = []
        if isometric.current_revision_id is not None:
            problems.append(f"{label}: pointer set but no revisions exist")
        if isometric.status != IsometricStatus.EMPTY.value:
            problems.append(f"{label}: status {isometric.status} but no revisions exist")
        return problems

    problems = []
    latest = revisions[0]
    if isometric.current_revision_id is None:
        problems.append(f"{label}: pointer is null with {len(revisions)} revision(s)")
    elif isometric.current_revision_id != latest.id:
        problems.append(
            f"{label}: pointer {isometric.current_revision_id} is not latest rev "
            f"{latest.rev_code} (id {latest.id})"
        )
    if latest.status != RevisionStatus.VIGENTE.value:
        problems.append(f"{label}: latest rev {latest.rev_code} is {latest.status}")
    if isometric.revision != latest.rev_code:
        problems.append(f"{label}: display code {isometric.revision!r} != {latest.rev_code!r}")
    extra_active = [
        r.rev_code for r in revisions[1:] if r.status == RevisionStatus.VIGENTE.value
    ]
    if extra_active:
        problems.append(f"{label}: older revisions also VIGENTE: {', '.join(extra_active)}")
    return problems
