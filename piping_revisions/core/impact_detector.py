"""
ImpactDetector — conditional impact detection for a new revision.

Not every revision produces impacts: only spools that have already been
fabricated, welded or dispatched conflict with a drawing change. Each such
spool yields exactly one RevisionImpact, with a severity derived from how
far production has gone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from piping_revisions.core.event_log import EventLog
from piping_revisions.core.production_status import (
    ProductionLevel,
    ProductionStatus,
    ProductionStatusOracle,
    classify_production_level,
    status_from_spool,
)
from piping_revisions.data.models import (
    ImpactSeverity,
    ImpactType,
    RevisionEventType,
    RevisionImpact,
)
from piping_revisions.data.repositories import RevisionImpactRepository

logger = logging.getLogger(__name__)


@dataclass
class SpoolAssessment:
    """Production snapshot of one affected spool at detection time."""
    spool_id: int
    spool_number: str
    status: ProductionStatus
    level: ProductionLevel

    @property
    def has_production(self) -> bool:
        return self.level is not ProductionLevel.ENGINEERING_ONLY


def determine_severity(level: ProductionLevel, status: ProductionStatus) -> ImpactSeverity:
    if level is ProductionLevel.IN_PROGRESS:
        if status.has_dispatch or status.has_welds:
            return ImpactSeverity.CRITICAL  # welded or on-site work affected
        return ImpactSeverity.HIGH
    if level is ProductionLevel.FABRICATED_ONLY:
        return ImpactSeverity.MEDIUM  # shop/logistics only
    return ImpactSeverity.LOW


def determine_impact_type(old_code: Optional[str], new_code: Optional[str]) -> ImpactType:
    """
    Kind of change a revision makes to an affected spool.

    Drawing content is not compared yet, so every affected spool is
    reported as MODIFIED whatever the codes are.
    """
    # TODO: diff spool geometry between the two revisions to report
    # ADDED / REMOVED / DIMENSION_CHANGED once revision content is stored.
    return ImpactType.MODIFIED


class ImpactDetector:
    """
    Runs within the caller's session; the caller commits.

    Usage:
        detector = ImpactDetector(session)
        impacts = detector.detect_revision_impacts(rev.id, "0", "1", iso.id, proj_id, "u-1")
        session.commit()
    """

    def __init__(self, session: Session) -> None:
        self._oracle = ProductionStatusOracle(session)
        self._impacts = RevisionImpactRepository(session)
        self._events = EventLog(session)

    def assess_spools(self, isometric_id: int, project_id: int) -> list[SpoolAssessment]:
        assessments = []
        for spool in self._oracle.get_affected_spools(isometric_id, project_id):
            status = status_from_spool(spool)
            assessments.append(SpoolAssessment(
                spool_id=spool.id,
                spool_number=spool.spool_number,
                status=status,
                level=classify_production_level(status),
            ))
        return assessments

    def detect_revision_impacts(
        self,
        revision_id: int,
        old_code: Optional[str],
        new_code: Optional[str],
        isometric_id: int,
        project_id: int,
        actor_id: str,
    ) -> list[RevisionImpact]:
        """
        Persist one impact per affected spool that has production.

        Returns the impacts exactly as inserted (insertion order). When the
        list is non-empty an IMPACT_DETECTED event is appended to the
        revision; an empty result emits nothing.
        """
        assessments = self.assess_spools(isometric_id, project_id)
        if not assessments:
            logger.info("Revision %s: no spools on isometric %s", revision_id, isometric_id)
            return []

        impact_type = determine_impact_type(old_code, new_code)
        rows = [
            {
                "impact_type": impact_type,
                "affected_entity_type": "spool",
                "affected_entity_id": a.spool_id,
                "severity": determine_severity(a.level, a.status),
            }
            for a in assessments
            if a.has_production
        ]
        if not rows:
            logger.info("Revision %s: spools found but no production", revision_id)
            return []

        impacts = self._impacts.create_batch(revision_id, rows)
        self._events.emit(
            revision_id,
            RevisionEventType.IMPACT_DETECTED,
            actor_id,
            payload={
                "impacts_count": len(impacts),
                "affected_spools": [a.spool_number for a in assessments],
            },
        )
        logger.info("Revision %s: %d impact(s) detected", revision_id, len(impacts))
        return impacts
