"""
Production status oracle — read-only view of shop/field progress per spool.

Classifies how far production has gone on a spool so the impact detector
can decide whether a new revision is safe to apply:

  ENGINEERING_ONLY: nothing fabricated yet (Case A: editing is always safe)
  FABRICATED_ONLY:  fabricated in the shop, no executed welds (Case B)
  IN_PROGRESS:      executed welds or dispatched to site (Case C)

Missing spools report no production at all; the oracle never blocks a
revision because of data it cannot find.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from piping_revisions.data.models import ResolutionType, Spool
from piping_revisions.data.repositories import SpoolRepository

FABRICATED_STATUSES = frozenset({"FABRICATED", "DISPATCHED", "INSTALLED"})
EXECUTED_WELD_STATUS = "EXECUTED"


class ProductionLevel(str, Enum):
    ENGINEERING_ONLY = "ENGINEERING_ONLY"
    FABRICATED_ONLY = "FABRICATED_ONLY"
    IN_PROGRESS = "IN_PROGRESS"


@dataclass(frozen=True)
class ProductionStatus:
    has_fabrication: bool = False
    has_welds: bool = False
    has_dispatch: bool = False


NO_PRODUCTION = ProductionStatus()


def classify_production_level(status: ProductionStatus) -> ProductionLevel:
    """
    Map a production status to exactly one level.

    Evaluated in order: not fabricated → ENGINEERING_ONLY; fabricated with
    no executed welds → FABRICATED_ONLY; anything else → IN_PROGRESS.
    """
    if not status.has_fabrication:
        return ProductionLevel.ENGINEERING_ONLY
    if not status.has_welds:
        return ProductionLevel.FABRICATED_ONLY
    return ProductionLevel.IN_PROGRESS


def status_from_spool(spool: Optional[Spool]) -> ProductionStatus:
    """Derive the production status of an already-loaded spool."""
    if spool is None:
        return NO_PRODUCTION
    return ProductionStatus(
        has_fabrication=spool.fabrication_status in FABRICATED_STATUSES,
        has_welds=any(w.execution_status == EXECUTED_WELD_STATUS for w in spool.welds),
        has_dispatch=bool(spool.dispatched_at),
    )


def recommend_resolution(level: ProductionLevel) -> list[ResolutionType]:
    """Suggested resolutions for an impact, preferred option first."""
    if level is ProductionLevel.FABRICATED_ONLY:
        return [ResolutionType.MATERIAL_RETURN]
    if level is ProductionLevel.IN_PROGRESS:
        return [ResolutionType.REWORK, ResolutionType.FREE_JOINT]
    return []


class ProductionStatusOracle:
    """Queries spool/weld state. Never writes."""

    def __init__(self, session: Session) -> None:
        self._spools = SpoolRepository(session)

    def get_production_status(self, spool_id: int) -> ProductionStatus:
        return status_from_spool(self._spools.get_with_welds(spool_id))

    def get_affected_spools(self, isometric_id: int, project_id: int) -> list[Spool]:
        """All spools linked to the isometric within the project (often none)."""
        return self._spools.get_by_isometric(isometric_id, project_id)

    def has_production(self, isometric_id: int, project_id: int) -> bool:
        """True when at least one affected spool is past ENGINEERING_ONLY."""
        return any(
            classify_production_level(status_from_spool(spool))
            is not ProductionLevel.ENGINEERING_ONLY
            for spool in self.get_affected_spools(isometric_id, project_id)
        )
