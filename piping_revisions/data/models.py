"""
SQLAlchemy ORM models for the piping revision lifecycle engine.

Uses SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
All timestamps are stored as UTC strings in ISO-8601 format.
Event payloads and viewer metadata are serialized to JSON text columns.

Relationships:
    isometrics (1) ──< engineering_revisions (1) ──< revision_events
                                             (1) ──< revision_impacts
    isometrics (1) ──< spools (1) ──< welds        (read-only here)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow_str() -> str:
    """Return current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _check_in(column: str, enum_cls: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class RevisionStatus(str, Enum):
    DRAFT = "DRAFT"
    VIGENTE = "VIGENTE"
    APPROVED = "APPROVED"
    APPLIED = "APPLIED"
    SPOOLEADO = "SPOOLEADO"
    OBSOLETA = "OBSOLETA"
    ELIMINADO = "ELIMINADO"

    @classmethod
    def _missing_(cls, value):
        # Both spellings of "superseded" are in use; lowercase input is accepted.
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized == "OBSOLETO":
                return cls.OBSOLETA
            if normalized in cls.__members__:
                return cls[normalized]
        return None


class RevisionEventType(str, Enum):
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    APPLIED = "APPLIED"
    IMPACT_DETECTED = "IMPACT_DETECTED"
    RESOLVED = "RESOLVED"
    # Generic status transitions
    DRAFT = "DRAFT"
    VIGENTE = "VIGENTE"
    SPOOLEADO = "SPOOLEADO"
    OBSOLETA = "OBSOLETA"
    ELIMINADO = "ELIMINADO"

    @classmethod
    def for_status(cls, status: RevisionStatus) -> RevisionEventType:
        """Event type recorded when a revision transitions into ``status``."""
        return cls(RevisionStatus(status).value)


class ImpactType(str, Enum):
    ADDED = "ADDED"
    REMOVED = "REMOVED"
    MODIFIED = "MODIFIED"
    DIMENSION_CHANGED = "DIMENSION_CHANGED"


class ImpactSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ImpactSeverity.LOW: 0,
    ImpactSeverity.MEDIUM: 1,
    ImpactSeverity.HIGH: 2,
    ImpactSeverity.CRITICAL: 3,
}


class ResolutionType(str, Enum):
    MATERIAL_RETURN = "MATERIAL_RETURN"   # return fabricated material to the warehouse
    REWORK = "REWORK"
    FREE_JOINT = "FREE_JOINT"


class IsometricStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EMPTY = "EMPTY"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


class Isometric(Base):
    """
    Aggregate root for one physical drawing identity (iso_number).

    ``current_revision_id`` must always reference the most recent surviving
    revision by natural code order, and that revision must be VIGENTE.
    """
    __tablename__ = "isometrics"
    __table_args__ = (
        UniqueConstraint("project_id", "iso_number", name="uq_isometrics_project_iso"),
        CheckConstraint(_check_in("status", IsometricStatus), name="ck_isometrics_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    iso_number: Mapped[str] = mapped_column(String(64), nullable=False)
    line_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    area: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Display code of the current revision
    revision: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=IsometricStatus.ACTIVE.value
    )
    current_revision_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("engineering_revisions.id", use_alter=True, ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[str] = mapped_column(String(32), nullable=False, default=_utcnow_str)
    updated_at: Mapped[str] = mapped_column(String(32), nullable=False, default=_utcnow_str)

    revisions: Mapped[list[EngineeringRevision]] = relationship(
        "EngineeringRevision",
        back_populates="isometric",
        foreign_keys="EngineeringRevision.isometric_id",
    )
    current_revision: Mapped[Optional[EngineeringRevision]] = relationship(
        "EngineeringRevision",
        foreign_keys=[current_revision_id],
        post_update=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Isometric id={self.id} iso={self.iso_number!r} "
            f"rev={self.revision!r} current={self.current_revision_id}>"
        )


class EngineeringRevision(Base):
    """
    One version of an isometric.
    The status column is the source of truth; revision_events is its audit log.
    """
    __tablename__ = "engineering_revisions"
    __table_args__ = (
        UniqueConstraint("isometric_id", "rev_code", name="uq_revisions_iso_rev"),
        CheckConstraint(_check_in("status", RevisionStatus), name="ck_revisions_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    isometric_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("isometrics.id", ondelete="CASCADE"), nullable=False
    )
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rev_code: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=RevisionStatus.DRAFT.value
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # 3D model reference; the blob belongs to the viewer tooling
    model_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    model_data_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Transmittal / announcement metadata
    transmittal_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    transmittal_date: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    announced_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    approved_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[str] = mapped_column(String(32), nullable=False, default=_utcnow_str)

    isometric: Mapped[Isometric] = relationship(
        "Isometric", back_populates="revisions", foreign_keys=[isometric_id]
    )
    events: Mapped[list[RevisionEvent]] = relationship(
        "RevisionEvent",
        back_populates="revision",
        cascade="all, delete-orphan",
        order_by="RevisionEvent.id",
    )
    impacts: Mapped[list[RevisionImpact]] = relationship(
        "RevisionImpact",
        back_populates="revision",
        cascade="all, delete-orphan",
        order_by="RevisionImpact.id",
    )

    @property
    def model_data(self) -> Optional[dict]:
        """Deserialize viewer metadata JSON to dict."""
        if not self.model_data_json:
            return None
        return json.loads(self.model_data_json)

    @model_data.setter
    def model_data(self, value: Optional[dict]) -> None:
        self.model_data_json = (
            json.dumps(value, ensure_ascii=False) if value is not None else None
        )

    def __repr__(self) -> str:
        return (
            f"<EngineeringRevision id={self.id} iso_id={self.isometric_id} "
            f"rev={self.rev_code!r} status={self.status!r}>"
        )


class RevisionEvent(Base):
    """
    An immutable fact about a revision. Never updated; removed only together
    with its revision.
    """
    __tablename__ = "revision_events"
    __table_args__ = (
        CheckConstraint(_check_in("event_type", RevisionEventType), name="ck_events_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    revision_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("engineering_revisions.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[str] = mapped_column(String(32), nullable=False, default=_utcnow_str)

    revision: Mapped[EngineeringRevision] = relationship(
        "EngineeringRevision", back_populates="events"
    )

    @property
    def payload(self) -> dict:
        if not self.payload_json:
            return {}
        return json.loads(self.payload_json)

    @payload.setter
    def payload(self, value: Optional[dict]) -> None:
        self.payload_json = json.dumps(value, ensure_ascii=False) if value else None

    def __repr__(self) -> str:
        return (
            f"<RevisionEvent id={self.id} revision_id={self.revision_id} "
            f"type={self.event_type!r}>"
        )


class RevisionImpact(Base):
    """
    A production conflict detected for a revision on one affected entity.
    Resolution fields start NULL and are filled exactly once.
    """
    __tablename__ = "revision_impacts"
    __table_args__ = (
        CheckConstraint(_check_in("impact_type", ImpactType), name="ck_impacts_type"),
        CheckConstraint(_check_in("severity", ImpactSeverity), name="ck_impacts_severity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    revision_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("engineering_revisions.id", ondelete="CASCADE"), nullable=False
    )
    impact_type: Mapped[str] = mapped_column(String(32), nullable=False)
    affected_entity_type: Mapped[str] = mapped_column(String(32), nullable=False, default="spool")
    affected_entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    resolution_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[str] = mapped_column(String(32), nullable=False, default=_utcnow_str)

    revision: Mapped[EngineeringRevision] = relationship(
        "EngineeringRevision", back_populates="impacts"
    )

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def __repr__(self) -> str:
        return (
            f"<RevisionImpact id={self.id} revision_id={self.revision_id} "
            f"{self.affected_entity_type}={self.affected_entity_id} severity={self.severity!r}>"
        )


class Spool(Base):
    """
    A fabricable piping segment. Owned by production tracking; this
    package only reads it.
    """
    __tablename__ = "spools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    isometric_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("isometrics.id"), nullable=False
    )
    revision_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("engineering_revisions.id", ondelete="SET NULL"), nullable=True
    )
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    spool_number: Mapped[str] = mapped_column(String(64), nullable=False)
    # PENDING | IN_FABRICATION | FABRICATED | DISPATCHED | INSTALLED
    fabrication_status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    fabricated_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    dispatched_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    welds: Mapped[list[Weld]] = relationship("Weld", back_populates="spool", order_by="Weld.id")

    def __repr__(self) -> str:
        return (
            f"<Spool id={self.id} number={self.spool_number!r} "
            f"fab={self.fabrication_status!r}>"
        )


class Weld(Base):
    """A joint on a spool with its own execution lifecycle (read-only here)."""
    __tablename__ = "welds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    spool_id: Mapped[int] = mapped_column(Integer, ForeignKey("spools.id"), nullable=False)
    weld_number: Mapped[str] = mapped_column(String(32), nullable=False)
    # PENDING | EXECUTED | REWORK
    execution_status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")

    spool: Mapped[Spool] = relationship("Spool", back_populates="welds")

    def __repr__(self) -> str:
        return f"<Weld id={self.id} number={self.weld_number!r} status={self.execution_status!r}>"


# Explicit index definitions (SQLAlchemy emits CREATE INDEX on create_all)
Index("idx_isometrics_project_id", Isometric.project_id)
Index("idx_revisions_isometric_id", EngineeringRevision.isometric_id)
Index("idx_revisions_project_id", EngineeringRevision.project_id)
Index("idx_revisions_status", EngineeringRevision.status)
Index("idx_events_revision_id", RevisionEvent.revision_id)
Index("idx_impacts_revision_id", RevisionImpact.revision_id)
Index("idx_spools_isometric_id", Spool.isometric_id)
Index("idx_welds_spool_id", Weld.spool_id)
