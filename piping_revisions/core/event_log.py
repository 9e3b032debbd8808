"""
EventLog — append-only audit trail of revision lifecycle events.

Events are appended inside the same transaction as the mutation they
document, under a SAVEPOINT: if the insert fails only the savepoint is
rolled back and the failure is logged, so the mutation still commits.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from piping_revisions.data.models import RevisionEvent, RevisionEventType
from piping_revisions.data.repositories import RevisionEventRepository

logger = logging.getLogger(__name__)


class EventLog:

    def __init__(self, session: Session) -> None:
        self._session = session
        self._repo = RevisionEventRepository(session)

    def emit(
        self,
        revision_id: int,
        event_type: RevisionEventType,
        actor_id: str,
        payload: Optional[dict] = None,
    ) -> Optional[RevisionEvent]:
        """Append one event. Returns None (and logs) if the insert fails."""
        try:
            with self._session.begin_nested():
                event = self._repo.append(
                    revision_id=revision_id,
                    event_type=event_type,
                    created_by=actor_id,
                    payload=payload,
                )
        except SQLAlchemyError:
            logger.exception(
                "Failed to emit %s event for revision %s",
                RevisionEventType(event_type).value,
                revision_id,
                extra={"revision_id": revision_id, "actor_id": actor_id},
            )
            return None
        return event

    def history(self, revision_id: int) -> list[RevisionEvent]:
        """Events of a revision in the order they happened."""
        return self._repo.get_by_revision(revision_id)
