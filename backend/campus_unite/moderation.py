from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from . import models
from .domain import UserProfile
from .errors import InvalidTransition, NotFound
from .event_store import EventStore, QuerySequence, parse_event_id, transaction
from .logging_utils import log_event
from .permissions import require_moderator

PENDING = models.EventStatus.pending.value
APPROVED = models.EventStatus.approved.value
DENIED = models.EventStatus.denied.value

# approved and denied are terminal.
TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({APPROVED, DENIED}),
    APPROVED: frozenset(),
    DENIED: frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ModerationWorkflow:
    """Moves events out of ``pending`` and keeps the audit trail of who did it.

    Every resolution is a compare-and-set on the event status plus one appended
    ``ModerationRecord``, committed together, so the current status of an event
    always equals the ``new_status`` of its latest record (or ``pending`` if none).
    """

    def __init__(self, db: Session, store: EventStore | None = None, clock: Callable[[], datetime] | None = None):
        self.db = db
        self.store = store or EventStore(db)
        self._clock = clock or _utcnow

    def approve(self, event_id: Any, reviewer: UserProfile) -> models.ModerationRecord:
        return self._resolve(event_id, reviewer, APPROVED, None)

    def deny(self, event_id: Any, reviewer: UserProfile, reason: str | None = None) -> models.ModerationRecord:
        reason = reason.strip() if reason else None
        return self._resolve(event_id, reviewer, DENIED, reason or None)

    def _resolve(
        self,
        event_id: Any,
        reviewer: UserProfile,
        new_status: str,
        reason: str | None,
    ) -> models.ModerationRecord:
        require_moderator(reviewer)
        event_id = parse_event_id(event_id)
        now = self._clock()

        with transaction(self.db):
            current = self.db.query(models.Event.status).filter(models.Event.id == event_id).scalar()
            if current is None:
                raise NotFound("Event not found.")
            if not can_transition(current, new_status):
                raise InvalidTransition(f"Event is already {current}.", current=current, requested=new_status)
            if not self.store.transition_status(event_id, expected=current, new=new_status, at=now):
                raise InvalidTransition("Event was resolved by another reviewer.", requested=new_status)

            record = models.ModerationRecord(
                event_id=event_id,
                prior_status=current,
                new_status=new_status,
                reviewer_id=reviewer.id,
                reason=reason,
                created_at=now,
            )
            self.db.add(record)
            self.db.flush()
            # Hand back a detached copy; the stored record is never modified again.
            self.db.expunge(record)

        self.db.expire_all()
        log_event(
            "event_moderated",
            event_id=event_id,
            reviewer_id=reviewer.id,
            prior_status=current,
            new_status=new_status,
        )
        return record

    def history(self, event_id: Any, caller: UserProfile) -> QuerySequence[models.ModerationRecord]:
        require_moderator(caller)
        event_id = parse_event_id(event_id)
        query = (
            self.db.query(models.ModerationRecord)
            .filter(models.ModerationRecord.event_id == event_id)
            .order_by(models.ModerationRecord.created_at.asc(), models.ModerationRecord.id.asc())
        )
        event_exists = self.db.query(models.Event.id).filter(models.Event.id == event_id).first() is not None
        if not event_exists and query.first() is None:
            raise NotFound("Event not found.")
        return QuerySequence(query)

    def status_from_history(self, event_id: int) -> str:
        latest = (
            self.db.query(models.ModerationRecord.new_status)
            .filter(models.ModerationRecord.event_id == event_id)
            .order_by(models.ModerationRecord.created_at.desc(), models.ModerationRecord.id.desc())
            .first()
        )
        return latest[0] if latest else PENDING

    def queue(self, caller: UserProfile) -> QuerySequence[models.Event]:
        """Pending events, riskiest first, so reviewers see likely spam before anything else."""
        require_moderator(caller)
        query = (
            self.store.query_events()
            .filter(models.Event.status == PENDING)
            .order_by(
                models.Event.moderation_score.desc(),
                models.Event.start_time.asc(),
                models.Event.id.asc(),
            )
        )
        return QuerySequence(query)
