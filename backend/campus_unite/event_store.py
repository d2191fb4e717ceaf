from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Generic, Iterable, Iterator, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session, selectinload

from . import models, schemas
from .config import settings
from .domain import EventSnapshot, UserProfile, dedupe_tags, normalize_dt
from .errors import CapacityExceeded, Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from .logging_utils import log_event, log_warning
from .permissions import CAN_MODERATE, can_moderate, is_admin, require_admin, require_organizer, require_owner_or_admin
from .risk import assess_content

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

CONTENT_FIELDS = frozenset(
    {
        "title",
        "description",
        "category",
        "mode",
        "tags",
        "start_time",
        "end_time",
        "venue",
        "city",
        "latitude",
        "longitude",
    }
)
_RISK_FIELDS = frozenset({"title", "description", "venue"})
_MODES = {mode.value for mode in models.EventMode}
_TEXT_LIMITS = {"title": 255, "category": 100, "venue": 255, "city": 100}
MAX_PAGE_SIZE = 100


@contextmanager
def transaction(db: Session):
    """Commit on success, roll back on any error so operations are all-or-nothing."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def parse_event_id(raw: Any) -> int:
    """Event ids are opaque to callers; anything that is not a positive integer is simply absent."""
    if isinstance(raw, bool):
        raise NotFound("Event not found.")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not (text.isascii() and text.isdigit()):
            raise NotFound("Event not found.")
        value = int(text)
    if value <= 0:
        raise NotFound("Event not found.")
    return value


def coerce_model(model_cls: type[M], value: Any) -> M:
    if isinstance(value, model_cls):
        return value
    try:
        return model_cls.model_validate(value or {})
    except PydanticValidationError as exc:
        raise ValidationError(
            [
                {"field": ".".join(str(part) for part in err["loc"]) or "__root__", "message": err["msg"]}
                for err in exc.errors()
            ]
        ) from exc


def resolve_tags(db: Session, names: Iterable[str | None]) -> list[models.Tag]:
    tags: list[models.Tag] = []
    for name in dedupe_tags(names):
        tag = db.query(models.Tag).filter(func.lower(models.Tag.name) == name.lower()).first()
        if not tag:
            tag = models.Tag(name=name)
            db.add(tag)
            db.flush()
        tags.append(tag)
    return tags


def validate_event_fields(values: dict[str, Any]) -> list[dict[str, str]]:
    """Check a complete event record and return every violation, not just the first."""
    violations: list[dict[str, str]] = []

    def violate(field: str, message: str) -> None:
        violations.append({"field": field, "message": message})

    for field in ("title", "description", "category"):
        value = values.get(field)
        if value is None or not str(value).strip():
            violate(field, f"{field} is required")

    for field, limit in _TEXT_LIMITS.items():
        value = values.get(field)
        if value is not None and len(str(value)) > limit:
            violate(field, f"{field} must be at most {limit} characters")

    mode = values.get("mode")
    if mode not in _MODES:
        violate("mode", f"mode must be one of {', '.join(sorted(_MODES))}")

    start_time = normalize_dt(values.get("start_time"))
    end_time = normalize_dt(values.get("end_time"))
    if start_time is None:
        violate("start_time", "start_time is required")
    if end_time is None:
        violate("end_time", "end_time is required")
    if start_time is not None and end_time is not None and end_time <= start_time:
        violate("end_time", "end_time must be after start_time")

    capacity = values.get("capacity")
    if capacity is None or capacity < 0:
        violate("capacity", "capacity must be zero (unlimited) or a positive number")

    latitude = values.get("latitude")
    longitude = values.get("longitude")
    if (latitude is None) != (longitude is None):
        violate("latitude" if latitude is None else "longitude", "latitude and longitude must be given together")
    if latitude is not None and not -90 <= latitude <= 90:
        violate("latitude", "latitude must be between -90 and 90")
    if longitude is not None and not -180 <= longitude <= 180:
        violate("longitude", "longitude must be between -180 and 180")

    return violations


class QuerySequence(Generic[T]):
    """Lazy, finite view over a query. Each iteration re-reads storage, so it can be restarted."""

    def __init__(self, query: Query, transform: Callable[[Any], T] | None = None):
        self._query = query
        self._transform = transform

    def __iter__(self) -> Iterator[T]:
        for row in self._query:
            yield self._transform(row) if self._transform else row

    def count(self) -> int:
        return self._query.order_by(None).count()

    def page(self, page: int = 1, page_size: int = 20) -> list[T]:
        violations = []
        if page < 1:
            violations.append({"field": "page", "message": "page must be at least 1"})
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            violations.append({"field": "page_size", "message": f"page_size must be between 1 and {MAX_PAGE_SIZE}"})
        if violations:
            raise ValidationError(violations)
        rows = self._query.offset((page - 1) * page_size).limit(page_size).all()
        return [self._transform(row) if self._transform else row for row in rows]


class _StaleVersion(Exception):
    pass


class EventStore:
    """Storage and referential integrity for events, attendance and bookmarks."""

    def __init__(self, db: Session):
        self.db = db

    def query_events(self) -> Query:
        return self.db.query(models.Event).options(selectinload(models.Event.tags))

    def _load(self, event_id: int, *, for_update: bool = False) -> models.Event:
        query = self.query_events().filter(models.Event.id == event_id)
        if for_update and self._locks_rows():
            query = query.with_for_update(of=models.Event)
        event = query.first()
        if not event:
            raise NotFound("Event not found.")
        return event

    def _locks_rows(self) -> bool:
        return self.db.get_bind().dialect.name == "postgresql"

    @staticmethod
    def _visible_to(event: models.Event, caller: UserProfile) -> bool:
        if event.status == models.EventStatus.approved.value:
            return True
        return can_moderate(caller) or event.organizer_id == caller.id

    def create(self, event_draft: schemas.EventDraft | dict, organizer: UserProfile) -> models.Event:
        require_organizer(organizer)
        draft = coerce_model(schemas.EventDraft, event_draft)
        values = draft.model_dump()
        values["mode"] = values["mode"] or models.EventMode.online.value
        if values["capacity"] is None:
            values["capacity"] = 0
        violations = validate_event_fields(values)
        if violations:
            raise ValidationError(violations)

        score, flags = assess_content(title=draft.title, description=draft.description, venue=draft.venue)
        event = models.Event(
            organizer_id=organizer.id,
            title=draft.title.strip(),
            description=draft.description.strip(),
            category=draft.category.strip(),
            mode=values["mode"],
            venue=draft.venue,
            city=draft.city,
            latitude=draft.latitude,
            longitude=draft.longitude,
            start_time=normalize_dt(draft.start_time),
            end_time=normalize_dt(draft.end_time),
            capacity=values["capacity"],
            rsvp_count=0,
            status=models.EventStatus.pending.value,
            featured=False,
            moderation_score=float(score),
            moderation_flags=flags or None,
            version=0,
        )
        with transaction(self.db):
            event.tags = resolve_tags(self.db, draft.tags)
            self.db.add(event)
        self.db.refresh(event)
        log_event("event_created", event_id=event.id, organizer_id=organizer.id, moderation_score=score)
        return event

    def get(self, event_id: Any, caller: UserProfile | None = None) -> models.Event:
        event = self._load(parse_event_id(event_id))
        if caller is not None and not self._visible_to(event, caller):
            raise NotFound("Event not found.")
        return event

    def list(
        self,
        filter: schemas.EventFilter | dict | None = None,
        caller: UserProfile | None = None,
    ) -> QuerySequence[models.Event]:
        filters = coerce_model(schemas.EventFilter, filter)
        status = filters.status or models.EventStatus.approved.value
        if status != models.EventStatus.approved.value and not can_moderate(caller):
            raise Forbidden("Only reviewers can list pending or denied events.")

        query = self.query_events().filter(models.Event.status == status)
        if filters.category:
            query = query.filter(models.Event.category == filters.category)
        if filters.mode:
            query = query.filter(models.Event.mode == filters.mode)
        if filters.city:
            query = query.filter(models.Event.city == filters.city)
        if filters.organizer_id is not None:
            query = query.filter(models.Event.organizer_id == filters.organizer_id)
        return QuerySequence(query.order_by(models.Event.start_time.asc(), models.Event.id.asc()))

    def list_organized(self, caller: UserProfile) -> QuerySequence[models.Event]:
        query = (
            self.query_events()
            .filter(models.Event.organizer_id == caller.id)
            .order_by(models.Event.start_time.asc(), models.Event.id.asc())
        )
        return QuerySequence(query)

    def list_attending(self, user_id: int) -> QuerySequence[models.Event]:
        query = (
            self.query_events()
            .join(models.EventAttendee, models.EventAttendee.event_id == models.Event.id)
            .filter(models.EventAttendee.user_id == user_id)
            .order_by(models.Event.start_time.asc(), models.Event.id.asc())
        )
        return QuerySequence(query)

    def list_bookmarked(self, user_id: int) -> QuerySequence[models.Event]:
        query = (
            self.query_events()
            .join(models.Bookmark, models.Bookmark.event_id == models.Event.id)
            .filter(
                models.Bookmark.user_id == user_id,
                models.Event.status == models.EventStatus.approved.value,
            )
            .order_by(models.Event.start_time.asc(), models.Event.id.asc())
        )
        return QuerySequence(query)

    def update(self, event_id: Any, patch: schemas.EventPatch | dict, caller: UserProfile) -> models.Event:
        patch = coerce_model(schemas.EventPatch, patch)
        fields = set(patch.model_fields_set)

        with transaction(self.db):
            event = self._load(parse_event_id(event_id), for_update=True)
            if "status" in fields:
                raise Forbidden("Event status changes only through moderation.")
            if "organizer_id" in fields:
                raise Forbidden("The organizer of an event cannot be changed.")
            require_owner_or_admin(caller, event.organizer_id, "update")
            if "featured" in fields and not is_admin(caller):
                raise Forbidden("Only admins can feature events.")
            content_fields = fields & CONTENT_FIELDS
            if content_fields and event.status != models.EventStatus.pending.value:
                raise InvalidTransition(f"Event content is locked once it is {event.status}.")

            changes = patch.model_dump(include=fields)
            merged = {
                "title": event.title,
                "description": event.description,
                "category": event.category,
                "mode": event.mode,
                "start_time": event.start_time,
                "end_time": event.end_time,
                "venue": event.venue,
                "city": event.city,
                "latitude": event.latitude,
                "longitude": event.longitude,
                "capacity": event.capacity,
            }
            merged.update({key: value for key, value in changes.items() if key in merged})
            violations = validate_event_fields(merged)
            capacity = changes.get("capacity")
            if capacity and capacity < event.rsvp_count:
                violations.append(
                    {"field": "capacity", "message": f"capacity cannot drop below the {event.rsvp_count} current attendees"}
                )
            if "featured" in fields and patch.featured is None:
                violations.append({"field": "featured", "message": "featured must be true or false"})
            if violations:
                raise ValidationError(violations)

            for name in content_fields - {"tags"}:
                value = changes[name]
                if name in ("start_time", "end_time"):
                    value = normalize_dt(value)
                elif isinstance(value, str) and name in ("title", "description", "category"):
                    value = value.strip()
                setattr(event, name, value)
            if "tags" in fields:
                event.tags = resolve_tags(self.db, patch.tags or [])
            if "capacity" in fields:
                event.capacity = capacity
            if "featured" in fields:
                event.featured = bool(patch.featured)
            if content_fields & _RISK_FIELDS:
                score, flags = assess_content(title=event.title, description=event.description, venue=event.venue)
                event.moderation_score = float(score)
                event.moderation_flags = flags or None
            event.version = models.Event.version + 1
        self.db.refresh(event)
        log_event("event_updated", event_id=event.id, actor_user_id=caller.id, fields=sorted(fields))
        return event

    def delete(self, event_id: Any, caller: UserProfile) -> dict[str, int]:
        event_id = parse_event_id(event_id)
        with transaction(self.db):
            organizer_id = (
                self.db.query(models.Event.organizer_id).filter(models.Event.id == event_id).scalar()
            )
            if organizer_id is None:
                raise NotFound("Event not found.")
            require_owner_or_admin(caller, organizer_id, "delete")

            bookmarks_removed = (
                self.db.query(models.Bookmark)
                .filter(models.Bookmark.event_id == event_id)
                .delete(synchronize_session=False)
            )
            attendees_removed = (
                self.db.query(models.EventAttendee)
                .filter(models.EventAttendee.event_id == event_id)
                .delete(synchronize_session=False)
            )
            self.db.execute(models.event_tags.delete().where(models.event_tags.c.event_id == event_id))
            deleted = (
                self.db.query(models.Event).filter(models.Event.id == event_id).delete(synchronize_session=False)
            )
            if not deleted:
                # A concurrent delete got there first.
                raise NotFound("Event not found.")
        self.db.expire_all()
        log_event(
            "event_deleted",
            event_id=event_id,
            actor_user_id=caller.id,
            bookmarks_removed=bookmarks_removed,
            attendees_removed=attendees_removed,
        )
        return {"bookmarks_removed": int(bookmarks_removed), "attendees_removed": int(attendees_removed)}

    def rsvp(self, event_id: Any, user_id: int) -> dict[str, Any]:
        event_id = parse_event_id(event_id)
        user_id = int(user_id)
        attempts = max(1, settings.rsvp_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                with transaction(self.db):
                    outcome = self._toggle_attendance(event_id, user_id)
            except (_StaleVersion, IntegrityError):
                log_warning("rsvp_retry", event_id=event_id, user_id=user_id, attempt=attempt)
                continue
            log_event(
                "event_rsvp_joined" if outcome["joined"] else "event_rsvp_left",
                event_id=event_id,
                user_id=user_id,
                rsvp_count=outcome["rsvp_count"],
            )
            return outcome
        raise Conflict("RSVP lost to a concurrent update; try again.")

    def _toggle_attendance(self, event_id: int, user_id: int) -> dict[str, Any]:
        query = self.db.query(models.Event).filter(models.Event.id == event_id)
        if self._locks_rows():
            query = query.with_for_update()
        event = query.first()
        if event is None:
            raise NotFound("Event not found.")
        version = event.version

        membership = (
            self.db.query(models.EventAttendee)
            .filter(models.EventAttendee.event_id == event_id, models.EventAttendee.user_id == user_id)
            .first()
        )
        if membership is not None:
            self.db.delete(membership)
            joined = False
        else:
            if event.status != models.EventStatus.approved.value:
                raise NotFound("Event not found.")
            taken = self._attendee_count(event_id)
            if event.capacity and taken >= event.capacity:
                raise CapacityExceeded("Event is at capacity.", capacity=event.capacity)
            self.db.add(models.EventAttendee(event_id=event_id, user_id=user_id))
            joined = True
        self.db.flush()

        # The counter is always derived from the attendee rows, never incremented in place.
        rsvp_count = self._attendee_count(event_id)
        updated = (
            self.db.query(models.Event)
            .filter(models.Event.id == event_id, models.Event.version == version)
            .update({"rsvp_count": rsvp_count, "version": version + 1}, synchronize_session=False)
        )
        if updated != 1:
            raise _StaleVersion()
        return {"joined": joined, "rsvp_count": rsvp_count}

    def _attendee_count(self, event_id: int) -> int:
        return int(
            self.db.query(func.count(models.EventAttendee.id))
            .filter(models.EventAttendee.event_id == event_id)
            .scalar()
            or 0
        )

    def bookmark(self, event_id: Any, user_id: int) -> dict[str, Any]:
        event_id = parse_event_id(event_id)
        user_id = int(user_id)
        row = (
            self.db.query(models.Event.status, models.Event.organizer_id)
            .filter(models.Event.id == event_id)
            .first()
        )
        if row is None or not self._user_may_see(row.status, row.organizer_id, user_id):
            raise NotFound("Event not found.")
        if self._find_bookmark(event_id, user_id) is not None:
            return {"event_id": event_id, "bookmarked": True, "created": False}

        self.db.add(models.Bookmark(user_id=user_id, event_id=event_id))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self._find_bookmark(event_id, user_id) is None:
                raise
            return {"event_id": event_id, "bookmarked": True, "created": False}
        log_event("event_bookmarked", event_id=event_id, user_id=user_id)
        return {"event_id": event_id, "bookmarked": True, "created": True}

    def unbookmark(self, event_id: Any, user_id: int) -> dict[str, Any]:
        event_id = parse_event_id(event_id)
        with transaction(self.db):
            removed = (
                self.db.query(models.Bookmark)
                .filter(models.Bookmark.event_id == event_id, models.Bookmark.user_id == int(user_id))
                .delete(synchronize_session=False)
            )
        if removed:
            log_event("event_unbookmarked", event_id=event_id, user_id=user_id)
        return {"event_id": event_id, "bookmarked": False, "removed": bool(removed)}

    def _user_may_see(self, status: str, organizer_id: int, user_id: int) -> bool:
        if status == models.EventStatus.approved.value or organizer_id == user_id:
            return True
        role = self.db.query(models.User.role).filter(models.User.id == user_id).scalar()
        return role in CAN_MODERATE

    def _find_bookmark(self, event_id: int, user_id: int) -> models.Bookmark | None:
        return (
            self.db.query(models.Bookmark)
            .filter(models.Bookmark.event_id == event_id, models.Bookmark.user_id == user_id)
            .first()
        )

    def toggle_featured(self, event_id: Any, caller: UserProfile) -> models.Event:
        require_admin(caller)
        with transaction(self.db):
            event = self._load(parse_event_id(event_id), for_update=True)
            event.featured = not bool(event.featured)
            event.version = models.Event.version + 1
        self.db.refresh(event)
        log_event("event_featured_toggled", event_id=event.id, featured=event.featured, actor_user_id=caller.id)
        return event

    def approved_snapshot(self) -> tuple[EventSnapshot, ...]:
        """Immutable copies of every approved event, read in one pass for a ranking call."""
        events = (
            self.query_events()
            .filter(models.Event.status == models.EventStatus.approved.value)
            .order_by(models.Event.start_time.asc(), models.Event.id.asc())
            .all()
        )
        return tuple(EventSnapshot.from_event(event) for event in events)

    def transition_status(self, event_id: int, *, expected: str, new: str, at: datetime) -> bool:
        """Compare-and-set the moderation status. Reserved for ModerationWorkflow.

        Returns False when the event is no longer in ``expected`` state, which means a
        concurrent reviewer resolved it first.
        """
        updated = (
            self.db.query(models.Event)
            .filter(models.Event.id == event_id, models.Event.status == expected)
            .update(
                {"status": new, "version": models.Event.version + 1, "updated_at": at},
                synchronize_session=False,
            )
        )
        return updated == 1
