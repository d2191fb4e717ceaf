from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models, schemas
from .domain import UserProfile
from .errors import ValidationError
from .permissions import require_admin


def _check_range(field: str, value: int, low: int, high: int) -> None:
    if value < low or value > high:
        raise ValidationError.single(field, f"`{field}` must be between {low} and {high}.")


def category_distribution(db: Session, caller: UserProfile, limit: int | None = None) -> list[schemas.CategoryStat]:
    require_admin(caller)
    event_count = func.count(models.Event.id)
    query = (
        db.query(
            models.Event.category.label("category"),
            event_count.label("event_count"),
            func.coalesce(func.sum(models.Event.rsvp_count), 0).label("total_rsvps"),
        )
        .group_by(models.Event.category)
        .order_by(event_count.desc(), models.Event.category.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    return [
        schemas.CategoryStat(category=row.category, event_count=int(row.event_count), total_rsvps=int(row.total_rsvps))
        for row in query.all()
    ]


def top_organizers(db: Session, caller: UserProfile, limit: int = 10) -> list[schemas.OrganizerStat]:
    require_admin(caller)
    _check_range("limit", limit, 1, 100)
    total_rsvps = func.coalesce(func.sum(models.Event.rsvp_count), 0)
    event_count = func.count(models.Event.id)
    rows = (
        db.query(
            models.User.id.label("organizer_id"),
            models.User.full_name.label("name"),
            models.User.email.label("email"),
            event_count.label("event_count"),
            total_rsvps.label("total_rsvps"),
        )
        .join(models.Event, models.Event.organizer_id == models.User.id)
        .group_by(models.User.id, models.User.full_name, models.User.email)
        .order_by(total_rsvps.desc(), event_count.desc(), models.User.id.asc())
        .limit(limit)
        .all()
    )
    return [
        schemas.OrganizerStat(
            organizer_id=row.organizer_id,
            name=row.name,
            email=row.email,
            event_count=int(row.event_count),
            total_rsvps=int(row.total_rsvps),
        )
        for row in rows
    ]


def top_tags(db: Session, caller: UserProfile, limit: int = 10) -> list[schemas.TagStat]:
    require_admin(caller)
    _check_range("limit", limit, 1, 100)
    total_rsvps = func.coalesce(func.sum(models.Event.rsvp_count), 0)
    event_count = func.count(func.distinct(models.Event.id))
    rows = (
        db.query(
            models.Tag.name.label("name"),
            event_count.label("event_count"),
            total_rsvps.label("total_rsvps"),
        )
        .select_from(models.Tag)
        .join(models.event_tags, models.Tag.id == models.event_tags.c.tag_id)
        .join(models.Event, models.Event.id == models.event_tags.c.event_id)
        .group_by(models.Tag.id, models.Tag.name)
        .order_by(total_rsvps.desc(), event_count.desc(), models.Tag.name.asc())
        .limit(limit)
        .all()
    )
    return [
        schemas.TagStat(tag=row.name, event_count=int(row.event_count), total_rsvps=int(row.total_rsvps))
        for row in rows
    ]


def top_interests(db: Session, caller: UserProfile, limit: int = 10) -> list[schemas.InterestStat]:
    require_admin(caller)
    user_count = func.count(models.user_interest_tags.c.user_id)
    rows = (
        db.query(models.Tag.name.label("name"), user_count.label("user_count"))
        .join(models.user_interest_tags, models.Tag.id == models.user_interest_tags.c.tag_id)
        .group_by(models.Tag.id, models.Tag.name)
        .order_by(user_count.desc(), models.Tag.name.asc())
        .limit(limit)
        .all()
    )
    return [schemas.InterestStat(interest=row.name, user_count=int(row.user_count)) for row in rows]


def rsvps_by_day(db: Session, caller: UserProfile, days: int = 30) -> list[schemas.RsvpDayStat]:
    require_admin(caller)
    _check_range("days", days, 1, 365)
    start = datetime.now(timezone.utc) - timedelta(days=days)
    rows = (
        db.query(
            func.date(models.EventAttendee.joined_at).label("day"),
            func.count(models.EventAttendee.id).label("rsvps"),
        )
        .filter(models.EventAttendee.joined_at >= start)
        .group_by("day")
        .order_by("day")
        .all()
    )
    return [schemas.RsvpDayStat(date=str(row.day), rsvps=int(row.rsvps or 0)) for row in rows]


def dashboard_stats(db: Session, caller: UserProfile) -> schemas.DashboardStats:
    require_admin(caller)
    role_counts = dict(db.query(models.User.role, func.count(models.User.id)).group_by(models.User.role).all())
    status_counts = dict(
        db.query(models.Event.status, func.count(models.Event.id)).group_by(models.Event.status).all()
    )
    events_by_status = {status.value: int(status_counts.get(status.value, 0)) for status in models.EventStatus}

    return schemas.DashboardStats(
        total_users=int(sum(role_counts.values())),
        total_attendees=int(role_counts.get(models.UserRole.attendee, 0)),
        total_organizers=int(role_counts.get(models.UserRole.organizer, 0)),
        total_events=int(sum(events_by_status.values())),
        events_by_status=events_by_status,
        total_rsvps=int(db.query(func.count(models.EventAttendee.id)).scalar() or 0),
        total_bookmarks=int(db.query(func.count(models.Bookmark.id)).scalar() or 0),
        trending_categories=category_distribution(db, caller, limit=5),
        active_organizers=top_organizers(db, caller, limit=5),
        top_interests=top_interests(db, caller, limit=10),
    )
