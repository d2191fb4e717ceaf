from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from . import models


def normalize_tag(name: str | None) -> str:
    return (name or "").strip().lower()


def dedupe_tags(names: Iterable[str | None]) -> list[str]:
    """Drop blanks and case-insensitive duplicates, keeping the first spelling."""
    normalized: dict[str, str] = {}
    for raw in names:
        name = raw.strip() if raw else ""
        if not name:
            continue
        normalized.setdefault(name.lower(), name)
    return list(normalized.values())


def normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to timezone-aware UTC instances."""
    if not value:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class UserProfile:
    id: int
    role: models.UserRole
    interests: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_declared(
        cls,
        user_id: int,
        role: models.UserRole | str,
        *,
        skills: Iterable[str] = (),
        hobbies: Iterable[str] = (),
    ) -> "UserProfile":
        return cls(
            id=int(user_id),
            role=models.UserRole(role),
            interests=frozenset(dedupe_tags([*skills, *hobbies])),
        )

    @classmethod
    def from_user(cls, user: models.User) -> "UserProfile":
        return cls(
            id=int(user.id),
            role=models.UserRole(user.role),
            interests=frozenset(dedupe_tags(tag.name for tag in user.interest_tags)),
        )

    @property
    def normalized_interests(self) -> frozenset[str]:
        return frozenset(normalize_tag(name) for name in self.interests)


@dataclass(frozen=True)
class EventSnapshot:
    """Immutable copy of an approved event, taken for one ranking pass."""

    id: int
    organizer_id: int
    title: str
    description: str
    category: str
    mode: str
    city: str | None
    venue: str | None
    tags: tuple[str, ...]
    start_time: datetime
    end_time: datetime
    capacity: int
    attendee_count: int
    featured: bool

    @classmethod
    def from_event(cls, event: models.Event) -> "EventSnapshot":
        return cls(
            id=int(event.id),
            organizer_id=int(event.organizer_id),
            title=event.title,
            description=event.description or "",
            category=event.category,
            mode=event.mode,
            city=event.city,
            venue=event.venue,
            tags=tuple(tag.name for tag in event.tags),
            start_time=normalize_dt(event.start_time),
            end_time=normalize_dt(event.end_time),
            capacity=int(event.capacity or 0),
            attendee_count=int(event.rsvp_count or 0),
            featured=bool(event.featured),
        )

    @property
    def normalized_tags(self) -> frozenset[str]:
        return frozenset(normalize_tag(name) for name in self.tags)


@dataclass(frozen=True)
class ScoreBreakdown:
    tag_score: float
    recency_score: float
    popularity_score: float
    matched_tags: tuple[str, ...]

    @property
    def total(self) -> float:
        return self.tag_score + self.recency_score + self.popularity_score


@dataclass(frozen=True)
class ScoredEvent:
    event: EventSnapshot
    score: float
    scorer: str
    breakdown: ScoreBreakdown | None = None
    reason: str | None = None
