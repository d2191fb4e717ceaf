from datetime import datetime
from typing import Any, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import UserRole

T = TypeVar("T")

EventModeValue = Literal["online", "offline", "hybrid"]
EventStatusValue = Literal["pending", "approved", "denied"]


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T


class ErrorDetail(BaseModel):
    field: str
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    code: str
    message: str
    errors: List[ErrorDetail] = Field(default_factory=list)


class EventDraft(BaseModel):
    """Event submission. Every field is optional here so the store can report all missing ones at once."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    mode: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    venue: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    capacity: Optional[int] = None


class EventPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    mode: Optional[str] = None
    tags: Optional[List[str]] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    venue: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    capacity: Optional[int] = None
    featured: Optional[bool] = None
    # Accepted only so that attempts to set them can be rejected explicitly.
    status: Optional[str] = None
    organizer_id: Optional[int] = None


class EventFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: Optional[str] = None
    mode: Optional[EventModeValue] = None
    city: Optional[str] = None
    status: Optional[EventStatusValue] = None
    organizer_id: Optional[int] = None


class InterestsUpdate(BaseModel):
    skills: List[str] = Field(default_factory=list)
    hobbies: List[str] = Field(default_factory=list)


class DenyRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class EventResponse(BaseModel):
    id: int
    organizer_id: int
    title: str
    description: str
    category: str
    mode: str
    tags: List[str] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime
    venue: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    capacity: int
    rsvp_count: int
    status: EventStatusValue
    featured: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("tags", mode="before")
    @classmethod
    def tag_names(cls, value: Any):
        if value is None:
            return []
        return [getattr(tag, "name", tag) for tag in value]


class ReviewEventResponse(EventResponse):
    moderation_score: float = 0.0
    moderation_flags: Optional[List[str]] = None
    flagged: bool = False


class PaginatedEvents(BaseModel):
    items: List[EventResponse]
    total: int
    page: int
    page_size: int


class MyEventsResponse(BaseModel):
    organized: List[EventResponse]
    attending: List[EventResponse]


class RsvpResponse(BaseModel):
    joined: bool
    rsvp_count: int


class BookmarkResponse(BaseModel):
    event_id: int
    bookmarked: bool


class ModerationRecordResponse(BaseModel):
    id: int
    event_id: int
    prior_status: EventStatusValue
    new_status: EventStatusValue
    reviewer_id: int
    reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ScoreBreakdownResponse(BaseModel):
    tag_score: float
    recency_score: float
    popularity_score: float
    matched_tags: List[str]


class RecommendationResponse(BaseModel):
    event: EventResponse
    score: float
    scorer: str
    reason: Optional[str] = None
    breakdown: Optional[ScoreBreakdownResponse] = None


class ProfileResponse(BaseModel):
    id: int
    role: UserRole
    interests: List[str]


class CategoryStat(BaseModel):
    category: str
    event_count: int
    total_rsvps: int


class OrganizerStat(BaseModel):
    organizer_id: int
    name: Optional[str] = None
    email: str
    event_count: int
    total_rsvps: int


class InterestStat(BaseModel):
    interest: str
    user_count: int


class TagStat(BaseModel):
    tag: str
    event_count: int
    total_rsvps: int


class RsvpDayStat(BaseModel):
    date: str
    rsvps: int


class DashboardStats(BaseModel):
    total_users: int
    total_attendees: int
    total_organizers: int
    total_events: int
    events_by_status: dict[str, int]
    total_rsvps: int
    total_bookmarks: int
    trending_categories: List[CategoryStat]
    active_organizers: List[OrganizerStat]
    top_interests: List[InterestStat]


class EventDeletedResponse(BaseModel):
    deleted: bool = True
    bookmarks_removed: int
    attendees_removed: int


class ModerationHistoryResponse(BaseModel):
    event_id: int
    current_status: EventStatusValue
    records: List[ModerationRecordResponse]
