import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    TIMESTAMP,
    ForeignKey,
    Enum,
    Table,
    UniqueConstraint,
    func,
    Boolean,
    Float,
    JSON,
    event,
    false,
)
from sqlalchemy.orm import relationship
from .database import Base


class UserRole(str, enum.Enum):
    attendee = "attendee"
    organizer = "organizer"
    reviewer = "reviewer"
    admin = "admin"


class EventStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    denied = "denied"


class EventMode(str, enum.Enum):
    online = "online"
    offline = "offline"
    hybrid = "hybrid"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255))
    role = Column(Enum(UserRole), nullable=False, default=UserRole.attendee)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    events = relationship("Event", back_populates="organizer", foreign_keys="Event.organizer_id")
    interest_tags = relationship("Tag", secondary="user_interest_tags", order_by="Tag.name")


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)

    events = relationship("Event", secondary="event_tags", back_populates="tags")


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(100), nullable=False, index=True)
    mode = Column(String(20), nullable=False, server_default=EventMode.online.value, default=EventMode.online.value)
    venue = Column(String(255))
    city = Column(String(100), index=True)
    latitude = Column(Float)
    longitude = Column(Float)
    start_time = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    end_time = Column(TIMESTAMP(timezone=True), nullable=False)
    capacity = Column(Integer, nullable=False, server_default="0", default=0)
    rsvp_count = Column(Integer, nullable=False, server_default="0", default=0)
    status = Column(
        String(20),
        nullable=False,
        index=True,
        server_default=EventStatus.pending.value,
        default=EventStatus.pending.value,
    )
    featured = Column(Boolean, nullable=False, server_default=false(), default=False)
    moderation_score = Column(Float, nullable=False, server_default="0", default=0.0)
    moderation_flags = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, server_default="0", default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    organizer = relationship("User", back_populates="events", foreign_keys=[organizer_id])
    tags = relationship("Tag", secondary="event_tags", back_populates="events", order_by="Tag.name")
    attendees = relationship("EventAttendee", back_populates="event", cascade="all, delete-orphan")
    bookmarks = relationship("Bookmark", back_populates="event", cascade="all, delete-orphan")


class EventAttendee(Base):
    __tablename__ = "event_attendees"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_event_attendee"),)

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    joined_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    event = relationship("Event", back_populates="attendees")
    user = relationship("User")


class Bookmark(Base):
    __tablename__ = "bookmarks"
    __table_args__ = (UniqueConstraint("user_id", "event_id", name="uq_bookmark"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User")
    event = relationship("Event", back_populates="bookmarks")


class ModerationRecord(Base):
    __tablename__ = "moderation_records"

    id = Column(Integer, primary_key=True, index=True)
    # No foreign key: the audit trail outlives the event it describes.
    event_id = Column(Integer, nullable=False, index=True)
    prior_status = Column(String(20), nullable=False)
    new_status = Column(String(20), nullable=False)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reason = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, index=True)

    reviewer = relationship("User", foreign_keys=[reviewer_id])


@event.listens_for(ModerationRecord, "before_update")
def _moderation_records_are_append_only(_mapper, _connection, target):  # noqa: ANN001
    raise RuntimeError(f"moderation record {target.id} is immutable")


@event.listens_for(ModerationRecord, "before_delete")
def _moderation_records_are_never_deleted(_mapper, _connection, target):  # noqa: ANN001
    raise RuntimeError(f"moderation record {target.id} cannot be deleted")


event_tags = Table(
    "event_tags",
    Base.metadata,
    Column("event_id", Integer, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


# Declared interests (skills and hobbies) used to rank recommendations
user_interest_tags = Table(
    "user_interest_tags",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)
