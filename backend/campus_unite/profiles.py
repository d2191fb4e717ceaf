from typing import Iterable, Optional

from sqlalchemy.orm import Session, selectinload

from . import models
from .domain import UserProfile
from .errors import NotFound
from .event_store import resolve_tags, transaction
from .logging_utils import log_event


def load_profile(db: Session, user_id: int) -> Optional[UserProfile]:
    user = (
        db.query(models.User)
        .options(selectinload(models.User.interest_tags))
        .filter(models.User.id == user_id)
        .first()
    )
    if user is None:
        return None
    return UserProfile.from_user(user)


def update_interests(db: Session, profile: UserProfile, *, skills: Iterable[str], hobbies: Iterable[str]) -> UserProfile:
    """Replace the declared interests of a user with the union of their skills and hobbies."""
    user = db.query(models.User).filter(models.User.id == profile.id).first()
    if user is None:
        raise NotFound("User not found.")
    with transaction(db):
        user.interest_tags = resolve_tags(db, [*skills, *hobbies])
    db.expire(user)
    updated = load_profile(db, profile.id)
    log_event("interests_updated", user_id=profile.id, interest_count=len(updated.interests))
    return updated
