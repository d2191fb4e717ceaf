from .domain import UserProfile
from .errors import Forbidden
from .models import UserRole

CAN_ORGANIZE = frozenset({UserRole.organizer, UserRole.admin})
CAN_MODERATE = frozenset({UserRole.reviewer, UserRole.admin})


def is_admin(profile: UserProfile | None) -> bool:
    return profile is not None and profile.role == UserRole.admin


def can_organize(profile: UserProfile | None) -> bool:
    return profile is not None and profile.role in CAN_ORGANIZE


def can_moderate(profile: UserProfile | None) -> bool:
    return profile is not None and profile.role in CAN_MODERATE


def require_organizer(profile: UserProfile | None) -> UserProfile:
    if not can_organize(profile):
        raise Forbidden("Only organizers can create events.")
    return profile


def require_moderator(profile: UserProfile | None) -> UserProfile:
    if not can_moderate(profile):
        raise Forbidden("Only reviewers can moderate events.")
    return profile


def require_admin(profile: UserProfile | None) -> UserProfile:
    if not is_admin(profile):
        raise Forbidden("Admin access required.")
    return profile


def require_owner_or_admin(profile: UserProfile | None, organizer_id: int, action: str) -> UserProfile:
    if profile is None or (profile.id != organizer_id and not is_admin(profile)):
        raise Forbidden(f"Not authorized to {action} this event.")
    return profile
