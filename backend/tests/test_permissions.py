import pytest

from campus_unite import permissions
from campus_unite.domain import UserProfile
from campus_unite.errors import Forbidden

ROLES = ["attendee", "organizer", "reviewer", "admin"]


def _profile(role, user_id=1):
    return UserProfile.from_declared(user_id, role)


@pytest.mark.parametrize("role", ROLES)
def test_role_capabilities(role):
    profile = _profile(role)
    assert permissions.can_organize(profile) is (role in ("organizer", "admin"))
    assert permissions.can_moderate(profile) is (role in ("reviewer", "admin"))
    assert permissions.is_admin(profile) is (role == "admin")


def test_anonymous_callers_have_no_capabilities():
    assert not permissions.can_organize(None)
    assert not permissions.can_moderate(None)
    with pytest.raises(Forbidden):
        permissions.require_moderator(None)


def test_owner_or_admin():
    owner = _profile("organizer", user_id=5)
    assert permissions.require_owner_or_admin(owner, 5, "update") is owner
    assert permissions.require_owner_or_admin(_profile("admin", user_id=9), 5, "update")
    with pytest.raises(Forbidden) as excinfo:
        permissions.require_owner_or_admin(_profile("reviewer", user_id=6), 5, "delete")
    assert "delete" in excinfo.value.message


def test_declared_interests_merge_skills_and_hobbies():
    profile = UserProfile.from_declared(3, "attendee", skills=["Python", "Music"], hobbies=["music", " Chess "])
    assert profile.interests == frozenset({"Python", "Music", "Chess"})
    assert profile.normalized_interests == frozenset({"python", "music", "chess"})
