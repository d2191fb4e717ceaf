from datetime import timedelta

import pytest

from campus_unite import models
from campus_unite.errors import CapacityExceeded, Forbidden, InvalidTransition, NotFound, ValidationError
from campus_unite.event_store import EventStore, parse_event_id
from campus_unite.moderation import ModerationWorkflow


def _setup(helpers):
    store = EventStore(helpers["db"])
    organizer = helpers["make_user"]("organizer")
    reviewer = helpers["make_user"]("reviewer")
    return store, organizer, reviewer


def _approved(helpers, store, organizer, reviewer, **overrides):
    event = store.create(helpers["draft"](**overrides), organizer)
    ModerationWorkflow(helpers["db"], store).approve(event.id, reviewer)
    return event.id


def test_create_starts_pending_with_zero_attendees(helpers):
    store, organizer, _ = _setup(helpers)
    event = store.create(helpers["draft"](tags=["AI", "ai", " Robotics ", ""]), organizer)

    assert event.status == "pending"
    assert event.rsvp_count == 0
    assert event.version == 0
    assert event.organizer_id == organizer.id
    assert sorted(tag.name for tag in event.tags) == ["AI", "Robotics"]


def test_create_reports_every_missing_field(helpers):
    store, organizer, _ = _setup(helpers)
    with pytest.raises(ValidationError) as excinfo:
        store.create({"mode": "offline", "capacity": -1}, organizer)

    fields = {violation["field"] for violation in excinfo.value.violations}
    assert {"title", "description", "category", "start_time", "end_time", "capacity"} <= fields
    assert helpers["db"].query(models.Event).count() == 0


def test_create_rejects_end_before_start(helpers):
    store, organizer, _ = _setup(helpers)
    start = helpers["future_time"](days=2)
    with pytest.raises(ValidationError) as excinfo:
        store.create(helpers["draft"](start_time=start, end_time=start - timedelta(hours=1)), organizer)
    assert [v["field"] for v in excinfo.value.violations] == ["end_time"]


def test_create_rejects_unknown_mode_and_extra_fields(helpers):
    store, organizer, _ = _setup(helpers)
    with pytest.raises(ValidationError):
        store.create(helpers["draft"](mode="metaverse"), organizer)
    with pytest.raises(ValidationError) as excinfo:
        store.create(helpers["draft"](status="approved"), organizer)
    assert excinfo.value.violations[0]["field"] == "status"


def test_attendees_cannot_create_events(helpers):
    store, _, _ = _setup(helpers)
    attendee = helpers["make_user"]("attendee")
    with pytest.raises(Forbidden):
        store.create(helpers["draft"](), attendee)


def test_risky_content_is_scored_on_create(helpers):
    store, organizer, _ = _setup(helpers)
    event = store.create(
        helpers["draft"](description="Guaranteed profit with crypto, join http://bit.ly/x now"),
        organizer,
    )
    assert event.moderation_score >= 0.5
    assert "shortener_link" in event.moderation_flags
    assert "suspicious_keywords" in event.moderation_flags


def test_get_unknown_and_malformed_ids_are_not_found(helpers):
    store, _, _ = _setup(helpers)
    for raw in (999999, "999999", "abc", "", "-3", 0, True, "١٢"):
        with pytest.raises(NotFound):
            store.get(raw)


def test_parse_event_id_accepts_numeric_strings():
    assert parse_event_id(" 42 ") == 42
    assert parse_event_id(7) == 7


def test_pending_event_visible_only_to_owner_and_reviewers(helpers):
    store, organizer, reviewer = _setup(helpers)
    stranger = helpers["make_user"]("attendee")
    event = store.create(helpers["draft"](), organizer)

    assert store.get(event.id, organizer).id == event.id
    assert store.get(event.id, reviewer).id == event.id
    with pytest.raises(NotFound):
        store.get(event.id, stranger)


def test_list_defaults_to_approved_and_orders_by_start(helpers):
    store, organizer, reviewer = _setup(helpers)
    later = _approved(helpers, store, organizer, reviewer, start_time=helpers["future_time"](days=5))
    sooner = _approved(helpers, store, organizer, reviewer, start_time=helpers["future_time"](days=2))
    store.create(helpers["draft"](), organizer)

    events = store.list({}, None)
    assert [event.id for event in events] == [sooner, later]
    # Restartable: a second pass re-reads storage.
    assert [event.id for event in events] == [sooner, later]
    assert events.count() == 2
    assert [event.id for event in events.page(2, 1)] == [later]


def test_list_filters(helpers):
    store, organizer, reviewer = _setup(helpers)
    online = _approved(helpers, store, organizer, reviewer, mode="online", category="Talk", city="Iasi")
    _approved(helpers, store, organizer, reviewer, mode="offline", category="Workshop", city="Cluj")

    assert [e.id for e in store.list({"mode": "online"}, None)] == [online]
    assert [e.id for e in store.list({"category": "Talk"}, None)] == [online]
    assert [e.id for e in store.list({"city": "Iasi"}, None)] == [online]
    assert store.list({"organizer_id": organizer.id + 1000}, None).count() == 0


def test_list_pending_requires_reviewer(helpers):
    store, organizer, reviewer = _setup(helpers)
    pending = store.create(helpers["draft"](), organizer)

    with pytest.raises(Forbidden):
        store.list({"status": "pending"}, organizer)
    with pytest.raises(Forbidden):
        store.list({"status": "denied"}, None)
    assert [e.id for e in store.list({"status": "pending"}, reviewer)] == [pending.id]


def test_page_bounds_are_validated(helpers):
    store, _, _ = _setup(helpers)
    events = store.list({}, None)
    with pytest.raises(ValidationError):
        events.page(0, 10)
    with pytest.raises(ValidationError):
        events.page(1, 101)


def test_update_pending_event_by_owner(helpers):
    store, organizer, _ = _setup(helpers)
    event = store.create(helpers["draft"](), organizer)

    updated = store.update(event.id, {"title": "Robotics Workshop II", "tags": ["Hardware"]}, organizer)
    assert updated.title == "Robotics Workshop II"
    assert [tag.name for tag in updated.tags] == ["Hardware"]
    assert updated.version == 1


def test_update_rejects_status_and_organizer_changes(helpers):
    store, organizer, reviewer = _setup(helpers)
    admin = helpers["make_user"]("admin")
    event = store.create(helpers["draft"](), organizer)

    with pytest.raises(Forbidden):
        store.update(event.id, {"status": "approved"}, admin)
    with pytest.raises(Forbidden):
        store.update(event.id, {"organizer_id": reviewer.id}, organizer)
    helpers["db"].expire_all()
    assert store.get(event.id).status == "pending"


def test_update_of_missing_event_is_not_found_even_for_protected_fields(helpers):
    store, organizer, _ = _setup(helpers)
    admin = helpers["make_user"]("admin")
    with pytest.raises(NotFound):
        store.update(424242, {"status": "approved"}, admin)
    with pytest.raises(NotFound):
        store.update("nope", {"organizer_id": organizer.id}, organizer)


def test_update_by_non_owner_is_forbidden(helpers):
    store, organizer, _ = _setup(helpers)
    other = helpers["make_user"]("organizer")
    event = store.create(helpers["draft"](), organizer)
    with pytest.raises(Forbidden):
        store.update(event.id, {"title": "Hijacked"}, other)


def test_content_is_locked_after_moderation(helpers):
    store, organizer, reviewer = _setup(helpers)
    event_id = _approved(helpers, store, organizer, reviewer)

    with pytest.raises(InvalidTransition):
        store.update(event_id, {"title": "Changed after approval"}, organizer)
    updated = store.update(event_id, {"capacity": 50}, organizer)
    assert updated.capacity == 50


def test_update_validates_the_merged_record(helpers):
    store, organizer, _ = _setup(helpers)
    event = store.create(helpers["draft"](), organizer)
    with pytest.raises(ValidationError) as excinfo:
        store.update(event.id, {"end_time": event.start_time - timedelta(hours=1)}, organizer)
    assert excinfo.value.violations[0]["field"] == "end_time"
    with pytest.raises(ValidationError):
        store.update(event.id, {"title": None}, organizer)


def test_capacity_cannot_drop_below_attendees(helpers):
    store, organizer, reviewer = _setup(helpers)
    event_id = _approved(helpers, store, organizer, reviewer, capacity=5)
    for _ in range(3):
        store.rsvp(event_id, helpers["make_user"]("attendee").id)

    with pytest.raises(ValidationError):
        store.update(event_id, {"capacity": 2}, organizer)
    assert store.update(event_id, {"capacity": 0}, organizer).capacity == 0


def test_only_admin_can_feature(helpers):
    store, organizer, reviewer = _setup(helpers)
    admin = helpers["make_user"]("admin")
    event_id = _approved(helpers, store, organizer, reviewer)

    with pytest.raises(Forbidden):
        store.update(event_id, {"featured": True}, organizer)
    with pytest.raises(Forbidden):
        store.toggle_featured(event_id, organizer)
    assert store.toggle_featured(event_id, admin).featured is True
    assert store.toggle_featured(event_id, admin).featured is False


def test_rsvp_toggles_and_counts(helpers):
    store, organizer, reviewer = _setup(helpers)
    attendee = helpers["make_user"]("attendee")
    event_id = _approved(helpers, store, organizer, reviewer)

    assert store.rsvp(event_id, attendee.id) == {"joined": True, "rsvp_count": 1}
    assert store.rsvp(event_id, attendee.id) == {"joined": False, "rsvp_count": 0}
    assert store.rsvp(str(event_id), attendee.id) == {"joined": True, "rsvp_count": 1}


def test_rsvp_respects_capacity_but_leaving_always_works(helpers):
    store, organizer, reviewer = _setup(helpers)
    first = helpers["make_user"]("attendee")
    second = helpers["make_user"]("attendee")
    event_id = _approved(helpers, store, organizer, reviewer, capacity=1)

    store.rsvp(event_id, first.id)
    with pytest.raises(CapacityExceeded):
        store.rsvp(event_id, second.id)
    assert store.rsvp(event_id, first.id) == {"joined": False, "rsvp_count": 0}
    assert store.rsvp(event_id, second.id)["joined"] is True


def test_rsvp_requires_approved_event(helpers):
    store, organizer, _ = _setup(helpers)
    attendee = helpers["make_user"]("attendee")
    event = store.create(helpers["draft"](), organizer)
    with pytest.raises(NotFound):
        store.rsvp(event.id, attendee.id)
    with pytest.raises(NotFound):
        store.rsvp(424242, attendee.id)


def test_bookmark_is_idempotent(helpers):
    store, organizer, reviewer = _setup(helpers)
    attendee = helpers["make_user"]("attendee")
    event_id = _approved(helpers, store, organizer, reviewer)

    assert store.bookmark(event_id, attendee.id)["created"] is True
    assert store.bookmark(event_id, attendee.id)["created"] is False
    assert helpers["db"].query(models.Bookmark).count() == 1
    assert [e.id for e in store.list_bookmarked(attendee.id)] == [event_id]

    assert store.unbookmark(event_id, attendee.id)["removed"] is True
    assert store.unbookmark(event_id, attendee.id)["removed"] is False
    assert list(store.list_bookmarked(attendee.id)) == []


def test_bookmark_unknown_event_is_not_found(helpers):
    store, _, _ = _setup(helpers)
    attendee = helpers["make_user"]("attendee")
    with pytest.raises(NotFound):
        store.bookmark(31337, attendee.id)


def test_hidden_events_cannot_be_bookmarked_by_strangers(helpers):
    store, organizer, reviewer = _setup(helpers)
    stranger = helpers["make_user"]("attendee")
    pending = store.create(helpers["draft"](), organizer)
    denied = store.create(helpers["draft"](), organizer)
    ModerationWorkflow(helpers["db"], store).deny(denied.id, reviewer)

    for event_id in (pending.id, denied.id):
        with pytest.raises(NotFound):
            store.get(event_id, stranger)
        with pytest.raises(NotFound):
            store.bookmark(event_id, stranger.id)
    assert helpers["db"].query(models.Bookmark).count() == 0

    assert store.bookmark(pending.id, organizer.id)["created"] is True
    assert store.bookmark(pending.id, reviewer.id)["created"] is True


def test_delete_cascades_but_keeps_moderation_history(helpers):
    store, organizer, reviewer = _setup(helpers)
    attendee = helpers["make_user"]("attendee")
    event_id = _approved(helpers, store, organizer, reviewer)
    store.rsvp(event_id, attendee.id)
    store.bookmark(event_id, attendee.id)

    result = store.delete(event_id, organizer)

    assert result == {"bookmarks_removed": 1, "attendees_removed": 1}
    db = helpers["db"]
    assert db.query(models.Bookmark).count() == 0
    assert db.query(models.EventAttendee).count() == 0
    assert db.query(models.ModerationRecord).filter_by(event_id=event_id).count() == 1
    with pytest.raises(NotFound):
        store.get(event_id)
    with pytest.raises(NotFound):
        store.delete(event_id, organizer)


def test_delete_requires_owner_or_admin(helpers):
    store, organizer, reviewer = _setup(helpers)
    admin = helpers["make_user"]("admin")
    event = store.create(helpers["draft"](), organizer)

    with pytest.raises(Forbidden):
        store.delete(event.id, reviewer)
    assert store.delete(event.id, admin) == {"bookmarks_removed": 0, "attendees_removed": 0}


def test_my_events_lists(helpers):
    store, organizer, reviewer = _setup(helpers)
    attendee = helpers["make_user"]("attendee")
    pending = store.create(helpers["draft"](), organizer)
    approved = _approved(helpers, store, organizer, reviewer)
    store.rsvp(approved, attendee.id)

    assert sorted(e.id for e in store.list_organized(organizer)) == sorted([pending.id, approved])
    assert [e.id for e in store.list_attending(attendee.id)] == [approved]


def test_approved_snapshot_is_immutable_copy(helpers):
    store, organizer, reviewer = _setup(helpers)
    attendee = helpers["make_user"]("attendee")
    event_id = _approved(helpers, store, organizer, reviewer, tags=["Music"])
    store.create(helpers["draft"](), organizer)

    snapshot = store.approved_snapshot()
    store.rsvp(event_id, attendee.id)

    assert [item.id for item in snapshot] == [event_id]
    assert snapshot[0].attendee_count == 0
    assert snapshot[0].tags == ("Music",)
    with pytest.raises(AttributeError):
        snapshot[0].title = "mutated"
