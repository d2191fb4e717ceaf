import threading
from datetime import datetime, timedelta, timezone

import pytest

from campus_unite import models
from campus_unite.database import SessionLocal
from campus_unite.errors import Forbidden, InvalidTransition, NotFound
from campus_unite.event_store import EventStore
from campus_unite.moderation import TRANSITIONS, ModerationWorkflow, can_transition

STATUSES = ["pending", "approved", "denied"]


@pytest.mark.parametrize("current", STATUSES)
@pytest.mark.parametrize("new", STATUSES)
def test_transition_table_is_exhaustive(current, new):
    allowed = current == "pending" and new in ("approved", "denied")
    assert can_transition(current, new) is allowed
    assert set(TRANSITIONS) == set(STATUSES)


def _pending(helpers):
    store = EventStore(helpers["db"])
    organizer = helpers["make_user"]("organizer")
    return store, store.create(helpers["draft"](), organizer)


def test_approve_records_history(helpers):
    store, event = _pending(helpers)
    reviewer = helpers["make_user"]("reviewer")
    workflow = ModerationWorkflow(helpers["db"], store)

    record = workflow.approve(event.id, reviewer)

    assert record.prior_status == "pending"
    assert record.new_status == "approved"
    assert record.reviewer_id == reviewer.id
    assert record.reason is None
    assert store.get(event.id).status == "approved"
    assert workflow.status_from_history(event.id) == "approved"


def test_deny_keeps_trimmed_reason(helpers):
    store, event = _pending(helpers)
    reviewer = helpers["make_user"]("reviewer")
    workflow = ModerationWorkflow(helpers["db"], store)

    record = workflow.deny(str(event.id), reviewer, "  Duplicate of an existing event  ")

    assert record.new_status == "denied"
    assert record.reason == "Duplicate of an existing event"
    assert store.get(event.id).status == "denied"


@pytest.mark.parametrize("first", ["approve", "deny"])
@pytest.mark.parametrize("second", ["approve", "deny"])
def test_resolved_events_are_terminal(helpers, first, second):
    store, event = _pending(helpers)
    reviewer = helpers["make_user"]("reviewer")
    workflow = ModerationWorkflow(helpers["db"], store)

    getattr(workflow, first)(event.id, reviewer)
    with pytest.raises(InvalidTransition):
        getattr(workflow, second)(event.id, reviewer)

    records = list(workflow.history(event.id, reviewer))
    assert len(records) == 1


def test_only_reviewers_and_admins_moderate(helpers):
    store, event = _pending(helpers)
    organizer = helpers["make_user"]("organizer")
    attendee = helpers["make_user"]("attendee")
    admin = helpers["make_user"]("admin")
    workflow = ModerationWorkflow(helpers["db"], store)

    for caller in (organizer, attendee):
        with pytest.raises(Forbidden):
            workflow.approve(event.id, caller)
        with pytest.raises(Forbidden):
            workflow.history(event.id, caller)
        with pytest.raises(Forbidden):
            workflow.queue(caller)
    assert workflow.approve(event.id, admin).new_status == "approved"


def test_unknown_event_is_not_found(helpers):
    reviewer = helpers["make_user"]("reviewer")
    workflow = ModerationWorkflow(helpers["db"])
    with pytest.raises(NotFound):
        workflow.approve(987654, reviewer)
    with pytest.raises(NotFound):
        workflow.history("not-an-id", reviewer)


def test_history_outlives_deleted_event(helpers):
    store, event = _pending(helpers)
    reviewer = helpers["make_user"]("reviewer")
    admin = helpers["make_user"]("admin")
    event_id = event.id
    workflow = ModerationWorkflow(helpers["db"], store)
    workflow.deny(event_id, reviewer, "Spam")
    store.delete(event_id, admin)

    with pytest.raises(NotFound):
        store.get(event_id)
    records = list(workflow.history(event_id, reviewer))
    assert [r.new_status for r in records] == ["denied"]
    assert [r.reason for r in records] == ["Spam"]
    assert workflow.status_from_history(event_id) == "denied"


def test_pending_event_has_empty_history(helpers):
    store, event = _pending(helpers)
    reviewer = helpers["make_user"]("reviewer")
    workflow = ModerationWorkflow(helpers["db"], store)

    assert list(workflow.history(event.id, reviewer)) == []
    assert workflow.status_from_history(event.id) == "pending"


def test_records_are_append_only(helpers):
    store, event = _pending(helpers)
    reviewer = helpers["make_user"]("reviewer")
    db = helpers["db"]
    ModerationWorkflow(db, store).approve(event.id, reviewer)

    record = db.query(models.ModerationRecord).one()
    record.reason = "rewritten"
    with pytest.raises(RuntimeError):
        db.flush()
    db.rollback()

    record = db.query(models.ModerationRecord).one()
    db.delete(record)
    with pytest.raises(RuntimeError):
        db.flush()
    db.rollback()
    assert db.query(models.ModerationRecord).count() == 1


def test_queue_lists_riskiest_first(helpers):
    store = EventStore(helpers["db"])
    organizer = helpers["make_user"]("organizer")
    reviewer = helpers["make_user"]("reviewer")
    calm = store.create(helpers["draft"](title="Chess club"), organizer)
    risky = store.create(
        helpers["draft"](title="Free money giveaway", description="Urgent: http://bit.ly/abc"),
        organizer,
    )
    approved = store.create(helpers["draft"](title="Already fine"), organizer)
    workflow = ModerationWorkflow(helpers["db"], store)
    workflow.approve(approved.id, reviewer)

    queue = [event.id for event in workflow.queue(reviewer)]
    assert queue == [risky.id, calm.id]


@pytest.mark.parametrize("actions", [("approve", "approve"), ("approve", "deny")])
def test_concurrent_reviewers_resolve_exactly_once(helpers, actions):
    db = helpers["db"]
    store, event = _pending(helpers)
    event_id = event.id
    reviewers = [helpers["make_user"]("reviewer"), helpers["make_user"]("reviewer")]
    db.commit()

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def resolve(action: str, reviewer):
        session = SessionLocal()
        try:
            workflow = ModerationWorkflow(session)
            barrier.wait()
            try:
                if action == "approve":
                    workflow.approve(event_id, reviewer)
                else:
                    workflow.deny(event_id, reviewer, "Not suitable")
                result = action
            except InvalidTransition:
                result = "rejected"
            with lock:
                outcomes.append(result)
        finally:
            session.close()

    threads = [
        threading.Thread(target=resolve, args=(action, reviewer)) for action, reviewer in zip(actions, reviewers)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(outcomes) == 2
    assert outcomes.count("rejected") == 1
    db.expire_all()
    records = db.query(models.ModerationRecord).filter_by(event_id=event_id).all()
    assert len(records) == 1
    winner = next(outcome for outcome in outcomes if outcome != "rejected")
    expected = "approved" if winner == "approve" else "denied"
    assert records[0].new_status == expected
    assert db.query(models.Event).filter_by(id=event_id).one().status == expected


def test_resolution_timestamps_come_from_the_clock(helpers):
    store, event = _pending(helpers)
    reviewer = helpers["make_user"]("reviewer")
    moment = datetime.now(timezone.utc) - timedelta(minutes=5)
    record = ModerationWorkflow(helpers["db"], store, clock=lambda: moment).approve(event.id, reviewer)
    assert record.created_at == moment
