#!/usr/bin/env python3
"""
Seed script for the Campus Unite database.
Creates sample users, events, tags, moderation decisions, RSVPs and bookmarks for local development.

Usage:
    cd backend
    python seed_data.py
"""

import random
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from campus_unite import auth, models
from campus_unite.database import Base, SessionLocal, engine
from campus_unite.domain import UserProfile
from campus_unite.event_store import EventStore, resolve_tags
from campus_unite.moderation import ModerationWorkflow

INTERESTS = [
    "Python", "AI", "Robotics", "Design", "Startup", "Music", "Jazz", "Art",
    "Photography", "Sports", "Football", "Volunteering", "Career", "Chess",
]

ATTENDEES = [
    {"email": "ana@campus.test", "full_name": "Ana Pop", "skills": ["Python", "AI"], "hobbies": ["Jazz"]},
    {"email": "mihai@campus.test", "full_name": "Mihai Ionescu", "skills": ["Design"], "hobbies": ["Photography", "Art"]},
    {"email": "ioana@campus.test", "full_name": "Ioana Radu", "skills": ["Robotics"], "hobbies": ["Football", "Sports"]},
    {"email": "vlad@campus.test", "full_name": "Vlad Marin", "skills": ["Startup", "Career"], "hobbies": ["Chess"]},
    {"email": "elena@campus.test", "full_name": "Elena Stan", "skills": [], "hobbies": ["Music", "Volunteering"]},
]

ORGANIZERS = [
    {"email": "robotics.club@campus.test", "full_name": "Robotics Club"},
    {"email": "student.union@campus.test", "full_name": "Student Union"},
]

REVIEWERS = [{"email": "reviewer@campus.test", "full_name": "Campus Reviewer"}]
ADMINS = [{"email": "admin@campus.test", "full_name": "Campus Admin"}]

SAMPLE_EVENTS = [
    {
        "title": "Workshop: Intro to Python",
        "description": "Variables, loops and functions. Bring a laptop with Python installed.",
        "category": "Workshop",
        "mode": "offline",
        "tags": ["Python", "Career"],
        "capacity": 30,
        "venue": "Lab A101",
    },
    {
        "title": "Build a line-following robot",
        "description": "Hands-on session with sensors and motor drivers.",
        "category": "Workshop",
        "mode": "offline",
        "tags": ["Robotics", "Python", "AI"],
        "capacity": 12,
        "venue": "Maker Space",
    },
    {
        "title": "Jazz night on the terrace",
        "description": "Student bands, open mic after 22:00.",
        "category": "Music",
        "mode": "offline",
        "tags": ["Music", "Jazz"],
        "capacity": 0,
        "venue": "University Terrace",
    },
    {
        "title": "Startup pitch practice",
        "description": "Five minutes on stage, five minutes of questions.",
        "category": "Networking",
        "mode": "hybrid",
        "tags": ["Startup", "Career"],
        "capacity": 40,
        "venue": "Aula Magna",
    },
    {
        "title": "Campus photo walk",
        "description": "Golden hour around the old campus.",
        "category": "Social",
        "mode": "offline",
        "tags": ["Photography", "Art"],
        "capacity": 20,
        "venue": "Main gate",
    },
    {
        "title": "Inter-faculty football cup",
        "description": "Group stage matches all afternoon.",
        "category": "Sports",
        "mode": "offline",
        "tags": ["Football", "Sports"],
        "capacity": 0,
        "venue": "Stadium",
    },
    {
        "title": "FREE crypto giveaway",
        "description": "Guaranteed profit, DM me on telegram: http://bit.ly/free-coins",
        "category": "Social",
        "mode": "online",
        "tags": ["Startup"],
        "capacity": 0,
        "venue": None,
    },
    {
        "title": "Chess simultaneous exhibition",
        "description": "One master, twenty boards.",
        "category": "Social",
        "mode": "offline",
        "tags": ["Chess"],
        "capacity": 20,
        "venue": "Library hall",
    },
]


def clear_database(session):
    """Clear all data from tables"""
    print("🗑️  Clearing existing data...")
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(text(f"DELETE FROM {table.name}"))
    session.commit()


def _make_user(session, data, role, interests=()):
    user = models.User(email=data["email"], full_name=data["full_name"], role=role)
    session.add(user)
    session.flush()
    user.interest_tags = resolve_tags(session, interests)
    return user


def seed_database():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        clear_database(session)

        print("👥 Creating users...")
        attendees = [
            _make_user(session, data, models.UserRole.attendee, [*data["skills"], *data["hobbies"]])
            for data in ATTENDEES
        ]
        organizers = [_make_user(session, data, models.UserRole.organizer) for data in ORGANIZERS]
        reviewers = [_make_user(session, data, models.UserRole.reviewer) for data in REVIEWERS]
        admins = [_make_user(session, data, models.UserRole.admin) for data in ADMINS]
        session.commit()
        profiles = {
            user.email: UserProfile.from_user(user) for user in [*attendees, *organizers, *reviewers, *admins]
        }
        print(f"   Created {len(profiles)} users")

        print("📅 Creating events...")
        store = EventStore(session)
        workflow = ModerationWorkflow(session, store)
        reviewer = profiles[REVIEWERS[0]["email"]]
        now = datetime.now(timezone.utc)
        approved_ids = []
        for i, event_data in enumerate(SAMPLE_EVENTS):
            start_time = (now + timedelta(days=random.randint(1, 20), hours=random.randint(10, 18))).replace(
                minute=0, second=0, microsecond=0
            )
            organizer = profiles[ORGANIZERS[i % len(ORGANIZERS)]["email"]]
            event = store.create(
                {
                    **event_data,
                    "start_time": start_time,
                    "end_time": start_time + timedelta(hours=random.randint(2, 4)),
                    "city": "Cluj-Napoca",
                },
                organizer,
            )
            if event.moderation_score >= 0.5:
                workflow.deny(event.id, reviewer, "Looks like a scam")
            elif i == len(SAMPLE_EVENTS) - 1:
                # Left pending so the review queue is not empty.
                continue
            else:
                workflow.approve(event.id, reviewer)
                approved_ids.append(event.id)
        print(f"   Created {len(SAMPLE_EVENTS)} events, {len(approved_ids)} approved")

        print("📝 Creating RSVPs and bookmarks...")
        rsvp_count = 0
        bookmark_count = 0
        for attendee in attendees:
            for event_id in random.sample(approved_ids, k=min(3, len(approved_ids))):
                store.rsvp(event_id, attendee.id)
                rsvp_count += 1
            for event_id in random.sample(approved_ids, k=min(2, len(approved_ids))):
                store.bookmark(event_id, attendee.id)
                bookmark_count += 1
        print(f"   Created {rsvp_count} RSVPs and {bookmark_count} bookmarks")

        print("\n✅ Database seeding completed successfully!")
        print("\n🔑 Access tokens (valid for the configured expiry):")
        for email, profile in profiles.items():
            token = auth.create_access_token({"sub": str(profile.id), "role": profile.role.value})
            print(f"   {profile.role.value:<9} {email}\n      {token}")

    except Exception as e:
        session.rollback()
        print(f"\n❌ Error during seeding: {e}")
        raise
    finally:
        session.close()


if __name__ == "__main__":
    seed_database()
