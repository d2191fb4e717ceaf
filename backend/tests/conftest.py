import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("LOG_JSON", "false")

from campus_unite import auth, models
from campus_unite.api import app
from campus_unite.database import Base, SessionLocal, engine, get_db
from campus_unite.domain import UserProfile
from campus_unite.event_store import resolve_tags


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def helpers(db_session):
    counter = {"n": 0}

    def make_user(role: str = "attendee", interests=(), email: str | None = None) -> UserProfile:
        counter["n"] += 1
        user = models.User(
            email=email or f"{role}{counter['n']}@campus.test",
            full_name=f"{role.title()} {counter['n']}",
            role=models.UserRole(role),
        )
        db_session.add(user)
        db_session.flush()
        user.interest_tags = resolve_tags(db_session, interests)
        db_session.commit()
        return UserProfile.from_user(user)

    def token_for(profile: UserProfile) -> str:
        return auth.create_access_token({"sub": str(profile.id), "role": profile.role.value})

    def auth_header(profile: UserProfile) -> dict:
        return {"Authorization": f"Bearer {token_for(profile)}"}

    def future_time(days: float = 1, hours: float = 0) -> datetime:
        return datetime.now(timezone.utc) + timedelta(days=days, hours=hours)

    def draft(**overrides) -> dict:
        start = overrides.pop("start_time", None) or future_time(days=3)
        payload = {
            "title": "Robotics Workshop",
            "description": "Build a line follower in an afternoon.",
            "category": "Workshop",
            "mode": "offline",
            "tags": ["Robotics", "Python"],
            "start_time": start,
            "end_time": start + timedelta(hours=2),
            "venue": "Lab 2",
            "city": "Cluj",
            "capacity": 0,
        }
        payload.update(overrides)
        return payload

    def json_draft(**overrides) -> dict:
        payload = draft(**overrides)
        for key in ("start_time", "end_time"):
            if isinstance(payload.get(key), datetime):
                payload[key] = payload[key].isoformat()
        return payload

    return {
        "db": db_session,
        "make_user": make_user,
        "token_for": token_for,
        "auth_header": auth_header,
        "future_time": future_time,
        "draft": draft,
        "json_draft": json_draft,
    }
