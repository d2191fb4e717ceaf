import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from fastapi.testclient import TestClient
from sqlalchemy import text


if os.environ.get("RUN_INTEGRATION_TESTS") != "1":
    pytest.skip(
        "Integration tests are disabled. Set RUN_INTEGRATION_TESTS=1 to enable.",
        allow_module_level=True,
    )

if not os.environ.get("DATABASE_URL"):
    pytest.skip("DATABASE_URL must be set for integration tests.", allow_module_level=True)

os.environ.setdefault("SECRET_KEY", "integration-test-secret")

from campus_unite import auth, models  # noqa: E402
from campus_unite.api import app  # noqa: E402
from campus_unite.database import Base, SessionLocal, engine, get_db  # noqa: E402
from campus_unite.domain import UserProfile  # noqa: E402


def _run_migrations() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    alembic_ini = backend_root / "alembic.ini"
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(backend_root / "alembic"))
    command.upgrade(config, "head")


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    _run_migrations()
    yield
    Base.metadata.drop_all(bind=engine)
    with engine.begin() as connection:
        connection.execute(text("DROP TABLE IF EXISTS alembic_version"))
        connection.execute(text("DROP TYPE IF EXISTS userrole"))


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        tables = [t.name for t in Base.metadata.sorted_tables]
        if tables:
            db.execute(text(f"TRUNCATE TABLE {', '.join(tables)} RESTART IDENTITY CASCADE"))
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
def helpers(client, db_session):
    def make_user(role: str, email: str) -> UserProfile:
        user = models.User(email=email, role=models.UserRole(role))
        db_session.add(user)
        db_session.commit()
        return UserProfile.from_user(user)

    def auth_header(profile: UserProfile) -> dict:
        token = auth.create_access_token({"sub": str(profile.id), "role": profile.role.value})
        return {"Authorization": f"Bearer {token}"}

    def future_time(days: int = 1) -> datetime:
        return datetime.now(timezone.utc) + timedelta(days=days)

    return {
        "client": client,
        "db": db_session,
        "make_user": make_user,
        "auth_header": auth_header,
        "future_time": future_time,
    }
