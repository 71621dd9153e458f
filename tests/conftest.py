"""Shared fixtures: test settings, in-memory database, API client."""

import base64
import os
import time

# Settings are read at import time: set the environment first.
os.environ["STRAVA_CLIENT_ID"] = "12345"
os.environ["STRAVA_CLIENT_SECRET"] = "test-client-secret"
os.environ["STRAVA_VERIFY_TOKEN"] = "verify-me"
os.environ["STRAVA_ALLOW_UNSIGNED"] = "false"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_BASE_URL"] = "https://cgm.example.com"
os.environ["APP_ENCRYPTION_KEY"] = base64.urlsafe_b64encode(b"k" * 32).decode("ascii")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from strava_cgm.database import Base, SessionLocal, engine, init_db  # noqa: E402
from strava_cgm.job_queue import JobQueue  # noqa: E402
from strava_cgm.main import app  # noqa: E402
from strava_cgm.models import StravaToken, User, UserSettings  # noqa: E402


@pytest.fixture(autouse=True)
def _schema():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(
        athlete_id: int = 777,
        *,
        cgm_provider=None,
        with_token: bool = True,
        expires_at=None,
        unit: str = "mg/dL",
        low: float = 70.0,
        high: float = 180.0,
        auto_update: bool = True,
    ) -> User:
        user = User(athlete_id=athlete_id, first_name="Ana", last_name="Runner", cgm_provider=cgm_provider)
        if with_token:
            user.strava_token = StravaToken(
                access_token="access-ok",
                refresh_token="refresh-ok",
                expires_at=expires_at if expires_at is not None else int(time.time()) + 3600,
            )
        user.settings = UserSettings(
            low_threshold=low, high_threshold=high, unit=unit, enable_auto_update=auto_update
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def queue():
    return JobQueue()


@pytest.fixture
def client(queue):
    app.state.job_queue = queue
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.job_queue = None
