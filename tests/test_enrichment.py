import asyncio
import datetime as dt
from urllib.parse import parse_qs

import httpx
import pytest

from strava_cgm.cgm_common import CGMAuthenticationError, GlucoseReading
from strava_cgm.cgm_service import CGMNotConfiguredError
from strava_cgm.credentials import save_librelink_credentials
from strava_cgm.encryption import EncryptionError, generate_key
from strava_cgm.enrichment import enrich_activity
from strava_cgm.job_queue import JobQueue, JobStatus
from strava_cgm.models import ActivityCgmData, ActivityUpdateLog, LibreLinkUpCredentials, StravaToken
from strava_cgm.settings import settings
from strava_cgm.strava_client import StravaClientError
from strava_cgm.webhook import ActivityJob

UTC = dt.timezone.utc
START = dt.datetime(2024, 6, 10, 8, 0, tzinfo=UTC)


def _readings(*values, step=5):
    return [GlucoseReading(START + dt.timedelta(minutes=i * step), v) for i, v in enumerate(values)]


class FakeCGM:
    def __init__(self, readings=None, error=None):
        self.readings = readings or []
        self.error = error
        self.windows = []

    async def fetch_readings(self, start, end):
        self.windows.append((start, end))
        if self.error:
            raise self.error
        return list(self.readings)


class FakeStrava:
    """Mock de l'API Strava : lecture activité, mise à jour, refresh token."""

    def __init__(self, description="Great ride", get_status=200):
        self.description = description
        self.get_status = get_status
        self.updates = []
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path == "/oauth/token":
            return httpx.Response(
                200,
                json={"access_token": "access-new", "refresh_token": "refresh-new", "expires_at": 4102444800},
            )
        if path == "/api/v3/activities/12345" and request.method == "GET":
            if self.get_status != 200:
                return httpx.Response(self.get_status, text="upstream error")
            return httpx.Response(
                200,
                json={
                    "id": 12345,
                    "start_date": "2024-06-10T08:00:00Z",
                    "elapsed_time": 1800,
                    "description": self.description,
                },
            )
        if path == "/api/v3/activities/12345" and request.method == "PUT":
            form = parse_qs(request.content.decode("utf-8"))
            self.updates.append(form["description"][0])
            return httpx.Response(200, json={"id": 12345})
        return httpx.Response(404)

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


JOB = ActivityJob(activity_id=12345, athlete_id=777)


def _logs(db):
    db.expire_all()
    return db.query(ActivityUpdateLog).order_by(ActivityUpdateLog.id).all()


@pytest.mark.asyncio
async def test_enrich_updates_description_and_stores_data(db, make_user):
    user = make_user(cgm_provider="librelink")
    cgm = FakeCGM(_readings(100, 150, 200, 120))
    strava = FakeStrava()

    status = await enrich_activity(JOB, cgm_factory=lambda u: cgm, strava_transport=strava.transport)

    assert status == "success"
    assert len(strava.updates) == 1
    description = strava.updates[0]
    assert description.startswith("🎯 ")
    assert description.endswith("Great ride")
    assert "https://cgm.example.com/activity/12345" in description

    logs = _logs(db)
    assert [(l.status, l.message, l.cgm_points) for l in logs] == [("success", "Added 4 glucose points", 4)]

    row = db.query(ActivityCgmData).filter_by(user_id=user.id, activity_id=12345).one()
    assert [p["value"] for p in row.data_points] == [100, 150, 200, 120]
    assert row.start_time == dt.datetime(2024, 6, 10, 8, 0)
    assert row.end_time == dt.datetime(2024, 6, 10, 8, 30)


@pytest.mark.asyncio
async def test_enrich_reads_cgm_with_margin(make_user):
    make_user(cgm_provider="dexcom")
    cgm = FakeCGM(_readings(110))

    await enrich_activity(JOB, cgm_factory=lambda u: cgm, strava_transport=FakeStrava().transport)

    assert cgm.windows == [(START - dt.timedelta(minutes=15), START + dt.timedelta(minutes=45))]


@pytest.mark.asyncio
async def test_enrich_replaces_previous_summary(make_user):
    make_user(cgm_provider="librelink")
    old = "🎯 50% in Range  🟩🟩🟩🟩🟩🟨🟨🟨🟨🟨\n🩸 Avg : 150 mg/dL - Min : 90 mg/dL - Max : 210 mg/dL\n\nGreat ride"
    strava = FakeStrava(description=old)

    await enrich_activity(JOB, cgm_factory=lambda u: FakeCGM(_readings(100, 110)), strava_transport=strava.transport)

    description = strava.updates[0]
    assert description.count("🎯") == 1
    assert description.endswith("\n\nGreat ride")


@pytest.mark.asyncio
async def test_reprocessing_upserts_cgm_data(db, make_user):
    user = make_user(cgm_provider="librelink")

    await enrich_activity(JOB, cgm_factory=lambda u: FakeCGM(_readings(100)), strava_transport=FakeStrava().transport)
    await enrich_activity(JOB, cgm_factory=lambda u: FakeCGM(_readings(130, 140)), strava_transport=FakeStrava().transport)

    db.expire_all()
    rows = db.query(ActivityCgmData).filter_by(user_id=user.id).all()
    assert len(rows) == 1
    assert [p["value"] for p in rows[0].data_points] == [130, 140]


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_use(db, make_user):
    user = make_user(cgm_provider="librelink", expires_at=0)
    strava = FakeStrava()

    await enrich_activity(JOB, cgm_factory=lambda u: FakeCGM(_readings(100)), strava_transport=strava.transport)

    assert strava.calls[0].url.path == "/oauth/token"
    get_call = next(c for c in strava.calls if c.method == "GET")
    assert get_call.headers["authorization"] == "Bearer access-new"

    db.expire_all()
    token = db.query(StravaToken).filter_by(user_id=user.id).one()
    assert token.access_token == "access-new"
    assert token.refresh_token == "refresh-new"
    assert token.expires_at == 4102444800


@pytest.mark.asyncio
async def test_unknown_athlete_is_skipped_without_audit(db):
    status = await enrich_activity(JOB, cgm_factory=lambda u: FakeCGM(), strava_transport=FakeStrava().transport)
    assert status == "skipped"
    assert _logs(db) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"cgm_provider": None}, "No CGM configured"),
        ({"cgm_provider": "librelink", "auto_update": False}, "Auto-update disabled"),
        ({"cgm_provider": "librelink", "with_token": False}, "No Strava token"),
    ],
)
async def test_preconditions_skip(db, make_user, kwargs, message):
    make_user(**kwargs)
    strava = FakeStrava()

    status = await enrich_activity(JOB, cgm_factory=lambda u: FakeCGM(_readings(100)), strava_transport=strava.transport)

    assert status == "skipped"
    assert strava.calls == []
    assert [(l.status, l.message) for l in _logs(db)] == [("skipped", message)]


@pytest.mark.asyncio
async def test_no_readings_is_skipped_and_description_untouched(db, make_user):
    make_user(cgm_provider="dexcom")
    strava = FakeStrava()

    status = await enrich_activity(JOB, cgm_factory=lambda u: FakeCGM([]), strava_transport=strava.transport)

    assert status == "skipped"
    assert strava.updates == []
    assert [(l.status, l.message) for l in _logs(db)] == [("skipped", "No glucose data available")]
    assert db.query(ActivityCgmData).count() == 0


@pytest.mark.asyncio
async def test_strava_error_is_audited_and_raised(db, make_user):
    make_user(cgm_provider="librelink")
    strava = FakeStrava(get_status=500)

    with pytest.raises(StravaClientError):
        await enrich_activity(JOB, cgm_factory=lambda u: FakeCGM(_readings(100)), strava_transport=strava.transport)

    logs = _logs(db)
    assert len(logs) == 1
    assert logs[0].status == "error"
    assert "500" in logs[0].message


@pytest.mark.asyncio
async def test_cgm_auth_error_is_not_retryable(db, make_user):
    make_user(cgm_provider="librelink")
    cgm = FakeCGM(error=CGMAuthenticationError("Invalid credentials"))

    with pytest.raises(CGMAuthenticationError) as exc:
        await enrich_activity(JOB, cgm_factory=lambda u: cgm, strava_transport=FakeStrava().transport)

    assert exc.value.retryable is False
    assert [(l.status, l.message) for l in _logs(db)] == [("error", "Invalid credentials")]


@pytest.mark.asyncio
async def test_wrong_encryption_key_fails_without_retry(db, make_user, monkeypatch):
    user = make_user()
    save_librelink_credentials(db, user, "a@b.c", "pw")
    monkeypatch.setattr(settings, "APP_ENCRYPTION_KEY", generate_key())
    strava = FakeStrava()

    queue = JobQueue(
        lambda job: enrich_activity(job, strava_transport=strava.transport),
        max_attempts=3,
        retry_delay=0.01,
    )
    try:
        queue.add("777-12345", JOB)
        await asyncio.wait_for(queue.join(), 2.0)

        job = queue.get_job("777-12345")
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert "decrypt" in job.last_error
    finally:
        await queue.close()

    assert strava.updates == []
    assert [l.status for l in _logs(db)] == ["error"]


@pytest.mark.asyncio
async def test_unknown_stored_region_is_a_configuration_error(db, make_user):
    user = make_user()
    save_librelink_credentials(db, user, "a@b.c", "pw")
    creds = db.query(LibreLinkUpCredentials).one()
    creds.region = "MARS"
    db.commit()

    with pytest.raises(CGMNotConfiguredError) as exc:
        await enrich_activity(JOB, strava_transport=FakeStrava().transport)

    assert exc.value.retryable is False


def test_encryption_error_is_not_retryable():
    assert EncryptionError.retryable is False
