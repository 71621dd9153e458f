import datetime as dt
from urllib.parse import parse_qs, urlparse

import httpx

from strava_cgm.dependencies import get_strava_transport
from strava_cgm.main import app
from strava_cgm.models import ActivityCgmData, StravaToken, User


def _store_activity(db, user, values, activity_id=12345):
    start = dt.datetime(2024, 6, 10, 8, 0)
    points = [
        {"timestamp": (start + dt.timedelta(minutes=5 * i)).isoformat() + "+00:00", "value": v}
        for i, v in enumerate(values)
    ]
    db.add(
        ActivityCgmData(
            user_id=user.id,
            activity_id=activity_id,
            data_points=points,
            start_time=start,
            end_time=start + dt.timedelta(minutes=30),
        )
    )
    db.commit()


# -----------------------------------------------------------------------------
# Supervision
# -----------------------------------------------------------------------------

def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_job_stats_and_detail(client, queue):
    queue.add("777-1", None)

    assert client.get("/api/jobs/stats").json() == {
        "pending": 1,
        "processing": 0,
        "completed": 0,
        "failed": 0,
        "total": 1,
    }
    detail = client.get("/api/jobs/777-1").json()
    assert detail["id"] == "777-1"
    assert detail["status"] == "pending"
    assert detail["attempts"] == 0


def test_unknown_job(client):
    r = client.get("/api/jobs/nope")
    assert r.status_code == 404


# -----------------------------------------------------------------------------
# Utilisateurs
# -----------------------------------------------------------------------------

def test_user_status(client, make_user):
    user = make_user(cgm_provider="dexcom")
    body = client.get(f"/api/users/{user.id}").json()
    assert body["athleteId"] == "777"
    assert body["cgmProvider"] == "dexcom"
    assert body["stravaConnected"] is True


def test_unknown_user(client):
    assert client.get("/api/users/42").status_code == 404
    assert client.get("/api/users/42/settings").status_code == 404


def test_settings_roundtrip(client, make_user):
    user = make_user(unit="mmol/L")

    r = client.post(
        f"/api/users/{user.id}/settings",
        json={"lowThreshold": 80, "highThreshold": 160, "unit": "mgdl", "enableAutoUpdate": False},
    )

    assert r.status_code == 200
    assert r.json()["settings"] == {
        "lowThreshold": 80.0,
        "highThreshold": 160.0,
        "unit": "mg/dL",
        "enableAutoUpdate": False,
    }
    assert client.get(f"/api/users/{user.id}/settings").json()["unit"] == "mg/dL"


def test_settings_partial_update_keeps_other_fields(client, make_user):
    user = make_user(low=75, high=170)
    r = client.post(f"/api/users/{user.id}/settings", json={"enableAutoUpdate": False})
    settings = r.json()["settings"]
    assert settings["lowThreshold"] == 75
    assert settings["highThreshold"] == 170
    assert settings["enableAutoUpdate"] is False


def test_settings_rejects_inverted_thresholds(client, make_user):
    user = make_user()
    r = client.post(f"/api/users/{user.id}/settings", json={"lowThreshold": 200, "highThreshold": 100})
    assert r.status_code == 400


def test_settings_rejects_unknown_unit(client, make_user):
    user = make_user()
    r = client.post(f"/api/users/{user.id}/settings", json={"unit": "grains"})
    assert r.status_code == 400


def test_settings_rejects_non_boolean_auto_update(client, make_user):
    user = make_user(auto_update=True)

    r = client.post(f"/api/users/{user.id}/settings", json={"enableAutoUpdate": "false"})

    assert r.status_code == 400
    assert client.get(f"/api/users/{user.id}/settings").json()["enableAutoUpdate"] is True


def test_disconnect_cgm(client, db, make_user):
    user = make_user()
    client.post("/api/dexcom/credentials", json={"userId": user.id, "username": "dex", "password": "pw"})

    r = client.delete(f"/api/users/{user.id}/cgm")

    assert r.json() == {"success": True, "message": "CGM provider disconnected"}
    assert client.get(f"/api/users/{user.id}").json()["cgmProvider"] is None


# -----------------------------------------------------------------------------
# Rapport d'activité
# -----------------------------------------------------------------------------

def test_activity_detail(client, db, make_user):
    user = make_user(unit="mg/dL")
    _store_activity(db, user, [60, 100, 200])

    body = client.get("/api/activities/12345").json()

    assert body["activityId"] == "12345"
    assert body["startTime"] == "2024-06-10T08:00:00Z"
    assert body["endTime"] == "2024-06-10T08:30:00Z"
    assert body["unit"] == "mg/dL"
    assert [r["value"] for r in body["readings"]] == [60, 100, 200]
    stats = body["stats"]
    assert stats["count"] == 3
    assert stats["average"] == 120
    assert stats["min"] == 60
    assert stats["max"] == 200
    assert stats["timeBelowRange"] == 33
    assert stats["timeInRange"] == 33
    assert stats["timeAboveRange"] == 33


def test_activity_detail_in_mmol(client, db, make_user):
    user = make_user(unit="mmol/L")
    _store_activity(db, user, [90, 180])

    body = client.get("/api/activities/12345", params={"userId": user.id}).json()

    assert body["unit"] == "mmol/L"
    assert [r["value"] for r in body["readings"]] == [5.0, 10.0]


def test_activity_detail_not_found(client, make_user):
    user = make_user()
    assert client.get("/api/activities/999").status_code == 404
    assert client.get("/api/activities/12345", params={"userId": user.id}).status_code == 404


# -----------------------------------------------------------------------------
# OAuth Strava
# -----------------------------------------------------------------------------

def _oauth_transport(status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path != "/oauth/token":
            return httpx.Response(404)
        if status != 200:
            return httpx.Response(status, json={"message": "Bad Request"})
        return httpx.Response(
            200,
            json={
                "access_token": "acc-1",
                "refresh_token": "ref-1",
                "expires_at": 1900000000,
                "athlete": {"id": 4242, "firstname": "Cleo", "lastname": "Climb", "profile_medium": "https://img/x.jpg"},
            },
        )

    return httpx.MockTransport(handler)


def test_auth_strava_redirects_to_strava(client):
    r = client.get("/auth/strava", follow_redirects=False)
    location = r.headers["location"]
    assert location.startswith("https://www.strava.com/oauth/authorize")
    query = parse_qs(urlparse(location).query)
    assert query["client_id"] == ["12345"]
    assert query["scope"] == ["read,activity:read_all,activity:write"]


def test_auth_callback_creates_user(client, db):
    app.dependency_overrides[get_strava_transport] = lambda: _oauth_transport()

    r = client.get("/auth/strava/callback", params={"code": "abc", "scope": "read"}, follow_redirects=False)

    db.expire_all()
    user = db.query(User).filter_by(athlete_id=4242).one()
    assert r.headers["location"] == f"https://cgm.example.com/strava?userId={user.id}&connected=true"
    assert user.first_name == "Cleo"
    assert user.profile_picture == "https://img/x.jpg"
    assert user.settings.unit == "mmol/L"
    token = db.query(StravaToken).filter_by(user_id=user.id).one()
    assert token.access_token == "acc-1"
    assert token.expires_at == 1900000000


def test_auth_callback_updates_existing_user(client, db, make_user):
    app.dependency_overrides[get_strava_transport] = lambda: _oauth_transport()
    existing = make_user(athlete_id=4242)

    client.get("/auth/strava/callback", params={"code": "abc"}, follow_redirects=False)

    db.expire_all()
    assert db.query(User).count() == 1
    assert db.query(StravaToken).filter_by(user_id=existing.id).one().refresh_token == "ref-1"


def test_auth_callback_error_and_failure(client):
    r = client.get("/auth/strava/callback", params={"error": "access_denied"}, follow_redirects=False)
    assert r.headers["location"].endswith("/strava?error=access_denied")

    r = client.get("/auth/strava/callback", follow_redirects=False)
    assert r.headers["location"].endswith("/strava?error=missing_code")

    app.dependency_overrides[get_strava_transport] = lambda: _oauth_transport(status=400)
    r = client.get("/auth/strava/callback", params={"code": "bad"}, follow_redirects=False)
    assert r.headers["location"].endswith("/strava?error=callback_failed")


# -----------------------------------------------------------------------------
# Abonnement webhook
# -----------------------------------------------------------------------------

class FakeSubscriptions:
    def __init__(self, existing=None, status=200):
        self.existing = existing or []
        self.status = status
        self.created = []
        self.deleted = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.status != 200:
            return httpx.Response(self.status, text="boom")
        path = request.url.path
        if path == "/api/v3/push_subscriptions" and request.method == "GET":
            return httpx.Response(200, json=self.existing)
        if path == "/api/v3/push_subscriptions" and request.method == "POST":
            form = parse_qs(request.content.decode("utf-8"))
            self.created.append(form)
            return httpx.Response(201, json={"id": 99})
        if path.startswith("/api/v3/push_subscriptions/") and request.method == "DELETE":
            self.deleted.append(path.rsplit("/", 1)[-1])
            return httpx.Response(204)
        return httpx.Response(404)


def test_subscribe_creates_subscription(client):
    fake = FakeSubscriptions()
    app.dependency_overrides[get_strava_transport] = lambda: httpx.MockTransport(fake.handler)

    r = client.post("/api/strava/subscription")

    assert r.json() == {"message": "Subscription created successfully", "subscription": {"id": 99}}
    form = fake.created[0]
    assert form["callback_url"] == ["https://cgm.example.com/webhooks/strava"]
    assert form["verify_token"] == ["verify-me"]


def test_subscribe_is_idempotent(client):
    fake = FakeSubscriptions(existing=[{"id": 7, "callback_url": "https://cgm.example.com/webhooks/strava"}])
    app.dependency_overrides[get_strava_transport] = lambda: httpx.MockTransport(fake.handler)

    r = client.post("/api/strava/subscription")

    assert r.json()["message"] == "Subscription already exists"
    assert fake.created == []


def test_list_and_delete_subscription(client):
    fake = FakeSubscriptions(existing=[{"id": 7}])
    app.dependency_overrides[get_strava_transport] = lambda: httpx.MockTransport(fake.handler)

    assert client.get("/api/strava/subscription").json() == {"subscriptions": [{"id": 7}]}
    assert client.delete("/api/strava/subscription").status_code == 400

    r = client.delete("/api/strava/subscription", params={"id": 7})
    assert r.json() == {"message": "Subscription deleted successfully"}
    assert fake.deleted == ["7"]


def test_subscription_upstream_error(client):
    fake = FakeSubscriptions(status=500)
    app.dependency_overrides[get_strava_transport] = lambda: httpx.MockTransport(fake.handler)
    assert client.get("/api/strava/subscription").status_code == 502


def test_run_starts_uvicorn_with_settings(monkeypatch):
    from strava_cgm import main
    from strava_cgm.settings import settings

    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(settings, "PORT", 8123)

    main.run()

    assert calls == [
        ("strava_cgm.main:app", {"host": settings.HOST, "port": 8123, "log_level": settings.LOG_LEVEL.lower()})
    ]
