"""
HTTP tests for /schedule/jobs and /health.

Requests go through the real ASGI app (httpx.ASGITransport) with get_db
pointed at the test database.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest

from app.db.session import get_db
from app.main import app
from app.utils.time import utc_now

PRO_HEADERS = {"X-User-Id": "user-1", "X-User-Tier": "pro"}
FREE_HEADERS = {"X-User-Id": "user-1", "X-User-Tier": "free"}
OTHER_USER_HEADERS = {"X-User-Id": "user-2", "X-User-Tier": "premium"}


@asynccontextmanager
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
    finally:
        app.dependency_overrides.pop(get_db, None)


def job_body(days_ahead=2, **overrides):
    body = {
        "runAt": (utc_now() + timedelta(days=days_ahead)).isoformat(),
        "maxAttempts": 3,
        "notes": "launch post",
        "scheduledPost": {
            "title": "Weekend drop",
            "caption": "New set is live",
            "target": "test_community",
            "mediaUrls": ["https://cdn.example.com/a.jpg"],
        },
    }
    body.update(overrides)
    return body


@pytest.mark.server
def test_requests_without_identity_are_rejected(run_db):
    async def scenario(session_maker):
        async with api_client(session_maker) as client:
            return await client.get("/schedule/jobs")

    resp = run_db(scenario)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.server
def test_create_returns_camel_case_job(run_db):
    async def scenario(session_maker):
        async with api_client(session_maker) as client:
            created = await client.post("/schedule/jobs", json=job_body(), headers=PRO_HEADERS)
            job_id = created.json()["job"]["id"]
            fetched = await client.get(f"/schedule/jobs/{job_id}", headers=PRO_HEADERS)
            return created, fetched

    created, fetched = run_db(scenario)

    assert created.status_code == 201
    job = created.json()["job"]
    assert job["status"] == "pending"
    assert job["jobType"] == "publish-post"
    assert job["attempts"] == 0
    assert job["maxAttempts"] == 3
    assert job["retryBackoffSeconds"] == 60
    assert job["lockedAt"] is None
    assert job["lockedBy"] is None
    assert job["attemptHistory"] == []
    assert job["payload"] == {"tier": "pro", "mediaCount": 1, "notes": "launch post"}
    assert job["scheduledPost"]["target"] == "test_community"
    assert job["scheduledPost"]["status"] == "pending"
    assert job["scheduledPost"]["mediaUrls"] == ["https://cdn.example.com/a.jpg"]

    assert fetched.status_code == 200
    assert fetched.json()["job"]["id"] == job["id"]


@pytest.mark.server
def test_create_outside_window_is_forbidden(run_db):
    async def scenario(session_maker):
        async with api_client(session_maker) as client:
            return await client.post("/schedule/jobs", json=job_body(), headers=FREE_HEADERS)

    resp = run_db(scenario)
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "SCHEDULE_WINDOW_VIOLATION"
    assert error["message"] == "Your current plan does not include scheduling access."
    assert error["details"] == {"tier": "free", "maxDays": 0}


@pytest.mark.server
@pytest.mark.parametrize(
    "overrides",
    [
        {"priority": 99},
        {"maxAttempts": 0},
        {"runAt": "not-a-date"},
        {"scheduledPost": {"title": "Hi", "target": "x"}},
        {"scheduledPost": {"title": "Weekend drop", "target": "test_community", "mediaUrls": ["ftp//bad"]}},
    ],
)
def test_invalid_bodies_get_validation_envelope(run_db, overrides):
    async def scenario(session_maker):
        async with api_client(session_maker) as client:
            return await client.post("/schedule/jobs", json=job_body(**overrides), headers=PRO_HEADERS)

    resp = run_db(scenario)
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["message"] == "Invalid request payload"
    assert error["details"]["errors"]


@pytest.mark.server
def test_list_filters_and_limits(run_db):
    async def scenario(session_maker):
        async with api_client(session_maker) as client:
            first = (await client.post("/schedule/jobs", json=job_body(1), headers=PRO_HEADERS)).json()["job"]
            await client.post("/schedule/jobs", json=job_body(2), headers=PRO_HEADERS)
            await client.patch(f"/schedule/jobs/{first['id']}", json={"action": "cancel"}, headers=PRO_HEADERS)

            everything = await client.get("/schedule/jobs", headers=PRO_HEADERS)
            pending = await client.get("/schedule/jobs", params={"status": "pending,bogus"}, headers=PRO_HEADERS)
            limited = await client.get("/schedule/jobs", params={"limit": 1}, headers=PRO_HEADERS)
            other_user = await client.get("/schedule/jobs", headers=OTHER_USER_HEADERS)
            return everything, pending, limited, other_user

    everything, pending, limited, other_user = run_db(scenario)

    assert [job["status"] for job in everything.json()["jobs"]] == ["cancelled", "pending"]
    assert [job["status"] for job in pending.json()["jobs"]] == ["pending"]
    assert len(limited.json()["jobs"]) == 1
    assert other_user.json()["jobs"] == []


@pytest.mark.server
def test_patch_actions_and_conflicts(run_db):
    async def scenario(session_maker):
        async with api_client(session_maker) as client:
            job = (await client.post("/schedule/jobs", json=job_body(), headers=PRO_HEADERS)).json()["job"]
            url = f"/schedule/jobs/{job['id']}"

            too_far = await client.patch(
                url,
                json={"action": "reschedule", "runAt": (utc_now() + timedelta(days=30)).isoformat()},
                headers=PRO_HEADERS,
            )
            forced = await client.patch(url, json={"action": "force-run"}, headers=PRO_HEADERS)
            cancelled = await client.patch(url, json={"action": "cancel", "reason": "typo"}, headers=PRO_HEADERS)
            again = await client.patch(url, json={"action": "cancel"}, headers=PRO_HEADERS)
            bogus = await client.patch(url, json={"action": "claim"}, headers=PRO_HEADERS)
            return too_far, forced, cancelled, again, bogus

    too_far, forced, cancelled, again, bogus = run_db(scenario)

    assert too_far.status_code == 403
    assert forced.status_code == 200
    assert forced.json()["job"]["status"] == "queued"
    assert cancelled.status_code == 200
    assert cancelled.json()["job"]["status"] == "cancelled"
    assert cancelled.json()["job"]["lastError"] == "typo"
    assert cancelled.json()["job"]["payload"]["lastAction"] == "cancel"
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "JOB_CONFLICT"
    assert again.json()["error"]["details"]["status"] == "cancelled"
    assert bogus.status_code == 400


@pytest.mark.server
def test_unknown_and_foreign_jobs_are_not_found(run_db):
    async def scenario(session_maker):
        async with api_client(session_maker) as client:
            job = (await client.post("/schedule/jobs", json=job_body(), headers=PRO_HEADERS)).json()["job"]
            foreign = await client.get(f"/schedule/jobs/{job['id']}", headers=OTHER_USER_HEADERS)
            foreign_patch = await client.patch(
                f"/schedule/jobs/{job['id']}", json={"action": "cancel"}, headers=OTHER_USER_HEADERS
            )
            unknown = await client.get(f"/schedule/jobs/{uuid4()}", headers=PRO_HEADERS)
            return foreign, foreign_patch, unknown

    for resp in run_db(scenario):
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "JOB_NOT_FOUND"


@pytest.mark.server
def test_health_reports_database_and_queue(run_db):
    async def scenario(session_maker):
        async with api_client(session_maker) as client:
            await client.post("/schedule/jobs", json=job_body(), headers=PRO_HEADERS)
            return await client.get("/health")

    resp = run_db(scenario)
    assert resp.status_code == 200
    body = resp.json()
    assert body["api_ok"] is True
    assert body["db_ok"] is True
    assert body["jobs"]["pending"] == 1
    assert body["jobs"]["succeeded"] == 0
