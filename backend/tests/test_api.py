from datetime import datetime
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from opinion_map.api.routes.worker import get_pipeline
from opinion_map.core.security import ZoneAccessPolicy, get_access_policy
from opinion_map.main import app
from opinion_map.services.labeling import KeywordLabeler
from opinion_map.services.pipeline import OpinionPipeline
from opinion_map.services.scheduler import get_scheduler
from opinion_map.services.sessions import SessionService, estimate_processing_time

from conftest import RecordingScheduler

START = datetime(2026, 3, 1)
WORKER_HEADERS = {"Authorization": "Bearer test-worker-key"}


def _generate_payload(zone_id, sample_size: int = 200) -> dict:
    return {
        "zone_id": str(zone_id),
        "start_date": "2026-03-01T00:00:00Z",
        "end_date": "2026-03-08T00:00:00Z",
        "sample_size": sample_size,
    }


@pytest.mark.asyncio
async def test_generate_creates_and_enqueues_session(client, zone, seed_posts, scheduler):
    await seed_posts(zone, count=500, start=START, days=7)

    response = await client.post("/opinion-map/generate", json=_generate_payload(zone.id))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "pending"
    assert body["sampled_posts"] == 200
    assert body["total_available"] == 500
    assert body["cache_hit_rate"] == 0.0
    assert body["estimated_time_seconds"] == estimate_processing_time(200, 200)
    assert body["reused_active_session"] is False
    assert [str(session_id) for session_id in scheduler.enqueued] == [body["session_id"]]


@pytest.mark.asyncio
async def test_generate_reuses_active_session_and_enqueues_once(client, zone, seed_posts, scheduler):
    await seed_posts(zone, count=120, start=START, days=7)

    first = await client.post("/opinion-map/generate", json=_generate_payload(zone.id, 50))
    second = await client.post("/opinion-map/generate", json=_generate_payload(zone.id, 80))

    assert first.status_code == second.status_code == 200
    assert second.json()["reused_active_session"] is True
    assert second.json()["session_id"] == first.json()["session_id"]
    assert second.json()["sampled_posts"] == 50
    assert len(scheduler.enqueued) == 1


@pytest.mark.asyncio
async def test_generate_reports_insufficient_posts(client, zone, seed_posts, scheduler):
    await seed_posts(zone, count=9, start=START, days=7)

    response = await client.post("/opinion-map/generate", json=_generate_payload(zone.id))

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["found"] == 9
    assert detail["minimum"] == 10
    assert scheduler.enqueued == []


@pytest.mark.asyncio
async def test_generate_without_posts_is_not_found(client, zone):
    response = await client.post("/opinion-map/generate", json=_generate_payload(zone.id))
    assert response.status_code == 404
    assert response.json()["detail"]["total_available"] == 0


@pytest.mark.asyncio
async def test_generate_unknown_zone(client):
    response = await client.post("/opinion-map/generate", json=_generate_payload(uuid4()))
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"sample_size": 0},
        {"sample_size": 10001},
        {"end_date": "2026-02-01T00:00:00Z"},
        {"zone_id": "not-a-uuid"},
    ],
)
async def test_generate_rejects_invalid_requests(client, zone, seed_posts, overrides):
    await seed_posts(zone, count=20, start=START, days=7)
    payload = {**_generate_payload(zone.id), **overrides}

    response = await client.post("/opinion-map/generate", json=payload)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_generate_rolls_back_when_scheduling_fails(client, zone, seed_posts, scheduler):
    await seed_posts(zone, count=50, start=START, days=7)
    failing = RecordingScheduler(fail=True)
    app.dependency_overrides[get_scheduler] = lambda: failing

    response = await client.post("/opinion-map/generate", json=_generate_payload(zone.id, 30))

    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "queue unavailable"
    latest = await client.get("/opinion-map/latest", params={"zone_id": str(zone.id)})
    assert latest.status_code == 404

    app.dependency_overrides[get_scheduler] = lambda: scheduler
    retry = await client.post("/opinion-map/generate", json=_generate_payload(zone.id, 30))
    assert retry.status_code == 200
    assert retry.json()["reused_active_session"] is False
    assert len(scheduler.enqueued) == 1


@pytest.mark.asyncio
async def test_zone_access_is_enforced(client, zone, seed_posts, scheduler):
    await seed_posts(zone, count=20, start=START, days=7)
    app.dependency_overrides[get_access_policy] = lambda: ZoneAccessPolicy([str(uuid4())])

    response = await client.post("/opinion-map/generate", json=_generate_payload(zone.id, 10))
    latest = await client.get("/opinion-map/latest", params={"zone_id": str(zone.id)})

    assert response.status_code == 403
    assert latest.status_code == 403
    assert scheduler.enqueued == []


@pytest.mark.asyncio
async def test_cancel_pending_session(client, zone, seed_posts):
    await seed_posts(zone, count=40, start=START, days=7)
    created = await client.post("/opinion-map/generate", json=_generate_payload(zone.id, 20))
    session_id = created.json()["session_id"]

    first = await client.post("/opinion-map/cancel", json={"session_id": session_id})
    second = await client.post("/opinion-map/cancel", json={"session_id": session_id})

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["status"] == "cancelled"
    assert second.status_code == 200
    assert second.json()["success"] is False
    assert second.json()["message"] == "Session already cancelled"

    status = await client.get("/opinion-map/status", params={"session_id": session_id})
    assert status.json()["session"]["status"] == "cancelled"

    unknown = await client.post("/opinion-map/cancel", json={"session_id": str(uuid4())})
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_status_of_pending_session_has_no_results(client, zone, seed_posts):
    await seed_posts(zone, count=40, start=START, days=7)
    created = await client.post("/opinion-map/generate", json=_generate_payload(zone.id, 20))
    session_id = created.json()["session_id"]

    response = await client.get("/opinion-map/status", params={"session_id": session_id})

    assert response.status_code == 200
    body = response.json()
    assert body["session"]["status"] == "pending"
    assert body["session"]["progress"] == 0
    assert body["session"]["config"]["actual_sample_size"] == 20
    assert body["projections"] is None
    assert body["clusters"] is None

    timeline = await client.get(f"/opinion-map/sessions/{session_id}/timeline")
    assert timeline.status_code == 400
    deleted = await client.delete(f"/opinion-map/sessions/{session_id}")
    assert deleted.status_code == 400


@pytest.mark.asyncio
async def test_worker_requires_authentication(client, zone, seed_posts):
    response = await client.post("/webhooks/opinion-map-worker", json={"session_id": str(uuid4())})
    wrong = await client.post(
        "/webhooks/opinion-map-worker",
        json={"session_id": str(uuid4())},
        headers={"Authorization": "Bearer nope"},
    )
    assert response.status_code == 401
    assert wrong.status_code == 401

    health = await client.get("/webhooks/opinion-map-worker")
    assert health.status_code == 200


class LockedSessionService(SessionService):
    async def claim(self, db_session, session_id, *, stale_after=None):
        raise OperationalError("UPDATE opinion_sessions", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_worker_reports_database_errors_in_the_body(client, zone, seed_posts, fake_openai):
    await seed_posts(zone, count=60, start=START, days=7)
    generated = await client.post("/opinion-map/generate", json=_generate_payload(zone.id, sample_size=60))
    session_id = generated.json()["session_id"]
    app.dependency_overrides[get_pipeline] = lambda: OpinionPipeline(
        fake_openai, labeler=KeywordLabeler(), session_service=LockedSessionService()
    )

    response = await client.post(
        "/webhooks/opinion-map-worker", json={"session_id": session_id}, headers=WORKER_HEADERS
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["reason"] == "worker_error"
    assert "database is locked" in body["error"]

    status = await client.get("/opinion-map/status", params={"session_id": session_id})
    assert status.json()["session"]["status"] == "pending"


@pytest.mark.asyncio
async def test_generate_run_and_read_results(client, zone, seed_posts):
    await seed_posts(zone, count=500, start=START, days=7)
    created = await client.post("/opinion-map/generate", json=_generate_payload(zone.id))
    session_id = created.json()["session_id"]

    worker = await client.post(
        "/webhooks/opinion-map-worker", json={"session_id": session_id}, headers=WORKER_HEADERS
    )
    assert worker.status_code == 200
    assert worker.json()["success"] is True
    assert worker.json()["status"] == "completed"

    repeat = await client.post(
        "/webhooks/opinion-map-worker", json={"session_id": session_id}, headers=WORKER_HEADERS
    )
    assert repeat.status_code == 200
    assert repeat.json()["skipped"] is True

    status = await client.get("/opinion-map/status", params={"session_id": session_id})
    body = status.json()
    session = body["session"]
    assert session["status"] == "completed"
    assert session["progress"] == 100
    assert [stage["name"] for stage in session["stage_timings"]] == [
        "vectorize",
        "reduce",
        "cluster",
        "persist",
        "label",
    ]
    assert len(body["projections"]) == 200
    assert len(body["clusters"]) == session["cluster_count"]
    for cluster in body["clusters"]:
        assert cluster["label"]
        assert 1 <= len(cluster["keywords"]) <= 8
        assert all(0.0 <= value <= 100.0 for value in cluster["centroid"])
    for point in body["projections"]:
        assert all(0.0 <= value <= 100.0 for value in point["coords_3d"])

    latest = await client.get(
        "/opinion-map/latest", params={"zone_id": str(zone.id), "completed_only": "true"}
    )
    assert latest.status_code == 200
    assert latest.json()["session"]["id"] == session_id

    timeline = await client.get(f"/opinion-map/sessions/{session_id}/timeline")
    assert timeline.status_code == 200
    series = timeline.json()
    assert series["granularity"] == "6hours"
    assert series["clusters"] == list(range(session["cluster_count"]))
    assert len(series["points"]) == 29
    plotted = sum(
        value for point in series["points"] for key, value in point.items() if key.startswith("cluster_")
    )
    assert plotted == 200 - session["outlier_count"]

    cached = await client.post("/opinion-map/generate", json=_generate_payload(zone.id))
    assert cached.json()["cache_hit_rate"] == 1.0
    assert cached.json()["reused_active_session"] is False
    await client.post("/opinion-map/cancel", json={"session_id": cached.json()["session_id"]})

    deleted = await client.delete(f"/opinion-map/sessions/{session_id}")
    assert deleted.status_code == 204
    gone = await client.get("/opinion-map/status", params={"session_id": session_id})
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
