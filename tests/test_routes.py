"""Tests for the job queue HTTP API."""
import time

import pytest
from fastapi.testclient import TestClient

from mediaqueue.config import Settings, get_settings
from mediaqueue.main import create_app
from mediaqueue.schemas.job import JobStatus, JobType
from mediaqueue.services.clock import ManualClock
from mediaqueue.services.handlers import HandlerRegistry
from mediaqueue.services.snapshot_store import MemorySnapshotStore


def make_settings(**overrides):
    options = {"queue_store": "memory", "processor_enabled": False}
    options.update(overrides)
    return Settings(_env_file=None, **options)


@pytest.fixture
def memory_store():
    return MemorySnapshotStore(clock=ManualClock())


@pytest.fixture
def client(memory_store):
    app = create_app(make_settings(), registry=HandlerRegistry(), store=memory_store)
    with TestClient(app) as test_client:
        yield test_client


def enqueue(client, job_type="audio-generate", **body):
    body.setdefault("params", {"prompt": "epic battle theme"})
    resp = client.post(f"/api/jobs/{job_type}", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["job"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_correlation_id_is_echoed(client):
    resp = client.get("/health", headers={"X-Correlation-ID": "abc-123"})
    assert resp.headers["X-Correlation-ID"] == "abc-123"
    assert client.get("/health").headers["X-Correlation-ID"]


def test_enqueue_job(client):
    job = enqueue(client, priority=7, maxRetries=1)
    assert job["type"] == "audio-generate"
    assert job["status"] == "pending"
    assert job["progress"] == 0
    assert job["priority"] == 7
    assert job["retryCount"] == 0
    assert job["maxRetries"] == 1
    assert job["params"] == {"prompt": "epic battle theme"}


def test_enqueue_every_type(client):
    for job_type in JobType:
        assert enqueue(client, job_type.value, params={})["type"] == job_type.value


def test_enqueue_validation(client):
    assert client.post("/api/jobs/video-generate", json={"params": {}}).status_code == 422
    assert client.post("/api/jobs/audio-generate", json={"params": {}, "maxRetries": 50}).status_code == 422


def test_list_and_filter(client):
    audio = enqueue(client)
    tweet = enqueue(client, "tweet-generate", params={"topic": "launch"})
    client.post(f"/api/jobs/{tweet['id']}/cancel")

    all_jobs = client.get("/api/jobs").json()["jobs"]
    assert {job["id"] for job in all_jobs} == {audio["id"], tweet["id"]}

    audio_only = client.get("/api/jobs", params={"type": "audio-generate"}).json()["jobs"]
    assert [job["id"] for job in audio_only] == [audio["id"]]

    cancelled = client.get("/api/jobs", params={"status": "cancelled"}).json()["jobs"]
    assert [job["id"] for job in cancelled] == [tweet["id"]]

    assert client.get("/api/jobs", params={"status": "paused"}).status_code == 422


def test_get_job(client):
    job = enqueue(client)
    resp = client.get(f"/api/jobs/{job['id']}")
    assert resp.status_code == 200
    assert resp.json()["job"] == job


def test_unknown_job_returns_404(client):
    for method, path in (
        ("get", "/api/jobs/missing"),
        ("post", "/api/jobs/missing/retry"),
        ("post", "/api/jobs/missing/cancel"),
        ("delete", "/api/jobs/missing"),
    ):
        resp = getattr(client, method)(path)
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Job not found"}
    assert client.patch("/api/jobs/missing/priority", json={"priority": 3}).status_code == 404


def test_cancel_and_retry(client):
    job = enqueue(client)

    cancelled = client.post(f"/api/jobs/{job['id']}/cancel").json()
    assert cancelled["cancelled"] is True
    assert cancelled["job"]["status"] == "cancelled"

    retried = client.post(f"/api/jobs/{job['id']}/retry").json()
    assert retried["retried"] is True
    assert retried["job"]["status"] == "pending"
    assert retried["job"]["retryCount"] == 1

    again = client.post(f"/api/jobs/{job['id']}/retry").json()
    assert again["retried"] is False
    assert again["job"]["retryCount"] == 1


def test_set_priority_clamps(client):
    job = enqueue(client)
    resp = client.patch(f"/api/jobs/{job['id']}/priority", json={"priority": 99})
    assert resp.status_code == 200
    assert resp.json()["job"]["priority"] == 10


def test_delete_job(client):
    job = enqueue(client)
    assert client.delete(f"/api/jobs/{job['id']}").json() == {"success": True}
    assert client.get(f"/api/jobs/{job['id']}").status_code == 404


def test_bulk_clear(client):
    queue = client.app.state.queue
    done = enqueue(client)
    failed = enqueue(client)
    enqueue(client)
    for job_id, terminal in ((done["id"], JobStatus.COMPLETED), (failed["id"], JobStatus.FAILED)):
        queue.update_job(job_id, status=JobStatus.PROCESSING)
        queue.update_job(job_id, status=terminal)

    assert client.delete("/api/jobs/completed").json()["removed"] == 1
    assert client.delete("/api/jobs/failed").json()["removed"] == 1
    assert client.delete("/api/jobs").json()["removed"] == 1
    assert client.get("/api/jobs").json()["jobs"] == []


def test_stats_and_metrics(client):
    enqueue(client)
    enqueue(client, "image-generate")

    stats = client.get("/api/jobs/stats").json()["stats"]
    assert stats["total"] == 2
    assert stats["pending"] == 2
    assert stats["byType"]["image-generate"] == 1

    metrics = client.get("/api/jobs/metrics").json()
    assert metrics["success"] is True
    assert metrics["inFlight"] == []
    assert "counters" in metrics["metrics"]


def test_event_stream_rejects_unknown_type(client):
    assert client.get("/api/jobs/events", params={"type": "job:exploded"}).status_code == 422


def test_stale_jobs_recovered_at_startup(memory_store):
    queue_app = create_app(make_settings(), registry=HandlerRegistry(), store=memory_store)
    with TestClient(queue_app) as first:
        job = enqueue(first)
        first.app.state.queue.update_job(job["id"], status=JobStatus.PROCESSING)

    restarted = create_app(make_settings(stale_processing_policy="fail"), registry=HandlerRegistry(), store=memory_store)
    with TestClient(restarted) as second:
        stored = second.get(f"/api/jobs/{job['id']}").json()["job"]
    assert stored["status"] == "failed"
    assert stored["error"] == "Interrupted before completion"


def test_processor_runs_in_lifespan(memory_store):
    registry = HandlerRegistry()

    async def generate(params):
        return {"text": params["topic"].upper()}

    registry.register(JobType.TWEET_GENERATE, generate)
    settings = make_settings(processor_enabled=True, poll_interval_seconds=0.01)
    app = create_app(settings, registry=registry, store=memory_store)

    with TestClient(app) as client:
        job = enqueue(client, "tweet-generate", params={"topic": "launch"})
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            current = client.get(f"/api/jobs/{job['id']}").json()["job"]
            if current["status"] == "completed":
                break
            time.sleep(0.02)

    assert current["status"] == "completed"
    assert current["result"] == {"text": "LAUNCH"}


def test_enqueue_rate_limit(client, monkeypatch):
    monkeypatch.setenv("MEDIAQUEUE_ENQUEUE_RATE_LIMIT", "2/minute")
    get_settings.cache_clear()
    try:
        enqueue(client)
        enqueue(client)
        resp = client.post("/api/jobs/audio-generate", json={"params": {}})
        assert resp.status_code == 429
    finally:
        monkeypatch.delenv("MEDIAQUEUE_ENQUEUE_RATE_LIMIT")
        get_settings.cache_clear()
