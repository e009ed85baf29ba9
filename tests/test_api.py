from __future__ import annotations

import asyncio

from fake_sources import FakeAdapter, FakeFactory, MoviesOnlyAdapter, movie
from fastapi import FastAPI
from fastapi.testclient import TestClient

from mediasync.database import Database
from mediasync.main import register_routes
from mediasync.services.orchestrator import SyncOrchestrator


def _client(database_url: str, *factories: FakeFactory) -> TestClient:
    database = Database(database_url)

    async def prepare() -> None:
        await database.create_all()
        # Drop pooled connections bound to this event loop.
        await database.dispose()

    asyncio.run(prepare())
    app = FastAPI()
    register_routes(app)
    app.state.orchestrator = SyncOrchestrator(
        database.session_factory,
        {factory.source_type: factory for factory in factories},
    )
    return TestClient(app)


def test_health(database_url) -> None:
    with _client(database_url) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_manual_sync_then_fetch_job(database_url) -> None:
    adapter = FakeAdapter(1, movies=[movie(1, "42", "Arrival", 2016)])

    with _client(database_url, FakeFactory("fake", {1: adapter})) as client:
        response = client.post(
            "/api/sync/manual", json={"user_id": 1, "source_id": 1, "media_type": "movie"}
        )
        assert response.status_code == 200
        job = response.json()
        fetched = client.get(f"/api/jobs/{job['id']}")

    assert job["status"] == "completed"
    assert job["job_name"] == "system.media.sync.movies"
    assert fetched.status_code == 200
    assert fetched.json()["processed_items"] == 1


def test_sync_errors_map_to_status_codes(database_url) -> None:
    factory = FakeFactory("movies-only", {1: MoviesOnlyAdapter(1)})

    with _client(database_url, factory) as client:
        unsupported = client.post(
            "/api/sync/manual", json={"user_id": 1, "source_id": 1, "media_type": "podcasts"}
        )
        missing = client.post(
            "/api/sync/manual", json={"user_id": 1, "source_id": 8, "media_type": "movies"}
        )
        incapable = client.post(
            "/api/sync/manual", json={"user_id": 1, "source_id": 1, "media_type": "series"}
        )
        invalid = client.post(
            "/api/sync/manual", json={"user_id": 0, "source_id": 1, "media_type": "movies"}
        )

    assert unsupported.status_code == 400
    assert unsupported.json()["detail"]["message"] == "unsupported media type: podcasts"
    assert unsupported.json()["detail"]["job_run_id"] is not None
    assert missing.status_code == 404
    assert incapable.status_code == 422
    assert invalid.status_code == 400


def test_unknown_job_is_404(database_url) -> None:
    with _client(database_url) as client:
        response = client.get("/api/jobs/123")

    assert response.status_code == 404


def test_due_and_full_endpoints(database_url) -> None:
    with _client(database_url, FakeFactory("fake", {})) as client:
        due = client.post("/api/sync/due")
        full = client.post("/api/sync/full", json={"user_id": 1})

    assert due.status_code == 200
    assert due.json() == {"job_runs": []}
    assert full.status_code == 200
    assert full.json()["status"] == "failed"
    assert full.json()["error_message"] == "No media sources found for user"
