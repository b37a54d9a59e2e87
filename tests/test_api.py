"""Tests for the admin pipeline API."""

import httpx
import pytest
import pytest_asyncio

from quality_pipeline.api.deps import get_database, get_orchestrator
from quality_pipeline.config import settings
from quality_pipeline.dedup.candidate_store import DuplicateCandidateStore
from quality_pipeline.dedup.similarity import SimilarityResult
from quality_pipeline.main import app
from quality_pipeline.worker.orchestrator import PipelineOrchestrator

from factories import StubCoherenceScorer, add_reports, make_report

API_KEY = "test-admin-key"
HEADERS = {"X-Admin-API-Key": API_KEY}


@pytest_asyncio.fixture
async def client(session_factory, monkeypatch):
    """HTTP client against the app with the test database and a lock-free orchestrator."""
    monkeypatch.setattr(settings, "admin_api_key", API_KEY)
    orchestrator = PipelineOrchestrator(
        session_factory=session_factory,
        coherence_scorer=StubCoherenceScorer(),
        lock_manager=None,
        scoring_workers=2,
    )

    async def get_test_database():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_database] = get_test_database
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_requires_admin_key(client):
    response = await client.get("/api/admin/pipeline/stats", headers={"X-Admin-API-Key": "wrong"})
    assert response.status_code == 403

    response = await client.get("/api/admin/pipeline/stats")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_score_batch_runs_in_background_and_is_listed(client, session_factory):
    await add_reports(session_factory, [make_report() for _ in range(5)])

    response = await client.post("/api/admin/pipeline/score-batch", headers=HEADERS, json={"limit": 3})
    assert response.status_code == 200
    run_id = response.json()["run_id"]

    response = await client.get(f"/api/admin/pipeline/runs/{run_id}", headers=HEADERS)
    assert response.status_code == 200
    run = response.json()
    assert run["kind"] == "score-batch"
    assert run["status"] == "completed"
    assert run["reports_processed"] == 3

    response = await client.get("/api/admin/pipeline/runs", headers=HEADERS)
    assert [r["id"] for r in response.json()] == [run_id]


@pytest.mark.asyncio
async def test_score_single_returns_summary(client, session_factory):
    report = make_report()
    await add_reports(session_factory, [report])

    response = await client.post(
        "/api/admin/pipeline/score-single", headers=HEADERS, json={"report_id": report.id}
    )
    assert response.status_code == 200
    assert response.json()["succeeded"] == 1

    response = await client.post(
        "/api/admin/pipeline/score-single", headers=HEADERS, json={"report_id": "missing"}
    )
    assert response.status_code == 404

    response = await client.post("/api/admin/pipeline/score-single", headers=HEADERS, json={})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_operation(client):
    response = await client.post("/api/admin/pipeline/explode", headers=HEADERS)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_check_and_lock_endpoints(client):
    response = await client.post("/api/admin/pipeline/check", headers=HEADERS)
    assert response.status_code == 200
    assert "issues" in response.json()

    response = await client.get("/api/admin/pipeline/lock", headers=HEADERS)
    assert response.json()["enabled"] is False


@pytest.mark.asyncio
async def test_review_candidate(client, session_factory):
    async with session_factory() as db:
        store = DuplicateCandidateStore(db)
        await store.upsert(
            SimilarityResult(
                report_a_id="a",
                report_b_id="b",
                signals={"title": 1.0, "location": 1.0, "date": 1.0, "content": 0.0},
                confidence=0.85,
                confidence_label="likely",
                details="similar titles (100%)",
            )
        )
        await db.commit()

    response = await client.get("/api/admin/pipeline/candidates", headers=HEADERS)
    candidates = response.json()
    assert len(candidates) == 1
    candidate_id = candidates[0]["id"]

    response = await client.post(
        f"/api/admin/pipeline/candidates/{candidate_id}/review",
        headers=HEADERS,
        json={"status": "confirmed", "reviewed_by": "mod-1"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"

    response = await client.post(
        f"/api/admin/pipeline/candidates/{candidate_id}/review",
        headers=HEADERS,
        json={"status": "rejected", "reviewed_by": "mod-2"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_resume_requires_failed_run(client):
    response = await client.post("/api/admin/pipeline/runs/nope/resume", headers=HEADERS)
    assert response.status_code == 404
