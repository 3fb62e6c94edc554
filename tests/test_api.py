import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.dependencies import get_indexer, get_orchestrator, get_quota_gate
from conftest import FakeExtractor, FakeFetcher
from gapminer.batch import (
    BatchJobOrchestrator,
    InlineJobQueue,
    InMemoryRateLimitStore,
    ItemProcessor,
    RateLimiter,
    Resource,
    WhooshFindingIndexer,
)

URLS = ["https://arxiv.org/abs/2404.00001", "https://arxiv.org/abs/2404.00002"]


@pytest.fixture
def indexer(tmp_path):
    return WhooshFindingIndexer(tmp_path / "whoosh")


@pytest.fixture
def orchestrator(repo, gate, indexer):
    processor = ItemProcessor(FakeFetcher(failing=[URLS[1]]), FakeExtractor(), retry_backoff=0)
    return BatchJobOrchestrator(
        repo,
        gate,
        processor,
        queue=InlineJobQueue(),
        indexer=indexer,
        rate_limiter=RateLimiter(InMemoryRateLimitStore(), max_requests=3),
        persist_backoff=0,
    )


@pytest.fixture
def client(orchestrator, gate, indexer):
    app = create_app()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_quota_gate] = lambda: gate
    app.dependency_overrides[get_indexer] = lambda: indexer
    return TestClient(app)


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_create_and_poll_job(client):
    r = client.post("/jobs", json={"owner_id": "owner-1", "items": URLS})
    assert r.status_code == 201
    job = r.json()
    assert job["status"] == "completed"
    assert job["kind"] == "gap_extraction"
    assert job["progress_percent"] == 100
    assert (job["completed_items"], job["failed_items"]) == (2, 1)

    owner = {"owner_id": "owner-1"}
    assert client.get(f"/jobs/{job['id']}", params=owner).json() == job
    items = client.get(f"/jobs/{job['id']}/items", params=owner).json()
    assert [i["status"] for i in items] == ["success", "error"]
    assert items[0]["findings"][0]["category"] == "data"

    listed = client.get("/jobs", params={"owner_id": "owner-1"}).json()
    assert [j["id"] for j in listed] == [job["id"]]


def test_invalid_urls_return_400(client):
    r = client.post("/jobs", json={"owner_id": "owner-1", "items": [URLS[0], "mailto:someone@example.org"]})
    assert r.status_code == 400
    assert r.json()["detail"]["invalid"] == ["mailto:someone@example.org"]


def test_quota_exceeded_returns_402(client, gate):
    gate.record("owner-1", Resource.ITEMS_PROCESSED, 50)
    r = client.post("/jobs", json={"owner_id": "owner-1", "items": URLS[:1]})
    assert r.status_code == 402
    quota = r.json()["detail"]["quota"]
    assert quota["allowed"] is False
    assert quota["remaining"] == 0
    assert quota["upgrade_required"] is True


def test_rate_limit_returns_429(client):
    for _ in range(3):
        assert client.post("/jobs", json={"owner_id": "owner-1", "items": []}).status_code == 201
    r = client.post("/jobs", json={"owner_id": "owner-1", "items": []})
    assert r.status_code == 429
    assert "Retry-After" in r.headers


def test_missing_job_and_foreign_owner(client):
    assert client.get("/jobs/missing", params={"owner_id": "owner-1"}).status_code == 404
    assert client.post("/jobs/missing/cancel", params={"owner_id": "owner-1"}).status_code == 404

    job = client.post("/jobs", json={"owner_id": "owner-1", "items": URLS[:1]}).json()
    assert client.get(f"/jobs/{job['id']}", params={"owner_id": "intruder"}).status_code == 403
    assert client.get(f"/jobs/{job['id']}/items", params={"owner_id": "intruder"}).status_code == 403
    assert client.get(f"/jobs/{job['id']}").status_code == 422
    assert client.post(f"/jobs/{job['id']}/cancel", params={"owner_id": "intruder"}).status_code == 403
    cancelled = client.post(f"/jobs/{job['id']}/cancel", params={"owner_id": "owner-1"}).json()
    assert cancelled["status"] == "completed"


def test_usage_endpoints(client):
    client.post("/jobs", json={"owner_id": "owner-1", "items": URLS})

    usage = client.get("/usage/owner-1").json()
    assert usage["tier"] == "free"
    assert usage["usage"]["items_processed"] == {"current": 2, "limit": "50", "percent": 4}

    quota = client.get("/usage/owner-1/quota", params={"resource": "items_processed", "amount": 48}).json()
    assert quota["allowed"] is True
    assert quota["remaining"] == 0

    history = client.get("/usage/owner-1/history").json()
    assert history[0]["items_processed"] == 2


def test_findings_search(client):
    client.post("/jobs", json={"owner_id": "owner-1", "items": URLS})
    found = client.get("/findings/search", params={"q": "benchmark", "owner_id": "owner-1"}).json()
    assert found["query"] == "benchmark"
    assert [h["url"] for h in found["hits"]] == [URLS[0]]
    assert client.get("/findings/search", params={"q": "benchmark", "owner_id": "owner-2"}).json()["hits"] == []
