from fastapi.testclient import TestClient

from backend.intelligence.models import SearchHit
from backend.main import app
from backend.routers import intelligence, messages

client = TestClient(app)


def test_health_reports_embedding_provider(monkeypatch):
    from backend.intelligence import embedder

    monkeypatch.setattr(embedder, "load_config", lambda: {"embeddings": {"provider": "fallback"}})

    res = client.get("/health")

    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["embedding_provider"] == "fallback"
    assert body["embedding_status"] == "fallback"


def test_vectorize_wait_returns_run_summary(monkeypatch):
    calls = {}

    async def _fake_run(*, wait_if_busy=False, **kwargs):
        calls.update(kwargs)
        return {"status": "completed", "run_id": "run_x", "processed_chunks": 3, "total_chunks": 3}

    monkeypatch.setattr(intelligence.pipeline, "run_full_pass_singleflight", _fake_run)

    res = client.post("/api/v1/intelligence/vectorize", json={"wait": True, "batch_size": 2})

    assert res.status_code == 200
    assert res.json()["processed_chunks"] == 3
    assert calls == {"batch_size": 2, "batch_delay_seconds": None}


def test_vectorize_without_wait_starts_background_run(monkeypatch):
    async def _fake_start(**kwargs):
        return {"status": "accepted", "run_id": "run_bg"}

    monkeypatch.setattr(intelligence.pipeline, "start_full_pass_in_background", _fake_start)

    res = client.post("/api/v1/intelligence/vectorize")

    assert res.status_code == 200
    assert res.json() == {"status": "accepted", "run_id": "run_bg"}


def test_status_passes_run_id(monkeypatch):
    monkeypatch.setattr(intelligence.pipeline, "get_status", lambda run_id=None: {"run_id": run_id, "status": "processing"})

    res = client.get("/api/v1/intelligence/status", params={"run_id": "run_y"})

    assert res.json() == {"run_id": "run_y", "status": "processing"}


def test_status_failure_maps_to_500(monkeypatch):
    def _boom(run_id=None):
        raise RuntimeError("db offline")

    monkeypatch.setattr(intelligence.pipeline, "get_status", _boom)

    res = client.get("/api/v1/intelligence/status")

    assert res.status_code == 500
    assert res.json()["detail"] == "Failed to read analysis status."


def test_search_route_returns_hits(monkeypatch):
    async def _fake_search(query, top_k=None):
        return [SearchHit(chunk_id="chunk_1_5", score=0.91, metadata={"tags": "dinner"})]

    monkeypatch.setattr(intelligence.chunk_search, "search", _fake_search)

    res = client.post("/api/v1/intelligence/search", json={"query": "dinner", "top_k": 3})

    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 1
    assert body["results"][0]["chunk_id"] == "chunk_1_5"


def test_search_route_rejects_blank_query():
    res = client.post("/api/v1/intelligence/search", json={"query": "  "})

    assert res.status_code == 400


def test_missing_chunk_is_404(monkeypatch):
    monkeypatch.setattr(intelligence.messages, "get_chunk", lambda chunk_id: None)

    res = client.get("/api/v1/intelligence/chunks/chunk_9_9")

    assert res.status_code == 404


def test_message_count_and_csv_import(monkeypatch):
    imported = []

    async def _fake_import(rows):
        imported.extend(rows)
        return {"total": len(rows), "inserted": len(rows), "updated": 0, "skipped": 0, "errors": []}

    monkeypatch.setattr(messages.message_store, "count_eligible_messages", lambda: 42)
    monkeypatch.setattr(messages.message_store, "import_messages", _fake_import)

    assert client.get("/api/v1/messages/count").json() == {"count": 42}

    res = client.post(
        "/api/v1/messages/import/csv",
        json={"csv_data": "date,date-time,sender,message,type,notes\n2025-04-01,2025-04-01 19:00:00,alex,hi,,\n"},
    )

    assert res.status_code == 200
    assert res.json()["inserted"] == 1
    assert imported[0]["message"] == "hi"


def test_empty_json_import_is_rejected():
    res = client.post("/api/v1/messages/import", json={"messages": []})

    assert res.status_code == 400
