"""Tests for the HTTP and MCP front-ends."""

import pytest
from fastapi.testclient import TestClient

from librarian.retriever import server
from librarian.retriever.pipeline import GREETING


@pytest.fixture
def client(monkeypatch, librarian, store):
    # Lifespan is not run: the pipeline is wired to in-memory fakes
    monkeypatch.setattr(server, "librarian", librarian)
    monkeypatch.setattr(server, "store", store)
    return TestClient(server.app)


def _frames(body: str):
    return [frame for frame in body.split("\n\n") if frame]


class TestHTTPServer:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["initialized"] is True
        assert data["store_reachable"] is True
        assert data["full_document_available"] is True

    def test_missing_query_is_rejected_before_streaming(self, client, store):
        response = client.post("/librarian", json={"user_id": "user-1"})

        assert response.status_code == 400
        assert response.json() == {"error": "Query is required"}
        assert store.rpc_calls == []

    def test_missing_user_is_rejected(self, client):
        response = client.post("/librarian", json={"query": "Bonjour"})

        assert response.status_code == 400
        assert response.json() == {"error": "user_id is required"}

    def test_invalid_field_is_rejected(self, client):
        response = client.post(
            "/librarian",
            json={"query": "q", "user_id": "u", "generation_mode": "memory"},
        )

        assert response.status_code == 400
        assert "generation_mode" in response.json()["error"]

    def test_invalid_json_is_rejected(self, client):
        response = client.post("/librarian", content=b"{oops", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_streams_events(self, client):
        response = client.post(
            "/librarian",
            json={"query": "Bonjour", "user_id": "user-1", "intent": "conversational"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        frames = _frames(response.text)
        assert frames[0].startswith("event: step")
        assert any(frame.startswith("event: sources") for frame in frames)
        assert frames[-1] == "event: done\ndata: {}"

    def test_not_initialized(self, monkeypatch):
        monkeypatch.setattr(server, "librarian", None)

        response = TestClient(server.app).post("/librarian", json={"query": "q", "user_id": "u"})

        assert response.status_code == 503


class TestMCPServer:
    @pytest.mark.asyncio
    async def test_collect_answer(self, librarian):
        pytest.importorskip("fastmcp")
        from librarian.common.schemas import LibrarianRequest
        from librarian.mcp_server import collect_answer

        result = await collect_answer(
            librarian,
            LibrarianRequest(query="Bonjour", user_id="user-1", intent="conversational"),
        )

        assert result["ok"] is True
        assert result["results"]["answer"].strip() == GREETING
        assert result["results"]["generation_mode"] == "conversational"
        assert result["results"]["sources"] == []

    @pytest.mark.asyncio
    async def test_collect_answer_reports_errors(self, librarian, store):
        pytest.importorskip("fastmcp")
        from librarian.common.schemas import LibrarianRequest
        from librarian.mcp_server import collect_answer

        store.failing.add("match_documents_v13")

        result = await collect_answer(librarian, LibrarianRequest(query="Délai ?", user_id="user-1"))

        assert result == {"ok": False, "error": "Document search failed"}

    def test_import_does_not_load_environment_files(self):
        pytest.importorskip("fastmcp")
        import importlib
        from unittest import mock

        from librarian import mcp_server

        with mock.patch("dotenv.load_dotenv") as load_dotenv:
            importlib.reload(mcp_server)
        importlib.reload(mcp_server)

        load_dotenv.assert_not_called()
        assert callable(mcp_server.main)
