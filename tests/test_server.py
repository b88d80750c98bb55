"""Tests for the Flask search endpoint."""

import json
from unittest.mock import patch

import pytest

from sitescribe.models import ScopeInfo
from sitescribe.search import SearchEngine
from sitescribe.server import SearchServer


@pytest.fixture
def engine(search_config, seeded_store, fixed_embeddings):
    return SearchEngine(search_config, fixed_embeddings([1.0, 0.0]), seeded_store)


@pytest.fixture
def client(engine):
    server = SearchServer(engine)
    server.app.config["TESTING"] = True
    return server.app.test_client()


@pytest.mark.unit
class TestSearchServer:
    """Test SearchServer routes and error mapping."""

    def test_server_initialization(self, engine, search_config):
        """Test that server initializes correctly."""
        server = SearchServer(engine)

        assert server.engine is engine
        assert server.config is search_config
        assert server.app is not None

    def test_health_endpoint(self, client):
        """Test health check endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json() == {"ok": True}

    def test_health_endpoint_unavailable(self, client, engine):
        """Test an unhealthy store returns 503."""
        with patch.object(engine.store, "health", return_value={"ok": False, "details": "locked"}):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.get_json()["details"] == "locked"

    def test_post_search(self, client):
        """Test a JSON search request."""
        response = client.post("/api/search", json={"q": "anvil", "top_k": 2})

        assert response.status_code == 200
        data = response.get_json()
        assert data["q"] == "anvil"
        assert [result["url"] for result in data["results"]] == ["/a", "/b"]
        assert "timings_ms" in data["meta"]

    def test_get_search(self, client):
        """Test query string parameters are parsed."""
        response = client.get("/api/search?q=anvil&top_k=1&group_by=chunk&tags=docs&rerank=false")

        assert response.status_code == 200
        results = response.get_json()["results"]
        assert len(results) == 1
        assert results[0]["url"] == "/a"

    def test_get_search_bad_top_k(self, client):
        """Test a non-integer top_k is rejected."""
        response = client.get("/api/search?q=anvil&top_k=ten")

        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "INVALID_REQUEST"

    def test_search_invalid_json(self, client):
        """Test search with invalid JSON."""
        response = client.post("/api/search", data="not valid json", content_type="application/json")

        assert response.status_code == 400
        data = json.loads(response.data)
        assert data["error"]["code"] == "INVALID_REQUEST"
        assert "Invalid JSON" in data["error"]["message"]

    def test_search_empty_query(self, client):
        """Test search with an empty query."""
        response = client.post("/api/search", json={"q": ""})

        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "INVALID_REQUEST"

    def test_search_model_mismatch(self, client, seeded_store):
        """Test a model mismatch maps to 409."""
        seeded_store.record_scope(ScopeInfo("test", "main", "other-model", "2026-01-01T00:00:00Z", vector_count=4))

        response = client.post("/api/search", json={"q": "anvil"})

        assert response.status_code == 409
        assert response.get_json()["error"]["code"] == "EMBEDDING_MODEL_MISMATCH"

    def test_search_unexpected_error(self, client, engine):
        """Test unexpected exceptions become INTERNAL_ERROR."""
        with patch.object(engine, "search", side_effect=RuntimeError("boom")):
            response = client.post("/api/search", json={"q": "anvil"})

        assert response.status_code == 500
        assert response.get_json() == {"error": {"code": "INTERNAL_ERROR", "message": "boom"}}

    def test_custom_search_path(self, engine, search_config):
        """Test the search route follows api.path."""
        search_config.api.path = "/search"
        client = SearchServer(engine).app.test_client()

        assert client.post("/search", json={"q": "anvil"}).status_code == 200
        assert client.post("/api/search", json={"q": "anvil"}).status_code == 404

    def test_cors_headers(self, client):
        """Test CORS is enabled for browser clients."""
        response = client.post("/api/search", json={"q": "anvil"}, headers={"Origin": "https://docs.example.com"})
        assert "Access-Control-Allow-Origin" in response.headers

    def test_get_page(self, client):
        """Test an indexed page is returned with its front matter."""
        response = client.get("/api/page?path=/a")

        assert response.status_code == 200
        data = response.get_json()
        assert data["url"] == "/a"
        assert data["frontmatter"]["route_file"] == "src/routes/+page.svelte"

    def test_get_page_not_found(self, client):
        """Test an unknown page returns 404."""
        response = client.get("/api/page?url=https://docs.example.com/missing")

        assert response.status_code == 404
        assert response.get_json()["error"]["code"] == "INVALID_REQUEST"

    def test_get_page_missing_path(self, client):
        """Test the path parameter is required."""
        response = client.get("/api/page")

        assert response.status_code == 400
        assert "path" in response.get_json()["error"]["message"]
