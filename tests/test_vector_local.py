"""Tests for the SQLite vector store."""

import sqlite3
from unittest.mock import patch

import pytest

from sitescribe.errors import VectorBackendUnavailableError
from sitescribe.models import PageRecord, Scope, ScopeInfo, VectorRecord
from sitescribe.vector import LocalVectorStore, create_vector_store


def _record(chunk_id, url, vector, content_hash="h", tags=None):
    return VectorRecord(
        id=chunk_id,
        vector=vector,
        metadata={"url": url, "content_hash": content_hash, "tags": tags or [], "title": url},
    )


def _page(url, scope):
    return PageRecord(
        url=url,
        title=f"Title {url}",
        markdown="# Title\n\nBody\n",
        project_id=scope.project_id,
        scope_name=scope.scope_name,
        route_file="src/routes/+page.svelte",
        route_resolution="exact",
        incoming_links=1,
        outgoing_links=2,
        depth=1,
        tags=["docs"],
        indexed_at="2026-01-01T00:00:00Z",
        summary="Title\n\nBody",
    )


@pytest.mark.unit
class TestVectors:
    """Test upsert, query and deletion of chunk vectors."""

    def test_query_orders_by_cosine_similarity(self, store, scope):
        """Test hits come back best first with cosine scores."""
        store.upsert(
            [
                _record("a", "/a", [1.0, 0.0]),
                _record("b", "/b", [0.6, 0.8]),
                _record("c", "/c", [0.0, 1.0]),
            ],
            scope,
        )

        hits = store.query([1.0, 0.0], top_k=2, scope=scope)

        assert [hit.id for hit in hits] == ["a", "b"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[1].score == pytest.approx(0.6)
        assert hits[0].metadata["url"] == "/a"

    def test_ties_break_by_id(self, store, scope):
        """Test equal scores are ordered by chunk id."""
        store.upsert([_record(i, f"/{i}", [1.0, 1.0]) for i in ("z", "m", "a")], scope)
        assert [hit.id for hit in store.query([1.0, 1.0], 10, scope)] == ["a", "m", "z"]

    def test_zero_vector_scores_zero(self, store, scope):
        """Test a zero-norm stored vector scores 0 instead of NaN."""
        store.upsert([_record("zero", "/z", [0.0, 0.0]), _record("one", "/o", [1.0, 0.0])], scope)
        hits = {hit.id: hit.score for hit in store.query([1.0, 0.0], 10, scope)}
        assert hits["zero"] == 0.0

    def test_upsert_replaces(self, store, scope):
        """Test upserting an existing id replaces its vector and hash."""
        store.upsert([_record("a", "/a", [1.0, 0.0], content_hash="old")], scope)
        store.upsert([_record("a", "/a", [0.0, 1.0], content_hash="new")], scope)

        assert store.get_content_hashes(scope) == {"a": "new"}
        assert store.query([0.0, 1.0], 1, scope)[0].score == pytest.approx(1.0)

    def test_path_prefix_filter(self, store, scope):
        """Test path prefixes match the path itself and children, not siblings."""
        store.upsert(
            [
                _record("1", "/docs", [1.0, 0.0]),
                _record("2", "/docs/intro", [1.0, 0.0]),
                _record("3", "/docsify", [1.0, 0.0]),
                _record("4", "/blog", [1.0, 0.0]),
            ],
            scope,
        )

        assert {hit.id for hit in store.query([1.0, 0.0], 10, scope, path_prefix="/docs/")} == {"1", "2"}
        assert len(store.query([1.0, 0.0], 10, scope, path_prefix="/")) == 4

    def test_tags_filter(self, store, scope):
        """Test every requested tag must be present."""
        store.upsert(
            [
                _record("1", "/a", [1.0, 0.0], tags=["docs", "api"]),
                _record("2", "/b", [1.0, 0.0], tags=["docs"]),
            ],
            scope,
        )

        assert [hit.id for hit in store.query([1.0, 0.0], 10, scope, tags=["docs", "api"])] == ["1"]
        assert len(store.query([1.0, 0.0], 10, scope, tags=["docs"])) == 2

    def test_delete_by_ids(self, store, scope):
        """Test deleted ids disappear from hashes and queries."""
        store.upsert([_record("a", "/a", [1.0, 0.0]), _record("b", "/b", [1.0, 0.0])], scope)
        store.delete_by_ids(["a", "missing"], scope)

        assert set(store.get_content_hashes(scope)) == {"b"}

    def test_scopes_are_isolated(self, store, scope):
        """Test the same id in two scopes never collides."""
        other = Scope("test", "preview")
        store.upsert([_record("a", "/a", [1.0, 0.0], content_hash="main")], scope)
        store.upsert([_record("a", "/a", [1.0, 0.0], content_hash="preview")], other)

        assert store.get_content_hashes(scope) == {"a": "main"}
        assert store.get_content_hashes(other) == {"a": "preview"}
        store.delete_by_ids(["a"], other)
        assert store.get_content_hashes(scope) == {"a": "main"}

    def test_mixed_dimensions_rejected(self, store, scope):
        """Test one upsert cannot mix dimensions."""
        with pytest.raises(VectorBackendUnavailableError, match="Mixed"):
            store.upsert([_record("a", "/a", [1.0, 0.0]), _record("b", "/b", [1.0, 0.0, 0.0])], scope)

    def test_stored_dimension_mismatch(self, store, scope):
        """Test vectors must match the dimension already stored for the scope."""
        store.upsert([_record("a", "/a", [1.0, 0.0])], scope)
        with pytest.raises(VectorBackendUnavailableError, match="stored dimension"):
            store.upsert([_record("b", "/b", [1.0, 0.0, 0.0])], scope)
        with pytest.raises(VectorBackendUnavailableError, match="Query vector dimension"):
            store.query([1.0, 0.0, 0.0], 5, scope)

    def test_configured_dimension(self, tmp_path, scope):
        """Test a configured dimension is enforced."""
        store = LocalVectorStore(tmp_path / "v.sqlite", dimension=3)
        with pytest.raises(VectorBackendUnavailableError, match="configured dimension"):
            store.upsert([_record("a", "/a", [1.0, 0.0])], scope)

    def test_empty_scope_query(self, store, scope):
        """Test querying an empty scope returns no hits."""
        assert store.query([1.0, 0.0], 5, scope) == []


@pytest.mark.unit
class TestPagesAndRegistry:
    """Test page records and the scope registry."""

    def test_page_round_trip(self, store, scope):
        """Test page records are stored per scope and replaced wholesale."""
        store.upsert_pages([_page("/docs", scope), _page("/", scope)], scope)

        page = store.get_page("/docs/", scope)
        assert page.title == "Title /docs"
        assert page.tags == ["docs"]
        assert store.get_page("/docs", Scope("test", "preview")) is None

        store.delete_pages(scope)
        assert store.get_page("/docs", scope) is None

    def test_registry(self, store, scope):
        """Test record_scope overwrites and list_scopes filters by project."""
        store.record_scope(ScopeInfo("test", "main", "model-a", "2026-01-01T00:00:00Z", vector_count=3))
        store.record_scope(ScopeInfo("test", "main", "model-b", "2026-01-02T00:00:00Z", vector_count=5))
        store.record_scope(ScopeInfo("test", "preview", "model-b", "2026-01-03T00:00:00Z"))
        store.record_scope(ScopeInfo("other", "main", "model-b", "2026-01-03T00:00:00Z"))

        info = store.get_scope_info(scope)
        assert info.model_id == "model-b"
        assert info.vector_count == 5
        assert store.get_scope_model_id(scope) == "model-b"
        assert [s.scope_name for s in store.list_scopes("test")] == ["main", "preview"]

    def test_delete_scope(self, store, scope):
        """Test delete_scope removes vectors, pages and the registry entry."""
        other = Scope("test", "preview")
        for target in (scope, other):
            store.upsert([_record("a", "/a", [1.0, 0.0])], target)
            store.upsert_pages([_page("/a", target)], target)
            store.record_scope(ScopeInfo("test", target.scope_name, "m", "2026-01-01T00:00:00Z"))

        store.delete_scope(other)

        assert store.get_content_hashes(other) == {}
        assert store.get_page("/a", other) is None
        assert store.get_scope_info(other) is None
        assert store.get_content_hashes(scope) == {"a": "h"}

    def test_health(self, store):
        """Test a readable store reports ok."""
        assert store.health() == {"ok": True}

    def test_create_vector_store(self, default_config):
        """Test the configured path is resolved against root_dir."""
        store = create_vector_store(default_config)
        assert store.path == default_config.root_dir / ".sitescribe" / "vectors.sqlite"
        assert store.path.exists()


@pytest.mark.unit
class TestConnections:
    """Test SQLite connection handling."""

    @pytest.fixture
    def opened(self):
        """Record every connection the store opens."""
        real_connect = sqlite3.connect
        connections = []

        def tracking_connect(*args, **kwargs):
            connection = real_connect(*args, **kwargs)
            connections.append(connection)
            return connection

        with patch("sitescribe.vector.local.sqlite3.connect", side_effect=tracking_connect):
            yield connections

    def test_connections_are_closed(self, store, scope, opened):
        """Test each operation closes its connection when it finishes."""
        store.upsert([_record("a", "/a", [1.0, 0.0])], scope)
        store.get_content_hashes(scope)
        store.health()

        assert len(opened) == 3
        for connection in opened:
            with pytest.raises(sqlite3.ProgrammingError):
                connection.execute("SELECT 1")

    def test_connection_closed_after_error(self, store, scope, opened):
        """Test a failing write still closes its connection and leaves stored vectors intact."""
        store.upsert([_record("a", "/a", [1.0, 0.0])], scope)

        with pytest.raises(VectorBackendUnavailableError):
            store.upsert([_record("b", "/b", [1.0, 0.0, 0.0])], scope)

        assert len(opened) == 2
        with pytest.raises(sqlite3.ProgrammingError):
            opened[1].execute("SELECT 1")
        assert store.get_content_hashes(scope) == {"a": "h"}
