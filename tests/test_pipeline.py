"""Tests for the indexing pipeline."""

import shutil

import pytest
import yaml

from sitescribe.config import ContentFilesConfig, SiteScribeConfig, SourceConfig
from sitescribe.errors import EmbeddingModelMismatchError, RouteMappingFailedError, VectorBackendUnavailableError
from sitescribe.indexing.pipeline import IndexPipeline, build_page_summary, compute_incoming_links, diff_chunks
from sitescribe.models import Chunk, ExtractedPage, IndexOptions, ScopeInfo
from sitescribe.scope import resolve_scope


def _chunk(key, content_hash):
    return Chunk(
        chunk_key=key,
        ordinal=0,
        url="/a",
        path="/a",
        title="A",
        section_title="",
        heading_path=[],
        chunk_text="text",
        snippet="text",
        depth=1,
        incoming_links=0,
        route_file="src/routes/+page.svelte",
        tags=[],
        content_hash=content_hash,
    )


@pytest.fixture
def pipeline(site_config, store, fake_embeddings):
    return IndexPipeline(site_config, fake_embeddings, store)


@pytest.mark.unit
class TestHelpers:
    """Test the pure helpers used by the pipeline."""

    def test_incoming_links(self):
        """Test each linking page counts once and outside or self links are ignored."""
        pages = [
            ExtractedPage("/", "Home", "x", outgoing_links=["/docs", "/docs", "/missing", "/"]),
            ExtractedPage("/docs", "Docs", "x", outgoing_links=["/"]),
            ExtractedPage("/blog", "Blog", "x", outgoing_links=["/docs"]),
        ]
        assert compute_incoming_links(pages) == {"/": 1, "/docs": 2, "/blog": 0}

    def test_diff_chunks(self):
        """Test changed, unchanged and deleted chunks are separated."""
        chunks = [_chunk("same", "h1"), _chunk("changed", "new"), _chunk("added", "h3")]
        existing = {"same": "h1", "changed": "old", "gone-b": "x", "gone-a": "y"}

        changed, deletes = diff_chunks(chunks, existing)

        assert [c.chunk_key for c in changed] == ["changed", "added"]
        assert deletes == ["gone-a", "gone-b"]

    def test_diff_chunks_force(self):
        """Test force re-embeds everything but still deletes stale keys."""
        changed, deletes = diff_chunks([_chunk("same", "h1")], {"same": "h1", "gone": "x"}, force=True)
        assert [c.chunk_key for c in changed] == ["same"]
        assert deletes == ["gone"]

    def test_page_summary(self, make_mirror_page):
        """Test summaries strip markup and respect the length limit."""
        page = make_mirror_page(
            "# Guide\n\nUse **bold** [links](/x).\n\n```\ncode\n```\n", description="Desc", keywords=["a", "b"]
        )
        assert build_page_summary(page) == "Guide\n\nDesc\n\na, b\n\nGuide Use bold links."
        assert len(build_page_summary(page, max_chars=10)) <= 10


@pytest.mark.integration
class TestIndexPipeline:
    """Test full indexing runs against the sample site."""

    def test_first_run(self, pipeline, store, site_config, fake_embeddings):
        """Test every page is indexed and every chunk embedded on the first run."""
        stats = pipeline.run()

        assert stats.pages_processed == 4
        assert stats.chunks_total > 4
        assert stats.chunks_changed == stats.chunks_total
        assert stats.new_embeddings == stats.chunks_total
        assert stats.deletes == 0
        assert stats.route_exact == 4
        assert stats.route_best_effort == 0
        assert fake_embeddings.texts_embedded == stats.chunks_total
        for stage in ("source", "route_build", "extract", "links", "pages", "chunk", "embed", "sync", "finalize", "total"):
            assert stage in stats.stage_timings_ms

        scope = resolve_scope(site_config)
        assert len(store.get_content_hashes(scope)) == stats.chunks_total
        info = store.get_scope_info(scope)
        assert info.model_id == "text-embedding-3-small"
        assert info.vector_count == stats.chunks_total

    def test_second_run_is_a_no_op(self, pipeline, fake_embeddings):
        """Test re-indexing unchanged content embeds nothing."""
        pipeline.run()
        calls_after_first = len(fake_embeddings.calls)

        stats = pipeline.run()

        assert stats.chunks_changed == 0
        assert stats.new_embeddings == 0
        assert stats.deletes == 0
        assert stats.estimated_tokens == 0
        assert len(fake_embeddings.calls) == calls_after_first

    def test_edit_reembeds_only_changed_chunks(self, pipeline, site_dir):
        """Test editing one section re-embeds just that chunk."""
        pipeline.run()
        page = site_dir / "build/docs/getting-started.html"
        page.write_text(page.read_text().replace("editing anvil.toml", "editing anvil.yaml"))

        stats = pipeline.run()

        assert stats.chunks_changed == 1
        assert stats.deletes == 0

    def test_removed_page_is_deleted(self, pipeline, store, site_config, site_dir):
        """Test chunks of a removed page are deleted, including on forced runs."""
        pipeline.run()
        scope = resolve_scope(site_config)
        blog_keys = {
            hit.id for hit in store.query([1.0] * 64, 100, scope, path_prefix="/blog")
        }
        assert blog_keys

        (site_dir / "build/blog/hello.html").unlink()
        stats = pipeline.run(IndexOptions(force=True))

        assert stats.deletes == len(blog_keys)
        assert stats.chunks_changed == stats.chunks_total
        assert not blog_keys & set(store.get_content_hashes(scope))
        assert store.get_page("/blog/hello", scope) is None

    def test_model_mismatch_blocks_before_embedding(self, site_config, store, fake_embeddings):
        """Test a scope indexed with another model fails before any embedding call."""
        scope = resolve_scope(site_config)
        store.record_scope(ScopeInfo("test", scope.scope_name, "old-model", "2026-01-01T00:00:00Z", vector_count=3))

        with pytest.raises(EmbeddingModelMismatchError, match="old-model"):
            IndexPipeline(site_config, fake_embeddings, store).run()

        assert fake_embeddings.calls == []

    def test_force_overrides_model_mismatch(self, site_config, store, fake_embeddings):
        """Test --force re-indexes a scope recorded with another model."""
        scope = resolve_scope(site_config)
        store.record_scope(ScopeInfo("test", scope.scope_name, "old-model", "2026-01-01T00:00:00Z", vector_count=3))

        IndexPipeline(site_config, fake_embeddings, store).run(IndexOptions(force=True))

        assert store.get_scope_model_id(scope) == "text-embedding-3-small"

    def test_force_reindex_with_new_dimension(self, site_config, store, fixed_embeddings):
        """Test --force replaces a scope indexed by a model with another vector dimension."""
        scope = resolve_scope(site_config)
        site_config.embeddings.model = "small-model"
        IndexPipeline(site_config, fixed_embeddings([1.0] * 8, model_id="small-model"), store).run()

        site_config.embeddings.model = "large-model"
        stats = IndexPipeline(site_config, fixed_embeddings([1.0] * 16, model_id="large-model"), store).run(
            IndexOptions(force=True)
        )

        assert store.get_scope_model_id(scope) == "large-model"
        assert len(store.get_content_hashes(scope)) == stats.chunks_total
        hits = store.query([1.0] * 16, 100, scope)
        assert len(hits) == stats.chunks_total
        assert all(hit.metadata["model_id"] == "large-model" for hit in hits)

    def test_failed_upsert_keeps_pages(self, site_config, store, fixed_embeddings, site_dir):
        """Test page records are left untouched when storing vectors fails."""
        scope = resolve_scope(site_config)
        IndexPipeline(site_config, fixed_embeddings([1.0] * 8), store).run()

        (site_dir / "build/blog/hello.html").unlink()
        with pytest.raises(VectorBackendUnavailableError, match="stored dimension"):
            IndexPipeline(site_config, fixed_embeddings([1.0] * 16), store).run(IndexOptions(force=True))

        assert store.get_page("/blog/hello", scope) is not None
        assert store.query([1.0] * 8, 100, scope, path_prefix="/blog")

    def test_dry_run(self, site_config, store, fake_embeddings):
        """Test a dry run estimates cost without embedding or writing."""
        site_config.embeddings.price_per_1k_tokens = 0.02
        site_config.state.write_mirror = True

        stats = IndexPipeline(site_config, fake_embeddings, store).run(IndexOptions(dry_run=True))

        scope = resolve_scope(site_config)
        assert stats.chunks_changed == stats.chunks_total > 0
        assert stats.estimated_tokens > 0
        assert stats.estimated_cost_usd == pytest.approx(stats.estimated_tokens / 1000 * 0.02, abs=1e-6)
        assert stats.new_embeddings == 0
        assert fake_embeddings.calls == []
        assert store.get_content_hashes(scope) == {}
        assert store.get_scope_info(scope) is None
        assert not site_config.state_dir.exists()

    def test_registry_desync_reembeds_everything(self, pipeline, store, site_config):
        """Test a registry reporting zero vectors while hashes exist forces a full re-embed."""
        first = pipeline.run()
        scope = resolve_scope(site_config)
        store.record_scope(ScopeInfo("test", scope.scope_name, "text-embedding-3-small", "2026-01-01T00:00:00Z", 0))

        stats = pipeline.run()

        assert stats.chunks_changed == first.chunks_total

    def test_links_and_page_records(self, pipeline, store, site_config):
        """Test page records carry the link graph and route data."""
        pipeline.run()
        scope = resolve_scope(site_config)

        guide = store.get_page("/docs/getting-started", scope)
        assert guide.incoming_links == 3
        assert guide.route_file == "src/routes/docs/[slug]/+page.svelte"
        assert guide.route_resolution == "exact"
        assert guide.depth == 2
        assert guide.tags == ["docs"]
        assert guide.description == "Install the anvil toolkit"
        assert guide.summary.startswith("Getting Started | Acme")

        home = store.get_page("/", scope)
        assert home.outgoing_links == 2
        assert home.tags == []

    def test_exclude_patterns(self, pipeline, site_config):
        """Test excluded URLs are never indexed."""
        site_config.exclude = ["/blog/**"]
        assert pipeline.run().pages_processed == 3

    def test_robots_txt_is_respected(self, pipeline, site_config, site_dir):
        """Test robots.txt in the build output excludes pages."""
        (site_dir / "build/robots.txt").write_text("User-agent: *\nDisallow: /blog\n")
        assert pipeline.run().pages_processed == 3

        site_config.source.respect_robots_txt = False
        assert pipeline.run().pages_processed == 4

    def test_zero_weight_pages_are_not_indexed(self, pipeline, site_config):
        """Test pages weighted 0 are skipped at index time."""
        site_config.ranking.page_weights = {"/blog/*": 0}
        assert pipeline.run().pages_processed == 3

    def test_strict_route_mapping(self, pipeline, site_config, site_dir):
        """Test a best-effort route fails the run only in strict mode."""
        shutil.rmtree(site_dir / "src/routes/blog")

        stats = pipeline.run(IndexOptions(dry_run=True))
        assert stats.route_best_effort == 1

        site_config.source.strict_route_mapping = True
        with pytest.raises(RouteMappingFailedError, match="/blog/hello"):
            pipeline.run()

    def test_writes_mirror(self, pipeline, site_config):
        """Test the markdown mirror is written when enabled."""
        site_config.state.write_mirror = True
        pipeline.run()

        mirror_file = site_config.state_dir / "pages" / "main" / "docs" / "getting-started.md"
        frontmatter = yaml.safe_load(mirror_file.read_text().split("---\n")[1])
        assert frontmatter["route_file"] == "src/routes/docs/[slug]/+page.svelte"
        assert frontmatter["incoming_links"] == 3

    def test_scope_override(self, pipeline, store, site_config):
        """Test a scope override indexes into a separate partition."""
        pipeline.run(IndexOptions(scope_override="feature/x"))

        assert store.get_content_hashes(resolve_scope(site_config)) == {}
        assert store.get_content_hashes(resolve_scope(site_config, "feature-x"))

    def test_max_limits(self, pipeline):
        """Test max_pages and max_chunks cap the run."""
        assert pipeline.run(IndexOptions(dry_run=True, max_pages=2)).pages_processed == 2
        assert pipeline.run(IndexOptions(dry_run=True, max_chunks=1)).chunks_total == 1

    def test_invalid_vectors_abort(self, site_config, store, fixed_embeddings):
        """Test non-finite embeddings abort the run before anything is written."""
        embeddings = fixed_embeddings([float("nan"), 1.0])

        with pytest.raises(VectorBackendUnavailableError):
            IndexPipeline(site_config, embeddings, store).run()

        assert store.get_scope_info(resolve_scope(site_config)) is None

    def test_duplicate_urls_keep_first(self, tmp_path, store, fake_embeddings, caplog):
        """Test two sources for one URL index a single page."""
        content = tmp_path / "content"
        (content / "docs/intro").mkdir(parents=True)
        (content / "docs/intro.md").write_text("# Intro\n\nFrom the file.\n")
        (content / "docs/intro/index.md").write_text("# Intro\n\nFrom the index.\n")
        config = SiteScribeConfig(
            project_id="test",
            root_dir=tmp_path,
            show_progress=False,
            source=SourceConfig(
                mode="content-files", content_files=ContentFilesConfig(globs=["**/*.md"], base_dir="content")
            ),
        )

        stats = IndexPipeline(config, fake_embeddings, store).run()

        assert stats.pages_processed == 1
        assert stats.route_best_effort == 1
        assert "Duplicate page source for /docs/intro" in caplog.text
