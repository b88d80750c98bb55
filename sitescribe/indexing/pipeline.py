"""Indexing pipeline: source pages in, scope-partitioned vectors and page records out.

Stages run strictly in sequence and are timed individually:

    source -> route_build -> extract -> links -> pages -> chunk -> embed -> sync -> finalize

Only chunks whose content hash changed are re-embedded. Chunk vectors are
written upsert-then-delete so a run killed mid-sync never leaves a page with
no searchable chunks; page records are replaced delete-then-insert.
"""

import logging
import math
import re
import sys
import time
from dataclasses import asdict

from tqdm import tqdm

from ..config import SiteScribeConfig
from ..embeddings import EmbeddingsProvider
from ..errors import EmbeddingModelMismatchError, RouteMappingFailedError, VectorBackendUnavailableError
from ..models import (
    Chunk,
    ExtractedPage,
    IndexOptions,
    IndexStats,
    MirrorPage,
    PageRecord,
    RouteMatch,
    Scope,
    ScopeInfo,
    SourcePage,
    VectorRecord,
)
from ..scope import resolve_scope
from ..search.ranking import find_page_weight
from ..utils import get_url_depth, match_url_patterns, normalize_url_path, utc_now_iso
from ..vector import VectorStore
from .chunker import build_embedding_text, chunk_page
from .extractor import extract_from_html, extract_from_markdown
from .mirror import write_mirror_page
from .robots import RobotsRules, fetch_robots, load_robots_from_dir
from .route_mapper import build_route_patterns, map_url_to_route
from .sources import load_pages

logger = logging.getLogger(__name__)

PAGE_SUMMARY_MAX_CHARS = 3500


def build_page_summary(page: MirrorPage, max_chars: int = PAGE_SUMMARY_MAX_CHARS) -> str:
    """Plain-text summary of a page: title, description, keywords and stripped body."""
    parts = [page.title]
    if page.description:
        parts.append(page.description)
    if page.keywords:
        parts.append(", ".join(page.keywords))

    body = re.sub(r"```[\s\S]*?```", " ", page.markdown)
    body = re.sub(r"`([^`]+)`", r"\1", body)
    body = re.sub(r"!?\[([^\]]*)\]\([^)]*\)", r"\1", body)
    body = re.sub(r"^#{1,6}\s+", "", body, flags=re.MULTILINE)
    body = re.sub(r"[>*_|~\-]", " ", body)
    body = re.sub(r"\s+", " ", body).strip()
    if body:
        parts.append(body)

    joined = "\n\n".join(parts)
    return joined if len(joined) <= max_chars else joined[:max_chars].strip()


def compute_incoming_links(pages: list[ExtractedPage]) -> dict[str, int]:
    """Count links to each page from other pages in the same run.

    Links to URLs outside the page set (external or dangling) are ignored, and
    each linking page counts at most once per target.
    """
    page_set = {page.url for page in pages}
    incoming = {page.url: 0 for page in pages}
    for page in pages:
        for target in set(page.outgoing_links):
            if target in page_set and target != page.url:
                incoming[target] += 1
    return incoming


def diff_chunks(
    chunks: list[Chunk], existing_hashes: dict[str, str], changed_only: bool = True, force: bool = False
) -> tuple[list[Chunk], list[str]]:
    """Split the current chunk set against previously stored hashes.

    Args:
        chunks: Current chunks
        existing_hashes: Chunk key -> content hash from the previous run
        changed_only: When False every chunk is treated as changed
        force: Ignore stored hashes for change detection (stale keys are still deleted)

    Returns:
        (chunks needing a new embedding, stored keys absent from the current set)
    """
    current_keys = {chunk.chunk_key for chunk in chunks}
    changed = [
        chunk
        for chunk in chunks
        if force or not changed_only or existing_hashes.get(chunk.chunk_key) != chunk.content_hash
    ]
    deletes = sorted(key for key in existing_hashes if key not in current_keys)
    return changed, deletes


def _chunk_metadata(chunk: Chunk, scope: Scope, model_id: str) -> dict:
    metadata = asdict(chunk)
    metadata.pop("chunk_key")
    metadata.update(project_id=scope.project_id, scope_name=scope.scope_name, model_id=model_id)
    return metadata


class IndexPipeline:
    """Runs one indexing pass for one scope."""

    def __init__(self, config: SiteScribeConfig, embeddings: EmbeddingsProvider, store: VectorStore):
        """Initialize the pipeline.

        Args:
            config: Active configuration
            embeddings: Provider used for changed chunks
            store: Vector store receiving vectors, page records and the registry entry
        """
        self.config = config
        self.embeddings = embeddings
        self.store = store

    def run(self, options: IndexOptions | None = None) -> IndexStats:
        """Index the site.

        Args:
            options: Run options (defaults: changed chunks only, no force, real writes)

        Returns:
            Stats for the run, also filled in for dry runs

        Raises:
            ConfigMissingError: If no usable source is configured
            EmbeddingModelMismatchError: If the scope was indexed with another model and force is off
            RouteMappingFailedError: If strict route mapping is on and a URL only maps best-effort
            VectorBackendUnavailableError: If the embeddings provider returns unusable vectors
        """
        options = options or IndexOptions()
        stats = IndexStats()
        run_start = time.time()

        def stage_end(name: str, started: float):
            stats.stage_timings_ms[name] = round((time.time() - started) * 1000)

        scope = resolve_scope(self.config, options.scope_override)
        mode = self.config.resolve_source_mode(options.source_override)
        model_id = self.config.embeddings.model

        logger.info("[INDEX] " + "=" * 70)
        logger.info(f"[INDEX] Indexing scope {scope.scope_name!r} of {scope.project_id!r} (source: {mode})")
        if options.force:
            logger.info("[INDEX] Force mode: every chunk will be re-embedded")
        if options.dry_run:
            logger.info("[INDEX] Dry run: no embeddings or writes will be performed")
        logger.info("[INDEX] " + "=" * 70)

        # Checked before any page work so no embedding calls are issued on mismatch
        scope_info = self.store.get_scope_info(scope)
        if scope_info and scope_info.model_id != model_id and not options.force:
            raise EmbeddingModelMismatchError(
                f"Scope {scope.scope_name} was indexed with {scope_info.model_id}. "
                f"Current config uses {model_id}. Re-index with --force."
            )

        started = time.time()
        robots = self._load_robots(mode)
        source_pages = load_pages(
            mode, self.config, options.max_pages, extra_sitemaps=robots.sitemaps if robots else None
        )
        source_pages = self._filter_source_pages(source_pages, robots)
        stage_end("source", started)
        logger.info(f"[INDEX] Loaded {len(source_pages)} pages in {stats.stage_timings_ms['source']}ms")

        started = time.time()
        route_patterns = build_route_patterns(
            self.config.root_dir, self.config.routes.root_dir, self.config.routes.page_file
        )
        stage_end("route_build", started)
        logger.debug(f"[INDEX] {len(route_patterns)} route patterns discovered")

        started = time.time()
        extracted = self._extract_pages(source_pages)
        stage_end("extract", started)
        logger.info(
            f"[INDEX] Extracted {len(extracted)} pages ({len(source_pages) - len(extracted)} skipped) "
            f"in {stats.stage_timings_ms['extract']}ms"
        )

        started = time.time()
        incoming = compute_incoming_links(extracted)
        stage_end("links", started)

        started = time.time()
        precomputed = {
            normalize_url_path(page.url): RouteMatch(page.route_file, page.route_resolution or "exact")
            for page in source_pages
            if page.route_file
        }
        generated_at = utc_now_iso()
        mirror_pages = []
        for page in extracted:
            route = precomputed.get(page.url) or map_url_to_route(
                page.url, route_patterns, self.config.routes.root_dir, self.config.routes.page_file
            )
            if route.route_resolution == "best-effort":
                if self.config.source.strict_route_mapping:
                    raise RouteMappingFailedError(
                        f"Strict route mapping enabled: no exact route match for {page.url} "
                        f"(resolved to {route.route_file}). Disable source.strict_route_mapping "
                        "or add the missing route file."
                    )
                logger.warning(f"[INDEX] No exact route match for {page.url}, falling back to {route.route_file}")
                stats.route_best_effort += 1
            else:
                stats.route_exact += 1

            mirror_pages.append(
                MirrorPage(
                    url=page.url,
                    title=page.title,
                    scope=scope.scope_name,
                    route_file=route.route_file,
                    route_resolution=route.route_resolution,
                    generated_at=generated_at,
                    incoming_links=incoming.get(page.url, 0),
                    outgoing_links=len(page.outgoing_links),
                    depth=get_url_depth(page.url),
                    tags=list(page.tags),
                    markdown=page.markdown,
                    description=page.description,
                    keywords=list(page.keywords),
                )
            )

        if self.config.state.write_mirror and not options.dry_run:
            for mirror_page in mirror_pages:
                write_mirror_page(self.config.state_dir, scope, mirror_page)
        stage_end("pages", started)
        stats.pages_processed = len(mirror_pages)
        logger.info(
            f"[INDEX] Built {len(mirror_pages)} pages "
            f"({stats.route_exact} exact, {stats.route_best_effort} best-effort routes)"
        )

        started = time.time()
        chunks = self._chunk_pages(mirror_pages, scope)
        if options.max_chunks is not None:
            chunks = chunks[: max(0, int(options.max_chunks))]
        stats.chunks_total = len(chunks)
        stage_end("chunk", started)
        logger.info(f"[INDEX] Chunked into {len(chunks)} chunks in {stats.stage_timings_ms['chunk']}ms")

        existing_hashes = self.store.get_content_hashes(scope)
        reembed_all = options.force
        if not reembed_all and existing_hashes and scope_info is not None and scope_info.vector_count == 0:
            logger.warning("[INDEX] Registry reports no vectors but hashes exist, re-embedding everything")
            reembed_all = True

        changed, deletes = diff_chunks(chunks, existing_hashes, options.changed_only, force=reembed_all)

        stats.chunks_changed = len(changed)
        stats.deletes = len(deletes)
        logger.info(
            f"[INDEX] Changes: {len(changed)} changed, {len(deletes)} deleted, "
            f"{len(chunks) - len(changed)} unchanged"
        )

        texts = [build_embedding_text(chunk, self.config.chunking.prepend_title) for chunk in changed]
        stats.estimated_tokens = sum(self.embeddings.estimate_tokens(text) for text in texts)
        price = self.config.embeddings.price_per_1k_tokens
        stats.estimated_cost_usd = round(stats.estimated_tokens / 1000 * price, 6) if price else 0.0

        if options.dry_run:
            stats.stage_timings_ms["total"] = round((time.time() - run_start) * 1000)
            logger.info(
                f"[INDEX] Dry run complete: ~{stats.estimated_tokens} tokens "
                f"(~${stats.estimated_cost_usd:.4f}) would be embedded"
            )
            return stats

        started = time.time()
        vectors = self._embed(texts)
        stats.new_embeddings = len(vectors)
        stage_end("embed", started)
        if texts:
            logger.info(f"[INDEX] Embedded {len(vectors)} chunks in {stats.stage_timings_ms['embed']}ms")

        started = time.time()
        if scope_info is not None and scope_info.model_id != model_id and existing_hashes:
            # Only reachable with --force; old-model vectors may have another dimension
            logger.info(
                f"[INDEX] Model changed from {scope_info.model_id} to {model_id}, "
                f"dropping {len(existing_hashes)} old vectors"
            )
            self.store.delete_by_ids(sorted(existing_hashes), scope)
        self.store.upsert(
            [
                VectorRecord(id=chunk.chunk_key, vector=vector, metadata=_chunk_metadata(chunk, scope, model_id))
                for chunk, vector in zip(changed, vectors)
            ],
            scope,
        )
        # Pages are replaced only once the vectors are stored
        self.store.delete_pages(scope)
        self.store.upsert_pages([self._page_record(page, scope) for page in mirror_pages], scope)
        self.store.delete_by_ids(deletes, scope)
        stage_end("sync", started)

        started = time.time()
        self.store.record_scope(
            ScopeInfo(
                project_id=scope.project_id,
                scope_name=scope.scope_name,
                model_id=model_id,
                last_indexed_at=utc_now_iso(),
                vector_count=len(self.store.get_content_hashes(scope)),
                last_estimate_tokens=stats.estimated_tokens,
                last_estimate_cost_usd=stats.estimated_cost_usd,
                last_estimate_changed_chunks=stats.chunks_changed,
            )
        )
        stage_end("finalize", started)
        stats.stage_timings_ms["total"] = round((time.time() - run_start) * 1000)

        logger.info("[INDEX] " + "=" * 70)
        logger.info(f"[INDEX] ✓ Index updated in {stats.stage_timings_ms['total']}ms")
        logger.info(
            f"[INDEX]   {stats.pages_processed} pages, {stats.chunks_total} chunks, "
            f"{stats.new_embeddings} new embeddings, {stats.deletes} deletes"
        )
        logger.info("[INDEX] " + "=" * 70)
        return stats

    def _load_robots(self, mode: str) -> RobotsRules | None:
        if not self.config.source.respect_robots_txt:
            return None
        if mode == "static-output":
            return load_robots_from_dir(self.config.resolve_path(self.config.source.static_output_dir))
        if mode == "crawl" and self.config.source.crawl is not None:
            crawl = self.config.source.crawl
            return fetch_robots(crawl.base_url, crawl.user_agent, crawl.request_timeout)
        return None

    def _filter_source_pages(self, pages: list[SourcePage], robots: RobotsRules | None) -> list[SourcePage]:
        kept = []
        excluded = blocked = 0
        for page in pages:
            url = normalize_url_path(page.url)
            if self.config.exclude and match_url_patterns(url, self.config.exclude):
                logger.debug(f"[INDEX] Excluding {url} (matched exclude pattern)")
                excluded += 1
                continue
            if robots is not None and robots.is_blocked(url):
                logger.debug(f"[INDEX] Excluding {url} (blocked by robots.txt)")
                blocked += 1
                continue
            kept.append(page)

        if excluded:
            logger.info(f"[INDEX] Excluded {excluded} pages by exclude patterns")
        if blocked:
            logger.info(f"[INDEX] Excluded {blocked} pages by robots.txt")
        return kept

    def _extract_pages(self, source_pages: list[SourcePage]) -> list[ExtractedPage]:
        extracted: list[ExtractedPage] = []
        pbar = tqdm(
            source_pages,
            desc="Extracting",
            unit="page",
            disable=not self.config.show_progress,
            file=sys.stderr,
        )
        for source_page in pbar:
            try:
                if source_page.html is not None:
                    page = extract_from_html(source_page.url, source_page.html, self.config)
                else:
                    page = extract_from_markdown(source_page.url, source_page.markdown or "", source_page.title)
            except Exception as e:
                logger.warning(f"[INDEX] Extraction failed for {source_page.url}, skipping: {e}")
                continue

            if page is None:
                logger.warning(
                    f"[INDEX] Page {source_page.url} produced no extractable content and was skipped. "
                    "Check extract.main_selector, extract.drop_tags and extract.drop_selectors."
                )
                continue
            extracted.append(page)

        # Sorted so "first wins" is deterministic regardless of source order
        extracted.sort(key=lambda page: page.url)
        unique: list[ExtractedPage] = []
        seen: set[str] = set()
        for page in extracted:
            if page.url in seen:
                logger.warning(f"[INDEX] Duplicate page source for {page.url}, keeping the first one")
                continue
            seen.add(page.url)
            unique.append(page)

        indexable = []
        for page in unique:
            if find_page_weight(page.url, self.config.ranking.page_weights) == 0:
                logger.debug(f"[INDEX] Excluding {page.url} (zero weight)")
                continue
            indexable.append(page)
        return indexable

    def _chunk_pages(self, pages: list[MirrorPage], scope: Scope) -> list[Chunk]:
        chunks: list[Chunk] = []
        for page in pages:
            try:
                chunks.extend(chunk_page(page, self.config, scope))
            except Exception as e:
                logger.warning(f"[INDEX] Chunking failed for {page.url}, skipping: {e}")
        return chunks

    def _embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        vectors = self.embeddings.embed_texts(texts, self.config.embeddings.model)
        if len(vectors) != len(texts):
            raise VectorBackendUnavailableError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} chunks"
            )
        for i, vector in enumerate(vectors):
            if not vector or any(not math.isfinite(value) for value in vector):
                raise VectorBackendUnavailableError(f"Embedding provider returned an invalid vector at index {i}")
        return [list(vector) for vector in vectors]

    @staticmethod
    def _page_record(page: MirrorPage, scope: Scope) -> PageRecord:
        return PageRecord(
            url=page.url,
            title=page.title,
            markdown=page.markdown,
            project_id=scope.project_id,
            scope_name=scope.scope_name,
            route_file=page.route_file,
            route_resolution=page.route_resolution,
            incoming_links=page.incoming_links,
            outgoing_links=page.outgoing_links,
            depth=page.depth,
            tags=list(page.tags),
            indexed_at=page.generated_at,
            summary=build_page_summary(page),
            description=page.description,
            keywords=list(page.keywords),
        )
