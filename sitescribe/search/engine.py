"""Search engine: request validation, query embedding, ranking and page grouping."""

import logging
import math
import re
import time
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..config import SiteScribeConfig
from ..embeddings import EmbeddingsProvider, create_embeddings_provider
from ..errors import (
    ConfigMissingError,
    EmbeddingModelMismatchError,
    InvalidRequestError,
    VectorBackendUnavailableError,
)
from ..models import RankedHit, Scope
from ..rerank import Reranker, create_reranker
from ..scope import resolve_scope
from ..utils import normalize_url_path
from ..vector import VectorStore, create_vector_store
from .ranking import aggregate_by_page, blend_rerank_scores, build_rerank_candidates, rank_hits, trim_hits, trim_pages

logger = logging.getLogger(__name__)

MAX_CHUNKS_PER_RESULT = 5


class SearchRequest(BaseModel):
    """Validated search request."""

    q: str = Field(description="Search query")
    top_k: int = Field(default=10, ge=1, le=100, description="Maximum number of results")
    scope: str | None = Field(default=None, description="Scope to search (default: configured scope)")
    path_prefix: str | None = Field(default=None, description="Only return pages at or below this URL path")
    tags: list[str] | None = Field(default=None, description="Only return pages carrying all of these tags")
    rerank: bool = Field(default=False, description="Rerank page candidates with the configured reranker")
    group_by: Literal["page", "chunk"] = Field(default="page", description="Group results by page or chunk")

    @field_validator("q")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("q must not be empty")
        return value


def _round(score: float) -> float:
    return round(score, 6)


class SearchEngine:
    """Answers queries against one project's index."""

    def __init__(
        self,
        config: SiteScribeConfig,
        embeddings: EmbeddingsProvider,
        store: VectorStore,
        reranker: Reranker | None = None,
    ):
        """Initialize the engine.

        Args:
            config: Active configuration
            embeddings: Provider used to embed queries (must match the indexing model)
            store: Vector store holding the indexed scopes
            reranker: Optional reranker for ``rerank=true`` requests
        """
        self.config = config
        self.embeddings = embeddings
        self.store = store
        self.reranker = reranker

    @classmethod
    def from_config(cls, config: SiteScribeConfig) -> "SearchEngine":
        """Build an engine with the providers and store named in the config."""
        return cls(
            config,
            embeddings=create_embeddings_provider(config),
            store=create_vector_store(config),
            reranker=create_reranker(config),
        )

    def search(self, request: dict[str, Any] | SearchRequest) -> dict[str, Any]:
        """Run a search.

        Args:
            request: SearchRequest or a dict with the same fields

        Returns:
            Response dict with ``q``, ``scope``, ``results`` and ``meta``

        Raises:
            InvalidRequestError: If the request is malformed or rerank is not enabled
            ConfigMissingError: If rerank is requested without a configured reranker
            EmbeddingModelMismatchError: If the scope was indexed with another model
            VectorBackendUnavailableError: If the query embedding is unusable
        """
        total_start = time.time()
        params = self._validate(request)

        scope = resolve_scope(self.config, params.scope)
        self._assert_model_compatibility(scope)

        group_by_page = params.group_by == "page"
        candidate_k = max(params.top_k * 10, 50) if group_by_page else max(50, params.top_k)

        embed_start = time.time()
        query_vector = self._embed_query(params.q)
        embed_ms = (time.time() - embed_start) * 1000

        vector_start = time.time()
        hits = self.store.query(
            query_vector, candidate_k, scope, path_prefix=params.path_prefix, tags=params.tags
        )
        vector_ms = (time.time() - vector_start) * 1000
        logger.debug(f"[SEARCH] {len(hits)} candidates for {params.q!r} in scope {scope.scope_name}")

        ranked = rank_hits(hits, self.config)

        used_rerank = False
        rerank_ms = 0.0
        if params.rerank:
            rerank_start = time.time()
            ranked, used_rerank = self._rerank(params.q, ranked, params.top_k)
            rerank_ms = (time.time() - rerank_start) * 1000

        if group_by_page:
            results = self._page_results(ranked, params.top_k)
        else:
            results = [
                {
                    "url": entry.url,
                    "title": entry.hit.metadata.get("title", ""),
                    "section_title": entry.hit.metadata.get("section_title") or None,
                    "snippet": entry.hit.metadata.get("snippet", ""),
                    "score": _round(entry.final_score),
                    "route_file": entry.hit.metadata.get("route_file", ""),
                }
                for entry in trim_hits(ranked, self.config)[: params.top_k]
            ]

        total_ms = (time.time() - total_start) * 1000
        logger.info(
            f"[SEARCH] q={params.q!r} scope={scope.scope_name} results={len(results)} "
            f"rerank={used_rerank} total={total_ms:.0f}ms"
        )

        return {
            "q": params.q,
            "scope": scope.scope_name,
            "results": results,
            "meta": {
                "timings_ms": {
                    "embed": round(embed_ms),
                    "vector": round(vector_ms),
                    "rerank": round(rerank_ms),
                    "total": round(total_ms),
                },
                "used_rerank": used_rerank,
                "model_id": self.config.embeddings.model,
            },
        }

    def _validate(self, request: dict[str, Any] | SearchRequest) -> SearchRequest:
        if isinstance(request, SearchRequest):
            return request
        if not isinstance(request, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        try:
            return SearchRequest(**request)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            message = first.get("msg", "Invalid request")
            raise InvalidRequestError(f"{location}: {message}" if location else message) from e

    def _assert_model_compatibility(self, scope: Scope):
        model_id = self.store.get_scope_model_id(scope)
        if model_id and model_id != self.config.embeddings.model:
            raise EmbeddingModelMismatchError(
                f"Scope {scope.scope_name} was indexed with {model_id}. "
                f"Current config uses {self.config.embeddings.model}. Re-index with --force."
            )

    def _embed_query(self, query: str) -> list[float]:
        vectors = self.embeddings.embed_texts([query], self.config.embeddings.model)
        vector = vectors[0] if vectors else None
        if not vector or any(not math.isfinite(value) for value in vector):
            raise VectorBackendUnavailableError("Unable to create query embedding")
        return vector

    def _rerank(self, query: str, ranked: list[RankedHit], top_k: int) -> tuple[list[RankedHit], bool]:
        if not self.config.rerank.enabled:
            raise InvalidRequestError("rerank=true requested but rerank.enabled is not set to true")
        if self.reranker is None:
            raise ConfigMissingError(f"rerank=true requested but {self.config.rerank.api_key_env} is not set")

        candidates = build_rerank_candidates(ranked)
        if not candidates:
            return ranked, False

        try:
            reranked = self.reranker.rerank(query, candidates, max(top_k, self.config.rerank.top_n))
        except Exception as e:
            logger.warning(f"[SEARCH] Rerank failed, keeping vector ranking: {e}")
            return ranked, False

        return blend_rerank_scores(ranked, reranked, self.config), True

    def _page_results(self, ranked: list[RankedHit], top_k: int) -> list[dict[str, Any]]:
        pages = trim_pages(aggregate_by_page(ranked, self.config), self.config)
        min_ratio = self.config.ranking.min_chunk_score_ratio

        results = []
        for page in pages[:top_k]:
            best = page.best_chunk
            floor = best.final_score * min_ratio
            meaningful = [entry for entry in page.matching_chunks if entry.final_score >= floor][:MAX_CHUNKS_PER_RESULT]

            result = {
                "url": page.url,
                "title": page.title,
                "section_title": best.hit.metadata.get("section_title") or None,
                "snippet": best.hit.metadata.get("snippet", ""),
                "score": _round(page.page_score),
                "route_file": page.route_file,
            }
            if len(meaningful) > 1:
                result["chunks"] = [
                    {
                        "section_title": entry.hit.metadata.get("section_title") or None,
                        "snippet": entry.hit.metadata.get("snippet", ""),
                        "heading_path": entry.hit.metadata.get("heading_path", []),
                        "score": _round(entry.final_score),
                    }
                    for entry in meaningful
                ]
            results.append(result)

        return results

    def get_page(self, path_or_url: str, scope: str | None = None) -> dict[str, Any]:
        """Return the stored markdown and front matter of one indexed page.

        Raises:
            InvalidRequestError: With status 404 if the page is not indexed
        """
        resolved_scope = resolve_scope(self.config, scope)
        url_path = self._resolve_input_path(path_or_url)
        page = self.store.get_page(url_path, resolved_scope)
        if page is None:
            raise InvalidRequestError(f"Indexed page not found for {url_path}", status=404)

        return {
            "url": page.url,
            "frontmatter": {
                "url": page.url,
                "title": page.title,
                "description": page.description,
                "route_file": page.route_file,
                "route_resolution": page.route_resolution,
                "incoming_links": page.incoming_links,
                "outgoing_links": page.outgoing_links,
                "depth": page.depth,
                "tags": page.tags,
                "indexed_at": page.indexed_at,
            },
            "summary": page.summary,
            "markdown": page.markdown,
        }

    @staticmethod
    def _resolve_input_path(path_or_url: str) -> str:
        if re.match(r"^https?://", path_or_url):
            return normalize_url_path(urlparse(path_or_url).path or "/")
        return normalize_url_path(re.split(r"[?#]", path_or_url, maxsplit=1)[0])

    def health(self) -> dict[str, Any]:
        return self.store.health()
