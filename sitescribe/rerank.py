"""Rerankers scoring page-level candidate texts against a query."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import requests

from .config import SiteScribeConfig
from .embeddings import is_retryable_status
from .errors import RateLimitedError, VectorBackendUnavailableError

logger = logging.getLogger(__name__)

MAX_RERANK_RETRY_DELAY = 4.0


@dataclass
class RerankCandidate:
    id: str
    text: str


@dataclass
class RerankResult:
    id: str
    score: float


class Reranker(ABC):
    @abstractmethod
    def rerank(self, query: str, candidates: list[RerankCandidate], top_n: int | None = None) -> list[RerankResult]:
        """Score candidates for a query. Results are sorted by score, best first."""


class JinaReranker(Reranker):
    """Jina AI ``/rerank`` HTTP client."""

    def __init__(
        self,
        api_key: str,
        model: str = "jina-reranker-v2-base-multilingual",
        api_base: str = "https://api.jina.ai/v1",
        max_retries: int = 3,
        request_timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.endpoint = f"{api_base.rstrip('/')}/rerank"
        self.max_retries = max_retries
        self.request_timeout = request_timeout

    def rerank(self, query: str, candidates: list[RerankCandidate], top_n: int | None = None) -> list[RerankResult]:
        if not candidates:
            return []

        body = {
            "model": self.model,
            "query": query,
            "documents": [candidate.text for candidate in candidates],
            "top_n": top_n or len(candidates),
        }

        attempt = 0
        while True:
            attempt += 1
            try:
                response = requests.post(
                    self.endpoint,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=body,
                    timeout=(10, self.request_timeout),
                )
                response.raise_for_status()
                break
            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if not is_retryable_status(status) or attempt >= self.max_retries:
                    if status == 429:
                        raise RateLimitedError(f"Rerank API rate limit exceeded after {attempt} attempts") from e
                    raise VectorBackendUnavailableError(f"Rerank request failed ({status}): {e}") from e
                delay = min(0.3 * 2**attempt, MAX_RERANK_RETRY_DELAY)
                logger.warning(f"[RERANK] HTTP {status}, retrying in {delay:.1f}s (attempt {attempt})")
                time.sleep(delay)
            except requests.RequestException as e:
                raise VectorBackendUnavailableError(f"Rerank request failed: {e}") from e

        payload = response.json()
        raw_results = payload.get("results") or payload.get("data") or []

        results = []
        for item in raw_results:
            index = item.get("index")
            if not isinstance(index, int) or not 0 <= index < len(candidates):
                continue
            score = item.get("relevance_score")
            if not isinstance(score, (int, float)):
                score = item.get("score", 0.0)
            results.append(RerankResult(id=candidates[index].id, score=float(score)))

        results.sort(key=lambda result: result.score, reverse=True)
        return results


class CrossEncoderReranker(Reranker):
    """Local cross-encoder reranker (requires the ``local`` extra).

    Scores are min-max normalized to 0-1 so they blend consistently regardless
    of the cross-encoder model's raw score range.
    """

    def __init__(self, model: str = "cross-encoder/ms-marco-MiniLM-L-12-v2"):
        self.model = model
        self._cross_encoder = None

    def _load(self):
        if self._cross_encoder is None:
            from sentence_transformers import CrossEncoder

            start = time.time()
            self._cross_encoder = CrossEncoder(self.model)
            logger.info(f"[RERANK] ✓ Cross-encoder loaded in {time.time() - start:.1f}s")
        return self._cross_encoder

    def rerank(self, query: str, candidates: list[RerankCandidate], top_n: int | None = None) -> list[RerankResult]:
        if not candidates:
            return []

        logger.debug(f"[RERANK] Re-ranking {len(candidates)} candidates")
        scores = [float(score) for score in self._load().predict([[query, c.text] for c in candidates])]

        min_score = min(scores)
        score_range = max(scores) - min_score

        results = [
            # All scores identical: assign uniform score
            RerankResult(id=candidate.id, score=(score - min_score) / score_range if score_range > 0 else 1.0)
            for candidate, score in zip(candidates, scores)
        ]
        results.sort(key=lambda result: result.score, reverse=True)
        return results[:top_n] if top_n else results


def create_reranker(config: SiteScribeConfig) -> Reranker | None:
    """Build the configured reranker, or None when reranking is off or unconfigured."""
    settings = config.rerank
    if not settings.enabled:
        return None

    if settings.provider == "cross-encoder":
        return CrossEncoderReranker(settings.cross_encoder_model)

    api_key = settings.api_key
    if not api_key:
        logger.warning(f"[RERANK] Rerank enabled but {settings.api_key_env} is not set")
        return None

    return JinaReranker(
        api_key=api_key,
        model=settings.model,
        api_base=settings.api_base,
        max_retries=settings.max_retries,
        request_timeout=settings.request_timeout,
    )
