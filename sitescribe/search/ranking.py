"""Ranking and page aggregation of raw vector hits.

Everything here is a pure function of its inputs: no I/O and no shared state,
so it is safe to call from concurrent request handlers. Numeric anomalies
(NaN, infinities, missing metadata) are neutralized locally and never raised.
"""

import math
import statistics
from collections import defaultdict
from typing import Any

from ..config import SiteScribeConfig
from ..models import PageResult, RankedHit, VectorHit
from ..rerank import RerankCandidate, RerankResult
from ..utils import match_url_pattern

MAX_RERANK_CHUNKS_PER_PAGE = 5
MIN_RERANK_CHUNKS_PER_PAGE = 1
RERANK_MIN_CHUNK_SCORE_RATIO = 0.5
RERANK_BASE_EPSILON = 0.001


def _finite(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _sort_ranked(ranked: list[RankedHit]) -> list[RankedHit]:
    # Scores are finite by construction; id breaks ties deterministically
    return sorted(ranked, key=lambda entry: (-entry.final_score, entry.hit.id))


def rank_hits(hits: list[VectorHit], config: SiteScribeConfig) -> list[RankedHit]:
    """Apply link and depth boosts to raw similarity hits.

    score = similarity
            + log(1 + incoming_links) * w_incoming   (if enabled)
            + 1 / (1 + depth) * w_depth              (if enabled)

    Non-finite scores count as 0 and non-finite or negative metadata counts as
    no boost, so every returned ``final_score`` is finite.

    Args:
        hits: Raw hits from the vector store
        config: Active configuration (ranking section is used)

    Returns:
        Ranked hits sorted by final score, best first
    """
    ranking = config.ranking
    weights = ranking.weights

    ranked = []
    for hit in hits:
        score = _finite(hit.score)

        if ranking.enable_incoming_link_boost:
            incoming = max(0.0, _finite(hit.metadata.get("incoming_links")))
            score += math.log1p(incoming) * _finite(weights.incoming_links)

        if ranking.enable_depth_boost:
            depth = max(0.0, _finite(hit.metadata.get("depth")))
            score += (1.0 / (1.0 + depth)) * _finite(weights.depth)

        ranked.append(RankedHit(hit=hit, final_score=_finite(score)))

    return _sort_ranked(ranked)


def group_by_url(ranked: list[RankedHit]) -> dict[str, list[RankedHit]]:
    """Group ranked hits by page URL, keeping first-seen page order."""
    groups: dict[str, list[RankedHit]] = defaultdict(list)
    for entry in ranked:
        groups[entry.url].append(entry)
    return dict(groups)


def build_rerank_candidates(ranked: list[RankedHit]) -> list[RerankCandidate]:
    """Build one page-level text per URL from its best chunks.

    Chunks scoring below half of the page's best are left out (the best one is
    always kept), at most five are used, and they are put back in document
    order so the candidate reads naturally.
    """
    candidates = []
    for url, chunks in group_by_url(ranked).items():
        by_score = sorted(chunks, key=lambda entry: -entry.final_score)
        floor = by_score[0].final_score * RERANK_MIN_CHUNK_SCORE_RATIO

        selected = [
            entry for i, entry in enumerate(by_score) if i < MIN_RERANK_CHUNKS_PER_PAGE or entry.final_score >= floor
        ][:MAX_RERANK_CHUNKS_PER_PAGE]
        selected.sort(key=lambda entry: _finite(entry.hit.metadata.get("ordinal")))

        first = selected[0].hit.metadata
        parts = [first.get("title", "")]
        if first.get("description"):
            parts.append(first["description"])
        if first.get("keywords"):
            parts.append(", ".join(first["keywords"]))
        parts.append(
            "\n\n".join(entry.hit.metadata.get("chunk_text") or entry.hit.metadata.get("snippet", "") for entry in selected)
        )

        candidates.append(RerankCandidate(id=url, text="\n\n".join(part for part in parts if part)))

    return candidates


def blend_rerank_scores(
    ranked: list[RankedHit], reranked: list[RerankResult], config: SiteScribeConfig
) -> list[RankedHit]:
    """Combine page rerank scores into every chunk of that page.

    final = rerank_score * w_rerank + original * 0.001

    Chunks whose page has no (finite) rerank score keep their original score.
    """
    weight = _finite(config.ranking.weights.rerank, 1.0)
    score_by_url = {result.id: result.score for result in reranked}

    blended = []
    for entry in ranked:
        page_score = score_by_url.get(entry.url)
        base = entry.final_score
        if page_score is None or not math.isfinite(page_score):
            blended.append(RankedHit(hit=entry.hit, final_score=base))
            continue

        combined = page_score * weight + base * RERANK_BASE_EPSILON
        blended.append(RankedHit(hit=entry.hit, final_score=combined if math.isfinite(combined) else base))

    return _sort_ranked(blended)


def find_page_weight(url: str, page_weights: dict[str, float]) -> float | None:
    """Weight of the longest pattern matching ``url``, or None if no pattern matches."""
    matching = [pattern for pattern in page_weights if match_url_pattern(url, pattern)]
    if not matching:
        return None
    # Longest pattern wins; ties resolve alphabetically so the choice is stable
    best = min(matching, key=lambda pattern: (-len(pattern), pattern))
    return page_weights[best]


def aggregate_by_page(ranked: list[RankedHit], config: SiteScribeConfig) -> list[PageResult]:
    """Group ranked chunks into page results with a decayed multi-chunk bonus.

    page_score = best + sum(score_i * decay**i * w_aggregation for i in 1..cap-1)

    The page weight of the longest matching pattern then multiplies the score;
    a weight of 0 removes the page.

    Args:
        ranked: Ranked hits (any order)
        config: Active configuration (ranking section is used)

    Returns:
        Page results sorted by page score, best first
    """
    ranking = config.ranking
    cap = max(1, ranking.aggregation_cap)
    decay = _finite(ranking.aggregation_decay)
    aggregation_weight = _finite(ranking.weights.aggregation)

    pages = []
    for url, chunks in group_by_url(ranked).items():
        chunks = _sort_ranked(chunks)
        best = chunks[0]

        page_score = best.final_score
        for i, entry in enumerate(chunks[1:cap], start=1):
            page_score += entry.final_score * (decay**i) * aggregation_weight

        weight = find_page_weight(url, ranking.page_weights)
        if weight is not None:
            if weight == 0:
                continue
            page_score *= weight

        metadata = best.hit.metadata
        pages.append(
            PageResult(
                url=url,
                title=metadata.get("title", ""),
                route_file=metadata.get("route_file", ""),
                page_score=_finite(page_score),
                best_chunk=best,
                matching_chunks=chunks,
            )
        )

    pages.sort(key=lambda page: (-page.page_score, page.url))
    return pages


def trim_pages(pages: list[PageResult], config: SiteScribeConfig) -> list[PageResult]:
    """Drop pages below ``min_score`` and, when enabled, far below the median score."""
    ranking = config.ranking
    if ranking.min_score > 0:
        pages = [page for page in pages if page.page_score >= ranking.min_score]

    if ranking.score_gap_ratio > 0 and len(pages) > 1:
        cutoff = statistics.median(page.page_score for page in pages) * ranking.score_gap_ratio
        # The top result always survives the gap cutoff
        pages = pages[:1] + [page for page in pages[1:] if page.page_score >= cutoff]

    return pages


def trim_hits(ranked: list[RankedHit], config: SiteScribeConfig) -> list[RankedHit]:
    """Drop chunk hits below ``min_score``."""
    if config.ranking.min_score > 0:
        return [entry for entry in ranked if entry.final_score >= config.ranking.min_score]
    return ranked
