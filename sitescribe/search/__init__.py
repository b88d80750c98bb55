"""Query-time ranking and the search engine."""

from .engine import SearchEngine, SearchRequest
from .ranking import aggregate_by_page, rank_hits

__all__ = ["SearchEngine", "SearchRequest", "aggregate_by_page", "rank_hits"]
