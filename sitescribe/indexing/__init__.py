"""Indexing: extraction, chunking, route mapping and the pipeline that ties them together."""

from .chunker import chunk_page
from .extractor import extract_from_html, extract_from_markdown
from .pipeline import IndexPipeline
from .route_mapper import build_route_patterns, map_url_to_route

__all__ = [
    "IndexPipeline",
    "build_route_patterns",
    "chunk_page",
    "extract_from_html",
    "extract_from_markdown",
    "map_url_to_route",
]
