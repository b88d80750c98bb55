"""SiteScribe - semantic search indexing and ranking for web sites."""

from .config import SiteScribeConfig
from .embeddings import EmbeddingsProvider, OpenAIEmbeddingsProvider, create_embeddings_provider
from .errors import (
    ConfigMissingError,
    EmbeddingModelMismatchError,
    InternalError,
    InvalidRequestError,
    RateLimitedError,
    RouteMappingFailedError,
    SiteScribeError,
    VectorBackendUnavailableError,
)
from .indexing import IndexPipeline
from .models import IndexOptions, IndexStats, Scope
from .rerank import Reranker, create_reranker
from .scope import resolve_scope
from .search import SearchEngine
from .tools import create_site_search_tool
from .vector import LocalVectorStore, VectorStore, create_vector_store

# Optional modules not imported by default to keep Flask out of library use:
# - Search endpoint: from sitescribe.server import SearchServer

__version__ = "0.1.0"
__all__ = [
    "ConfigMissingError",
    "EmbeddingModelMismatchError",
    "EmbeddingsProvider",
    "IndexOptions",
    "IndexPipeline",
    "IndexStats",
    "InternalError",
    "InvalidRequestError",
    "LocalVectorStore",
    "OpenAIEmbeddingsProvider",
    "RateLimitedError",
    "Reranker",
    "RouteMappingFailedError",
    "Scope",
    "SearchEngine",
    "SiteScribeConfig",
    "SiteScribeError",
    "VectorBackendUnavailableError",
    "VectorStore",
    "create_embeddings_provider",
    "create_reranker",
    "create_site_search_tool",
    "create_vector_store",
    "resolve_scope",
]
