"""Vector storage backends."""

from ..config import SiteScribeConfig
from .base import VectorStore
from .local import LocalVectorStore


def create_vector_store(config: SiteScribeConfig) -> VectorStore:
    return LocalVectorStore(config.resolve_path(config.vector.path), dimension=config.vector.dimension)


__all__ = ["VectorStore", "LocalVectorStore", "create_vector_store"]
