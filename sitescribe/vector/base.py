"""Abstract vector store used by the indexing pipeline and the search engine."""

from abc import ABC, abstractmethod
from typing import Any

from ..models import PageRecord, Scope, ScopeInfo, VectorHit, VectorRecord


class VectorStore(ABC):
    """Scope-partitioned storage for chunk vectors, page records and the scope registry.

    Every method takes the scope explicitly; scopes never share chunk identity.
    """

    @abstractmethod
    def upsert(self, records: list[VectorRecord], scope: Scope):
        """Insert or replace chunk vectors.

        Raises:
            VectorBackendUnavailableError: If a vector's dimension does not match the store
        """

    @abstractmethod
    def delete_by_ids(self, ids: list[str], scope: Scope):
        pass

    @abstractmethod
    def query(
        self,
        vector: list[float],
        top_k: int,
        scope: Scope,
        path_prefix: str | None = None,
        tags: list[str] | None = None,
    ) -> list[VectorHit]:
        """Return up to ``top_k`` hits ordered by similarity, best first.

        Args:
            vector: Query embedding
            top_k: Maximum number of hits
            scope: Scope to search
            path_prefix: Only match chunks whose URL is this path or below it
            tags: Only match chunks carrying every one of these tags
        """

    @abstractmethod
    def get_content_hashes(self, scope: Scope) -> dict[str, str]:
        """Map of chunk key to content hash for everything stored in the scope."""

    @abstractmethod
    def upsert_pages(self, pages: list[PageRecord], scope: Scope):
        pass

    @abstractmethod
    def get_page(self, url: str, scope: Scope) -> PageRecord | None:
        pass

    @abstractmethod
    def delete_pages(self, scope: Scope):
        """Remove every page record in the scope."""

    @abstractmethod
    def record_scope(self, info: ScopeInfo):
        """Overwrite the registry entry for ``info``'s scope."""

    @abstractmethod
    def list_scopes(self, project_id: str) -> list[ScopeInfo]:
        pass

    @abstractmethod
    def delete_scope(self, scope: Scope):
        """Remove vectors, pages and the registry entry of a scope."""

    @abstractmethod
    def get_scope_info(self, scope: Scope) -> ScopeInfo | None:
        pass

    def get_scope_model_id(self, scope: Scope) -> str | None:
        """Embedding model the scope was last indexed with, if any."""
        info = self.get_scope_info(scope)
        return info.model_id if info else None

    @abstractmethod
    def health(self) -> dict[str, Any]:
        """Return ``{"ok": bool}`` plus optional ``details``."""
