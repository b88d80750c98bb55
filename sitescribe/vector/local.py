"""SQLite-backed vector store for local development and small sites.

Vectors are stored as float32 blobs and scored with brute-force cosine
similarity in numpy, which is plenty for a few tens of thousands of chunks.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterator

import numpy as np

from ..errors import VectorBackendUnavailableError
from ..models import PageRecord, Scope, ScopeInfo, VectorHit, VectorRecord
from ..utils import normalize_url_path, utc_now_iso
from .base import VectorStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS vectors (
    id TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    url TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    metadata TEXT NOT NULL,
    embedding BLOB NOT NULL,
    embedding_dim INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (scope_id, id)
);

CREATE INDEX IF NOT EXISTS idx_vectors_url ON vectors(scope_id, url);

CREATE TABLE IF NOT EXISTS pages (
    scope_id TEXT NOT NULL,
    url TEXT NOT NULL,
    record TEXT NOT NULL,
    PRIMARY KEY (scope_id, url)
);

CREATE TABLE IF NOT EXISTS registry (
    project_id TEXT NOT NULL,
    scope_name TEXT NOT NULL,
    model_id TEXT NOT NULL,
    last_indexed_at TEXT NOT NULL,
    vector_count INTEGER,
    last_estimate_tokens INTEGER,
    last_estimate_cost_usd REAL,
    last_estimate_changed_chunks INTEGER,
    PRIMARY KEY (project_id, scope_name)
);
"""

_REGISTRY_COLUMNS = (
    "project_id",
    "scope_name",
    "model_id",
    "last_indexed_at",
    "vector_count",
    "last_estimate_tokens",
    "last_estimate_cost_usd",
    "last_estimate_changed_chunks",
)


def _encode_embedding(values: list[float]) -> bytes:
    return np.asarray(values, dtype=np.float32).tobytes()


def _decode_embedding(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def _matches_prefix(url: str, path_prefix: str) -> bool:
    prefix = normalize_url_path(path_prefix)
    if prefix == "/":
        return True
    return url == prefix or url.startswith(prefix + "/")


class LocalVectorStore(VectorStore):
    """Vector store persisted to a single SQLite file."""

    def __init__(self, path: str | Path, dimension: int | None = None):
        self.path = Path(path)
        self.dimension = dimension
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as connection:
            connection.executescript(_SCHEMA)
        logger.debug(f"[STORE] Opened local vector store at {self.path}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection that commits on success, rolls back on error and is always closed."""
        connection = sqlite3.connect(self.path)
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def _stored_dimension(self, connection: sqlite3.Connection, scope: Scope) -> int | None:
        row = connection.execute(
            "SELECT embedding_dim FROM vectors WHERE scope_id = ? LIMIT 1", (scope.scope_id,)
        ).fetchone()
        return row[0] if row else None

    def upsert(self, records: list[VectorRecord], scope: Scope):
        if not records:
            return

        dimensions = {len(record.vector) for record in records}
        if len(dimensions) != 1:
            raise VectorBackendUnavailableError(f"Mixed vector dimensions in one upsert: {sorted(dimensions)}")
        dimension = dimensions.pop()
        if self.dimension is not None and dimension != self.dimension:
            raise VectorBackendUnavailableError(
                f"Vector dimension {dimension} does not match configured dimension {self.dimension}"
            )

        now = utc_now_iso()
        with self._connect() as connection:
            stored = self._stored_dimension(connection, scope)
            if stored is not None and stored != dimension:
                raise VectorBackendUnavailableError(
                    f"Vector dimension {dimension} does not match stored dimension {stored} "
                    f"for scope {scope.scope_name}. Clean the scope or re-index with --force under a new model."
                )

            connection.executemany(
                """
                INSERT INTO vectors (id, scope_id, url, content_hash, metadata, embedding, embedding_dim, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope_id, id) DO UPDATE SET
                    url = excluded.url,
                    content_hash = excluded.content_hash,
                    metadata = excluded.metadata,
                    embedding = excluded.embedding,
                    embedding_dim = excluded.embedding_dim,
                    updated_at = excluded.updated_at
                """,
                [
                    (
                        record.id,
                        scope.scope_id,
                        record.metadata.get("url", ""),
                        record.metadata.get("content_hash", ""),
                        json.dumps(record.metadata),
                        sqlite3.Binary(_encode_embedding(record.vector)),
                        dimension,
                        now,
                    )
                    for record in records
                ],
            )
        logger.debug(f"[STORE] Upserted {len(records)} vectors into {scope.scope_id}")

    def delete_by_ids(self, ids: list[str], scope: Scope):
        if not ids:
            return
        with self._connect() as connection:
            connection.executemany(
                "DELETE FROM vectors WHERE scope_id = ? AND id = ?", [(scope.scope_id, chunk_id) for chunk_id in ids]
            )
        logger.debug(f"[STORE] Deleted {len(ids)} vectors from {scope.scope_id}")

    def query(
        self,
        vector: list[float],
        top_k: int,
        scope: Scope,
        path_prefix: str | None = None,
        tags: list[str] | None = None,
    ) -> list[VectorHit]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT id, url, metadata, embedding FROM vectors WHERE scope_id = ? ORDER BY id", (scope.scope_id,)
            ).fetchall()

        candidates = []
        for chunk_id, url, metadata_json, blob in rows:
            if path_prefix and not _matches_prefix(url, path_prefix):
                continue
            metadata = json.loads(metadata_json)
            if tags and not set(tags).issubset(metadata.get("tags") or []):
                continue
            candidates.append((chunk_id, metadata, _decode_embedding(blob)))

        if not candidates:
            return []

        query_vector = np.asarray(vector, dtype=np.float32)
        matrix = np.vstack([embedding for _, _, embedding in candidates])
        if matrix.shape[1] != query_vector.shape[0]:
            raise VectorBackendUnavailableError(
                f"Query vector dimension {query_vector.shape[0]} does not match stored dimension {matrix.shape[1]}"
            )

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vector)
        dots = matrix @ query_vector
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        # Stable sort keeps id order among equal scores
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            VectorHit(id=candidates[i][0], score=float(scores[i]), metadata=candidates[i][1]) for i in order
        ]

    def get_content_hashes(self, scope: Scope) -> dict[str, str]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT id, content_hash FROM vectors WHERE scope_id = ?", (scope.scope_id,)
            ).fetchall()
        return dict(rows)

    def upsert_pages(self, pages: list[PageRecord], scope: Scope):
        if not pages:
            return
        with self._connect() as connection:
            connection.executemany(
                "INSERT OR REPLACE INTO pages (scope_id, url, record) VALUES (?, ?, ?)",
                [(scope.scope_id, page.url, json.dumps(asdict(page))) for page in pages],
            )

    def get_page(self, url: str, scope: Scope) -> PageRecord | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT record FROM pages WHERE scope_id = ? AND url = ?", (scope.scope_id, normalize_url_path(url))
            ).fetchone()
        return PageRecord(**json.loads(row[0])) if row else None

    def delete_pages(self, scope: Scope):
        with self._connect() as connection:
            connection.execute("DELETE FROM pages WHERE scope_id = ?", (scope.scope_id,))

    def record_scope(self, info: ScopeInfo):
        values = asdict(info)
        with self._connect() as connection:
            connection.execute(
                f"INSERT OR REPLACE INTO registry ({', '.join(_REGISTRY_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _REGISTRY_COLUMNS)})",
                [values[column] for column in _REGISTRY_COLUMNS],
            )

    def list_scopes(self, project_id: str) -> list[ScopeInfo]:
        with self._connect() as connection:
            rows = connection.execute(
                f"SELECT {', '.join(_REGISTRY_COLUMNS)} FROM registry WHERE project_id = ? ORDER BY scope_name",
                (project_id,),
            ).fetchall()
        return [ScopeInfo(**dict(zip(_REGISTRY_COLUMNS, row))) for row in rows]

    def get_scope_info(self, scope: Scope) -> ScopeInfo | None:
        with self._connect() as connection:
            row = connection.execute(
                f"SELECT {', '.join(_REGISTRY_COLUMNS)} FROM registry WHERE project_id = ? AND scope_name = ?",
                (scope.project_id, scope.scope_name),
            ).fetchone()
        return ScopeInfo(**dict(zip(_REGISTRY_COLUMNS, row))) if row else None

    def delete_scope(self, scope: Scope):
        with self._connect() as connection:
            connection.execute("DELETE FROM vectors WHERE scope_id = ?", (scope.scope_id,))
            connection.execute("DELETE FROM pages WHERE scope_id = ?", (scope.scope_id,))
            connection.execute(
                "DELETE FROM registry WHERE project_id = ? AND scope_name = ?", (scope.project_id, scope.scope_name)
            )
        logger.info(f"[STORE] Deleted scope {scope.scope_id}")

    def health(self) -> dict[str, Any]:
        try:
            with self._connect() as connection:
                connection.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            return {"ok": False, "details": str(e)}
        return {"ok": True}
