"""Data model shared by the indexing pipeline and the search engine."""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

RouteResolution = Literal["exact", "best-effort"]


@dataclass(frozen=True)
class Scope:
    """Partition key for all persisted state (one per project + branch/tenant)."""

    project_id: str
    scope_name: str

    @property
    def scope_id(self) -> str:
        return f"{self.project_id}:{self.scope_name}"


@dataclass
class SourcePage:
    """Raw document yielded by a source loader. Exactly one of html/markdown is set."""

    url: str
    html: str | None = None
    markdown: str | None = None
    title: str | None = None
    source_path: str | None = None
    route_file: str | None = None
    route_resolution: RouteResolution | None = None


@dataclass
class ExtractedPage:
    url: str
    title: str
    markdown: str
    outgoing_links: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    indexable: bool = True
    description: str | None = None
    keywords: list[str] = field(default_factory=list)


@dataclass
class MirrorPage:
    """ExtractedPage enriched with link graph, depth and route data."""

    url: str
    title: str
    scope: str
    route_file: str
    route_resolution: RouteResolution
    generated_at: str
    incoming_links: int
    outgoing_links: int
    depth: int
    tags: list[str]
    markdown: str
    description: str | None = None
    keywords: list[str] = field(default_factory=list)


@dataclass
class Chunk:
    chunk_key: str
    ordinal: int
    url: str
    path: str
    title: str
    section_title: str
    heading_path: list[str]
    chunk_text: str
    snippet: str
    depth: int
    incoming_links: int
    route_file: str
    tags: list[str]
    content_hash: str
    description: str | None = None
    keywords: list[str] = field(default_factory=list)


@dataclass
class VectorRecord:
    """Unit persisted to the vector backend. ``id`` is the chunk key."""

    id: str
    vector: list[float]
    metadata: dict[str, Any]


@dataclass
class VectorHit:
    """Raw similarity hit returned by a vector store query."""

    id: str
    score: float
    metadata: dict[str, Any]


@dataclass
class PageRecord:
    url: str
    title: str
    markdown: str
    project_id: str
    scope_name: str
    route_file: str
    route_resolution: RouteResolution
    incoming_links: int
    outgoing_links: int
    depth: int
    tags: list[str]
    indexed_at: str
    summary: str | None = None
    description: str | None = None
    keywords: list[str] = field(default_factory=list)


@dataclass
class ScopeInfo:
    """Registry entry, one per scope, overwritten on every non-dry-run index."""

    project_id: str
    scope_name: str
    model_id: str
    last_indexed_at: str
    vector_count: int | None = None
    last_estimate_tokens: int | None = None
    last_estimate_cost_usd: float | None = None
    last_estimate_changed_chunks: int | None = None


@dataclass(frozen=True)
class RouteMatch:
    route_file: str
    route_resolution: RouteResolution


@dataclass
class IndexOptions:
    scope_override: str | None = None
    changed_only: bool = True
    force: bool = False
    dry_run: bool = False
    source_override: str | None = None
    max_pages: int | None = None
    max_chunks: int | None = None
    verbose: bool = False


@dataclass
class IndexStats:
    pages_processed: int = 0
    chunks_total: int = 0
    chunks_changed: int = 0
    new_embeddings: int = 0
    deletes: int = 0
    estimated_tokens: int = 0
    estimated_cost_usd: float = 0.0
    route_exact: int = 0
    route_best_effort: int = 0
    stage_timings_ms: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RankedHit:
    hit: VectorHit
    final_score: float

    @property
    def url(self) -> str:
        return self.hit.metadata.get("url", "")


@dataclass
class PageResult:
    """Page-level aggregate of ranked chunks sharing a URL."""

    url: str
    title: str
    route_file: str
    page_score: float
    best_chunk: RankedHit
    matching_chunks: list[RankedHit]
