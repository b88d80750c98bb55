"""Configuration dataclasses for SiteScribe.

Defaults are usable as-is for a static site built into ``build/``. Projects
override them with a JSON/YAML config file, environment variables, or both.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigMissingError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "SiteScribe/1.0 (Site search indexer; +https://github.com/sitescribe/sitescribe)"

DEFAULT_DROP_SELECTORS = [
    ".sidebar",
    ".toc",
    ".table-of-contents",
    ".breadcrumbs",
    ".breadcrumb",
    "[role='navigation']",
]

SCOPE_MODES = ("fixed", "git", "env")
SOURCE_MODES = ("static-output", "crawl", "content-files")
EMBEDDING_PROVIDERS = ("openai", "local")
RERANK_PROVIDERS = ("jina", "cross-encoder")
ATOMIC_BLOCK_KINDS = ("code", "table", "blockquote")


@dataclass
class ScopeConfig:
    mode: str = "fixed"
    fixed: str = "main"
    env_var: str = "SITESCRIBE_SCOPE"
    sanitize: bool = True


@dataclass
class CrawlConfig:
    """Settings for the crawl source.

    Attributes:
        base_url: Site origin to fetch pages from (e.g., "https://docs.example.com")
        routes: Explicit URL paths to fetch. When empty the sitemap is used.
        sitemap_url: Sitemap location (default: <base_url>/sitemap.xml)
        max_workers: Number of parallel fetching threads
        request_timeout: HTTP request timeout in seconds
        rate_limit_delay: Seconds to sleep between sub-sitemap requests
    """

    base_url: str
    routes: list[str] = field(default_factory=list)
    sitemap_url: str | None = None
    max_workers: int = 5
    request_timeout: float = 10.0
    rate_limit_delay: float = 0.0
    user_agent: str = DEFAULT_USER_AGENT


@dataclass
class ContentFilesConfig:
    globs: list[str]
    base_dir: str = "."


@dataclass
class SourceConfig:
    mode: str | None = None  # None = auto-detect once per run
    static_output_dir: str = "build"
    strict_route_mapping: bool = False
    respect_robots_txt: bool = True
    crawl: CrawlConfig | None = None
    content_files: ContentFilesConfig | None = None


@dataclass
class RoutesConfig:
    """File-based router layout used to attribute URLs to page-definition files."""

    root_dir: str = "src/routes"
    page_file: str = "+page.svelte"


@dataclass
class ExtractConfig:
    main_selector: str = "main"
    drop_tags: list[str] = field(default_factory=lambda: ["header", "nav", "footer", "aside"])
    drop_selectors: list[str] = field(default_factory=lambda: list(DEFAULT_DROP_SELECTORS))
    ignore_attr: str = "data-search-ignore"
    noindex_attr: str = "data-search-noindex"
    respect_robots_noindex: bool = True


@dataclass
class TransformConfig:
    preserve_code_blocks: bool = True
    preserve_tables: bool = True


@dataclass
class ChunkingConfig:
    strategy: str = "hybrid"
    max_chars: int = 2200
    overlap_chars: int = 200
    min_chars: int = 250
    heading_path_depth: int = 3
    dont_split_inside: list[str] = field(default_factory=lambda: list(ATOMIC_BLOCK_KINDS))
    prepend_title: bool = True


@dataclass
class EmbeddingsConfig:
    """Embedding provider settings.

    Attributes:
        provider: "openai" (any OpenAI-compatible /embeddings endpoint) or "local"
            (sentence-transformers, requires the ``local`` extra)
        model: Model identifier recorded per scope to detect model drift
        api_key_env: Environment variable holding the API key
        api_base: Base URL of the OpenAI-compatible API
        batch_size: Texts per embedding request
        concurrency: Maximum number of in-flight batch requests
        price_per_1k_tokens: Optional price used for cost estimates (USD)
        max_retries: Attempts per batch for rate-limit and server errors
    """

    provider: str = "openai"
    model: str = "text-embedding-3-small"
    api_key_env: str = "OPENAI_API_KEY"
    api_base: str = "https://api.openai.com/v1"
    batch_size: int = 64
    concurrency: int = 8
    price_per_1k_tokens: float | None = None
    request_timeout: float = 60.0
    max_retries: int = 5

    @property
    def api_key(self) -> str:
        return os.getenv(self.api_key_env, "")


@dataclass
class VectorConfig:
    path: str = ".sitescribe/vectors.sqlite"
    dimension: int | None = None


@dataclass
class RerankConfig:
    enabled: bool = False
    provider: str = "jina"
    top_n: int = 20
    model: str = "jina-reranker-v2-base-multilingual"
    api_key_env: str = "JINA_API_KEY"
    api_base: str = "https://api.jina.ai/v1"
    cross_encoder_model: str = "cross-encoder/ms-marco-MiniLM-L-12-v2"
    request_timeout: float = 30.0
    max_retries: int = 3

    @property
    def api_key(self) -> str:
        return os.getenv(self.api_key_env, "")


@dataclass
class RankingWeights:
    incoming_links: float = 0.05
    depth: float = 0.03
    rerank: float = 1.0
    aggregation: float = 0.1


@dataclass
class RankingConfig:
    """Query-time ranking settings.

    Attributes:
        page_weights: URL pattern -> score multiplier. Longest matching pattern wins.
            A weight of 0 excludes the page from indexing and results.
        aggregation_cap: Maximum number of chunks contributing to a page score
        aggregation_decay: Decay factor applied per additional chunk
        min_chunk_score_ratio: Chunks below best * ratio are not listed under a page
        min_score: Absolute score floor for results (0 = disabled)
        score_gap_ratio: Drop page results scoring below median * ratio (0 = disabled)
    """

    enable_incoming_link_boost: bool = True
    enable_depth_boost: bool = True
    weights: RankingWeights = field(default_factory=RankingWeights)
    page_weights: dict[str, float] = field(default_factory=dict)
    aggregation_cap: int = 5
    aggregation_decay: float = 0.5
    min_chunk_score_ratio: float = 0.5
    min_score: float = 0.0
    score_gap_ratio: float = 0.0


@dataclass
class ApiConfig:
    path: str = "/api/search"
    host: str = "127.0.0.1"  # Localhost by default (use 0.0.0.0 for all interfaces)
    port: int = 8000
    cors_allow_origins: list[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    debug_log_file: str | None = None
    max_bytes: int = 10 * 1024 * 1024  # 10MB default
    backup_count: int = 5


@dataclass
class StateConfig:
    dir: str = ".sitescribe"
    write_mirror: bool = False


_SECTIONS: dict[str, type] = {
    "scope": ScopeConfig,
    "source": SourceConfig,
    "routes": RoutesConfig,
    "extract": ExtractConfig,
    "transform": TransformConfig,
    "chunking": ChunkingConfig,
    "embeddings": EmbeddingsConfig,
    "vector": VectorConfig,
    "rerank": RerankConfig,
    "ranking": RankingConfig,
    "api": ApiConfig,
    "logging": LoggingConfig,
    "state": StateConfig,
}

_NESTED: dict[tuple[type, str], type] = {
    (SourceConfig, "crawl"): CrawlConfig,
    (SourceConfig, "content_files"): ContentFilesConfig,
    (RankingConfig, "weights"): RankingWeights,
}


@dataclass
class SiteScribeConfig:
    """Top-level configuration. Sections mirror the stages that consume them."""

    project_id: str = "site"
    base_url: str | None = None
    root_dir: str | Path = "."
    exclude: list[str] = field(default_factory=list)
    show_progress: bool = True

    scope: ScopeConfig = field(default_factory=ScopeConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    routes: RoutesConfig = field(default_factory=RoutesConfig)
    extract: ExtractConfig = field(default_factory=ExtractConfig)
    transform: TransformConfig = field(default_factory=TransformConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    vector: VectorConfig = field(default_factory=VectorConfig)
    rerank: RerankConfig = field(default_factory=RerankConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    state: StateConfig = field(default_factory=StateConfig)

    def __post_init__(self):
        """Convert root_dir to Path and validate."""
        self.root_dir = Path(self.root_dir)
        self.validate()

    def validate(self):
        """Check cross-field constraints.

        Raises:
            ConfigMissingError: If any setting is invalid
        """
        if not self.project_id:
            raise ConfigMissingError("project_id must not be empty")

        if self.scope.mode not in SCOPE_MODES:
            raise ConfigMissingError(f"scope.mode must be one of {SCOPE_MODES}, got {self.scope.mode!r}")

        if self.source.mode is not None and self.source.mode not in SOURCE_MODES:
            raise ConfigMissingError(f"source.mode must be one of {SOURCE_MODES}, got {self.source.mode!r}")

        chunking = self.chunking
        if chunking.strategy != "hybrid":
            raise ConfigMissingError(f"chunking.strategy must be 'hybrid', got {chunking.strategy!r}")
        if chunking.max_chars <= 0 or chunking.min_chars <= 0 or chunking.heading_path_depth <= 0:
            raise ConfigMissingError("chunking.max_chars, min_chars and heading_path_depth must be positive")
        if chunking.overlap_chars < 0 or chunking.overlap_chars >= chunking.max_chars:
            raise ConfigMissingError(
                f"chunking.overlap_chars must be in [0, max_chars), got {chunking.overlap_chars} "
                f"(max_chars={chunking.max_chars})"
            )
        if chunking.min_chars > chunking.max_chars:
            raise ConfigMissingError(
                f"chunking.min_chars ({chunking.min_chars}) must not exceed max_chars ({chunking.max_chars})"
            )
        unknown_kinds = set(chunking.dont_split_inside) - set(ATOMIC_BLOCK_KINDS)
        if unknown_kinds:
            raise ConfigMissingError(f"Unknown chunking.dont_split_inside entries: {sorted(unknown_kinds)}")

        if self.embeddings.provider not in EMBEDDING_PROVIDERS:
            raise ConfigMissingError(f"embeddings.provider must be one of {EMBEDDING_PROVIDERS}")
        if self.embeddings.batch_size <= 0 or self.embeddings.concurrency <= 0:
            raise ConfigMissingError("embeddings.batch_size and embeddings.concurrency must be positive")

        if self.rerank.provider not in RERANK_PROVIDERS:
            raise ConfigMissingError(f"rerank.provider must be one of {RERANK_PROVIDERS}")

        ranking = self.ranking
        if ranking.aggregation_cap < 1:
            raise ConfigMissingError("ranking.aggregation_cap must be at least 1")
        if not 0 < ranking.aggregation_decay <= 1:
            raise ConfigMissingError(f"ranking.aggregation_decay must be in (0, 1], got {ranking.aggregation_decay}")
        for pattern, weight in ranking.page_weights.items():
            if weight < 0:
                raise ConfigMissingError(f"ranking.page_weights[{pattern!r}] must not be negative")

    def resolve_path(self, value: str | Path) -> Path:
        """Resolve a config-relative path against root_dir."""
        path = Path(value)
        return path if path.is_absolute() else Path(self.root_dir) / path

    @property
    def state_dir(self) -> Path:
        return self.resolve_path(self.state.dir)

    def resolve_source_mode(self, override: str | None = None) -> str:
        """Pick the source mode for this run and verify its settings are present.

        Explicit mode wins. Otherwise: static-output when the build directory exists,
        content-files when globs are configured, crawl when a crawl base URL is set.

        Raises:
            ConfigMissingError: If no usable source is configured
        """
        mode = override or self.source.mode

        if mode is None:
            if self.resolve_path(self.source.static_output_dir).is_dir():
                mode = "static-output"
            elif self.source.content_files is not None:
                mode = "content-files"
            elif self.source.crawl is not None:
                mode = "crawl"
            else:
                raise ConfigMissingError(
                    f"No source found: {self.source.static_output_dir}/ does not exist and neither "
                    "source.content_files nor source.crawl is configured"
                )
            logger.info(f"[CONFIG] Auto-detected source mode: {mode}")

        if mode not in SOURCE_MODES:
            raise ConfigMissingError(f"Unknown source mode {mode!r}")
        if mode == "crawl" and (self.source.crawl is None or not self.source.crawl.base_url):
            raise ConfigMissingError("source.mode is crawl but source.crawl.base_url is not set")
        if mode == "content-files" and (self.source.content_files is None or not self.source.content_files.globs):
            raise ConfigMissingError("source.mode is content-files but source.content_files.globs is empty")

        return mode

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SiteScribeConfig":
        """Build a config from a nested dict (as loaded from JSON or YAML).

        Raises:
            ConfigMissingError: On unknown keys or invalid values
        """
        if not isinstance(data, dict):
            raise ConfigMissingError("Config root must be a mapping")

        kwargs: dict[str, Any] = {}
        top_level = {f.name for f in fields(cls)}
        for key, value in data.items():
            if key not in top_level:
                raise ConfigMissingError(f"Unknown config key: {key}")
            section_cls = _SECTIONS.get(key)
            kwargs[key] = _build_section(section_cls, value, key) if section_cls else value

        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigMissingError(f"Invalid config: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> "SiteScribeConfig":
        """Load config from a .json, .yaml or .yml file.

        A relative ``root_dir`` in the file is resolved against the file's directory.
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigMissingError(f"Config file not found: {config_path}")

        text = config_path.read_text(encoding="utf-8")
        try:
            if config_path.suffix in (".yaml", ".yml"):
                import yaml

                data = yaml.safe_load(text) or {}
            else:
                data = json.loads(text)
        except Exception as e:
            raise ConfigMissingError(f"Failed to parse config file {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigMissingError(f"Config file {config_path} must contain a mapping")

        root_dir = Path(data.get("root_dir", "."))
        if not root_dir.is_absolute():
            data["root_dir"] = str(config_path.parent / root_dir)

        return cls.from_dict(data)

    @classmethod
    def from_env(cls, env_prefix: str = "SITESCRIBE_", config_path: str | Path | None = None):
        """Create config from environment variables, optionally on top of a config file.

        Args:
            env_prefix: Prefix for environment variables (e.g., "SITESCRIBE_")
            config_path: Optional JSON/YAML file loaded before env overrides

        Returns:
            SiteScribeConfig instance populated from environment
        """
        from dotenv import load_dotenv

        load_dotenv()

        config = cls.from_file(config_path) if config_path else cls()

        # Helper to get env var with prefix
        def get_env(name: str, default):
            # Try with prefix first, then without
            prefixed = os.getenv(f"{env_prefix}{name}", None)
            if prefixed is not None:
                return prefixed
            return os.getenv(name, default)

        def get_bool(name: str, default: bool) -> bool:
            value = get_env(name, None)
            if value is None:
                return default
            return value.lower() in ("true", "1", "yes")

        config.project_id = get_env("PROJECT_ID", config.project_id)
        config.base_url = get_env("BASE_URL", config.base_url)
        config.scope.mode = get_env("SCOPE_MODE", config.scope.mode)
        config.scope.fixed = get_env("SCOPE_FIXED", config.scope.fixed)
        config.source.mode = get_env("SOURCE_MODE", config.source.mode)
        config.source.static_output_dir = get_env("STATIC_OUTPUT_DIR", config.source.static_output_dir)
        config.source.strict_route_mapping = get_bool("STRICT_ROUTE_MAPPING", config.source.strict_route_mapping)
        config.embeddings.provider = get_env("EMBEDDING_PROVIDER", config.embeddings.provider)
        config.embeddings.model = get_env("EMBEDDING_MODEL", config.embeddings.model)
        config.embeddings.api_base = get_env("EMBEDDING_API_BASE", config.embeddings.api_base)
        config.embeddings.batch_size = int(get_env("EMBEDDING_BATCH_SIZE", str(config.embeddings.batch_size)))
        config.embeddings.concurrency = int(get_env("EMBEDDING_CONCURRENCY", str(config.embeddings.concurrency)))
        config.vector.path = get_env("VECTOR_PATH", config.vector.path)
        config.rerank.enabled = get_bool("RERANK_ENABLED", config.rerank.enabled)
        config.rerank.provider = get_env("RERANK_PROVIDER", config.rerank.provider)
        config.api.host = get_env("HOST", config.api.host)
        config.api.port = int(get_env("PORT", str(config.api.port)))
        config.logging.debug_log_file = get_env("DEBUG_LOG_FILE", config.logging.debug_log_file)
        config.state.dir = get_env("STATE_DIR", config.state.dir)
        config.state.write_mirror = get_bool("WRITE_MIRROR", config.state.write_mirror)

        config.validate()
        return config


def _build_section(section_cls: type, data: Any, path: str):
    """Recursively build a section dataclass from a dict."""
    if data is None:
        return None
    if is_dataclass(data):
        return data
    if not isinstance(data, dict):
        raise ConfigMissingError(f"Config section {path} must be a mapping")

    known = {f.name for f in fields(section_cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigMissingError(f"Unknown config key: {path}.{key}")
        nested_cls = _NESTED.get((section_cls, key))
        kwargs[key] = _build_section(nested_cls, value, f"{path}.{key}") if nested_cls else value

    try:
        return section_cls(**kwargs)
    except TypeError as e:
        raise ConfigMissingError(f"Invalid config section {path}: {e}") from e
