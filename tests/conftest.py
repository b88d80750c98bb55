"""Shared pytest fixtures for SiteScribe tests."""

import hashlib
import re
from pathlib import Path

import pytest

from sitescribe.config import RankingConfig, SiteScribeConfig
from sitescribe.embeddings import EmbeddingsProvider
from sitescribe.models import MirrorPage, PageRecord, Scope, VectorHit, VectorRecord
from sitescribe.rerank import Reranker, RerankResult
from sitescribe.vector import LocalVectorStore

SITE_PAGES = {
    "index.html": """<html><head><title>Acme</title></head>
<body>
<nav><a href="/docs">Docs</a></nav>
<main>
<h1>Welcome to Acme</h1>
<p>Acme builds rockets for discerning coyotes.</p>
<p>Read the <a href="/docs/getting-started">getting started guide</a>, the
<a href="/blog/hello">launch post</a> or <a href="https://example.org/elsewhere">somewhere else</a>.</p>
</main>
<footer>Copyright Acme</footer>
</body></html>
""",
    "docs/index.html": """<html><head><title>Documentation | Acme</title></head>
<body>
<main>
<h1>Documentation</h1>
<p>Browse the guides below or go <a href="/">home</a>.</p>
<p>Start with <a href="/docs/getting-started/">getting started</a>.</p>
</main>
</body></html>
""",
    "docs/getting-started.html": """<html><head><title>Getting Started | Acme</title>
<meta name="description" content="Install the anvil toolkit">
<meta name="keywords" content="anvil, install">
</head>
<body>
<header>Acme header</header>
<main>
<h1>Getting Started</h1>
<p>This guide shows how to install the anvil toolkit.</p>
<h2>Install</h2>
<p>Install anvil with pip. The anvil install takes a minute.</p>
<pre><code class="language-bash">pip install anvil</code></pre>
<h2>Configure</h2>
<p>Configure anvil by editing anvil.toml. See the <a href="/docs">docs home</a>.</p>
</main>
<footer>Footer links</footer>
</body></html>
""",
    "blog/hello.html": """<html><head><title>Hello World | Acme</title></head>
<body>
<main>
<h1>Hello World</h1>
<p>Our first launch went well and the coyotes were delighted.</p>
<p>New here? Read <a href="../docs/getting-started">the guide</a>.</p>
</main>
</body></html>
""",
}

ROUTE_FILES = [
    "src/routes/+page.svelte",
    "src/routes/docs/+page.svelte",
    "src/routes/docs/[slug]/+page.svelte",
    "src/routes/blog/[slug]/+page.svelte",
]


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests using only tmp_path for I/O")
    config.addinivalue_line("markers", "integration: tests running several components together")


class FakeEmbeddings(EmbeddingsProvider):
    """Deterministic bag-of-words embeddings. Records every batch it is asked to embed."""

    dimension = 64

    def __init__(self, model_id: str = "text-embedding-3-small"):
        super().__init__(model_id)
        self.calls: list[list[str]] = []

    def embed_texts(self, texts, model_id=None):
        self.calls.append(list(texts))
        return [self._vector(text) for text in texts]

    def _vector(self, text):
        vector = [0.01] * self.dimension
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.sha1(word.encode("utf-8")).hexdigest()[:8], 16) % self.dimension
            vector[bucket] += 1.0
        return vector

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)


class FixedEmbeddings(EmbeddingsProvider):
    """Returns the same vector for every text."""

    def __init__(self, vector, model_id: str = "text-embedding-3-small"):
        super().__init__(model_id)
        self.vector = list(vector)

    def embed_texts(self, texts, model_id=None):
        return [list(self.vector) for _ in texts]


class FakeReranker(Reranker):
    """Scores candidates from a fixed id -> score table."""

    def __init__(self, scores=None, error: Exception | None = None):
        self.scores = scores or {}
        self.error = error
        self.calls = []

    def rerank(self, query, candidates, top_n=None):
        self.calls.append((query, list(candidates), top_n))
        if self.error is not None:
            raise self.error
        results = [RerankResult(id=c.id, score=self.scores.get(c.id, 0.0)) for c in candidates]
        results.sort(key=lambda result: result.score, reverse=True)
        return results


def write_site(root: Path):
    """Write the sample static build and routes tree under ``root``."""
    for relative, html in SITE_PAGES.items():
        path = root / "build" / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(html, encoding="utf-8")
    for relative in ROUTE_FILES:
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("<h1>{data.title}</h1>\n", encoding="utf-8")


@pytest.fixture
def default_config(tmp_path):
    """Provide a default SiteScribeConfig rooted in a temporary directory."""
    return SiteScribeConfig(project_id="test", root_dir=tmp_path, show_progress=False)


@pytest.fixture
def site_dir(tmp_path):
    """Provide a project directory holding a built site and its routes tree."""
    root = tmp_path / "site"
    root.mkdir()
    write_site(root)
    return root


@pytest.fixture
def site_config(site_dir):
    """Provide a config pointing at the sample site."""
    return SiteScribeConfig(project_id="test", root_dir=site_dir, show_progress=False)


@pytest.fixture
def scope():
    return Scope(project_id="test", scope_name="main")


@pytest.fixture
def store(tmp_path):
    """Provide an empty local vector store."""
    return LocalVectorStore(tmp_path / "store" / "vectors.sqlite")


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddings()


@pytest.fixture
def fixed_embeddings():
    """Factory for embeddings returning one fixed vector."""
    return FixedEmbeddings


@pytest.fixture
def fake_reranker():
    """Factory for rerankers scoring from a lookup table."""
    return FakeReranker


@pytest.fixture
def make_hit():
    """Factory for vector hits with realistic chunk metadata."""

    def _make(hit_id, url, score, **metadata):
        base = {
            "url": url,
            "path": url,
            "title": f"Title {url}",
            "section_title": "",
            "heading_path": [],
            "chunk_text": f"text of {hit_id}",
            "snippet": f"snippet of {hit_id}",
            "ordinal": 0,
            "depth": 1,
            "incoming_links": 0,
            "route_file": "src/routes/+page.svelte",
            "tags": [],
        }
        base.update(metadata)
        return VectorHit(id=hit_id, score=score, metadata=base)

    return _make


@pytest.fixture
def make_mirror_page():
    """Factory for mirror pages fed to the chunker."""

    def _make(markdown, url="/docs/guide", title="Guide", **overrides):
        values = {
            "url": url,
            "title": title,
            "scope": "main",
            "route_file": "src/routes/docs/[slug]/+page.svelte",
            "route_resolution": "exact",
            "generated_at": "2026-01-01T00:00:00Z",
            "incoming_links": 0,
            "outgoing_links": 0,
            "depth": 2,
            "tags": ["docs"],
            "markdown": markdown,
        }
        values.update(overrides)
        return MirrorPage(**values)

    return _make


def _chunk_record(chunk_id, url, vector, ordinal=0, section_title="", tags=None):
    return VectorRecord(
        id=chunk_id,
        vector=vector,
        metadata={
            "url": url,
            "path": url,
            "title": f"Title {url}",
            "section_title": section_title,
            "heading_path": [section_title] if section_title else [],
            "chunk_text": f"text of {chunk_id}",
            "snippet": f"snippet of {chunk_id}",
            "ordinal": ordinal,
            "depth": 1,
            "incoming_links": 0,
            "route_file": "src/routes/+page.svelte",
            "tags": tags or [],
            "content_hash": chunk_id,
        },
    )


@pytest.fixture
def search_config(tmp_path):
    """Config with link and depth boosts off so page scores follow cosine similarity."""
    return SiteScribeConfig(
        project_id="test",
        root_dir=tmp_path,
        show_progress=False,
        ranking=RankingConfig(enable_incoming_link_boost=False, enable_depth_boost=False),
    )


@pytest.fixture
def seeded_store(store, scope):
    """Store holding three pages of 2-d vectors plus one page record.

    Against the query vector [1, 0]: /a scores 1.0 and 0.8, /b 0.6 and /c 0.0.
    """
    store.upsert(
        [
            _chunk_record("a1", "/a", [1.0, 0.0], ordinal=0, section_title="Intro", tags=["docs"]),
            _chunk_record("a2", "/a", [0.8, 0.6], ordinal=1, section_title="Details", tags=["docs"]),
            _chunk_record("b1", "/b", [0.6, 0.8]),
            _chunk_record("c1", "/c", [0.0, 1.0]),
        ],
        scope,
    )
    store.upsert_pages(
        [
            PageRecord(
                url="/a",
                title="Title /a",
                markdown="# Title /a\n\nIntro text\n",
                project_id=scope.project_id,
                scope_name=scope.scope_name,
                route_file="src/routes/+page.svelte",
                route_resolution="exact",
                incoming_links=2,
                outgoing_links=1,
                depth=1,
                tags=["docs"],
                indexed_at="2026-01-01T00:00:00Z",
                description="About A",
                summary="Title /a\n\nAbout A",
            )
        ],
        scope,
    )
    return store
