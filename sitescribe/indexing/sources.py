"""Source loaders: static build output, crawled URLs, or content files.

Each loader returns SourcePage records in a deterministic order. Exactly one
mode is used per indexing run.
"""

import logging
import re
import sys
import time
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from urllib.parse import urlparse

import requests
from tqdm import tqdm

from ..config import CrawlConfig, SiteScribeConfig
from ..errors import ConfigMissingError
from ..models import SourcePage
from ..utils import join_url, normalize_url_path, static_html_file_to_url

logger = logging.getLogger(__name__)

_SITEMAP_NS = {"ns": "http://www.sitemaps.org/schemas/sitemap/0.9"}


def _limit(items: list, max_pages: int | None) -> list:
    if max_pages is None:
        return items
    return items[: max(0, max_pages)]


def load_static_output_pages(config: SiteScribeConfig, max_pages: int | None = None) -> list[SourcePage]:
    """Read every *.html file under the static build output directory."""
    output_dir = config.resolve_path(config.source.static_output_dir)
    if not output_dir.is_dir():
        raise ConfigMissingError(f"Static output directory not found: {output_dir}")

    html_files = _limit(sorted(p for p in output_dir.rglob("*.html") if p.is_file()), max_pages)
    logger.info(f"[SOURCE] Found {len(html_files)} HTML files in {output_dir}")

    pages = []
    for file_path in html_files:
        pages.append(
            SourcePage(
                url=static_html_file_to_url(file_path, output_dir),
                html=file_path.read_text(encoding="utf-8", errors="replace"),
                source_path=_relative_to_root(file_path, config),
            )
        )
    return pages


def _relative_to_root(path: Path, config: SiteScribeConfig) -> str:
    try:
        return path.resolve().relative_to(Path(config.root_dir).resolve()).as_posix()
    except ValueError:
        return path.as_posix()


def content_file_to_url(relative: str, page_file: str = "+page.svelte") -> str:
    """Map a content file path (relative to its base dir) to a URL path.

    Markdown: docs/intro.md -> /docs/intro, docs/index.md -> /docs.
    Page files: blog/(group)/[slug]/+page.svelte -> /blog/slug (placeholders kept readable).
    """
    if relative == page_file or relative.endswith("/" + page_file):
        segments = []
        for segment in relative.split("/")[:-1]:
            if not segment or segment.startswith("("):
                continue
            segment = re.sub(r"^\[\[([^\]]+)\]\]$", r"\1", segment)
            segment = re.sub(r"^\[\.\.\.([^\]]+)\]$", r"\1", segment)
            segment = re.sub(r"^\[([^\]]+)\]$", r"\1", segment)
            segments.append(segment)
        return normalize_url_path("/".join(segments) or "/")

    no_ext = re.sub(r"\.(md|markdown|mdx)$", "", relative, flags=re.IGNORECASE)
    if no_ext.lower() == "index":
        return "/"
    no_ext = re.sub(r"/index$", "", no_ext, flags=re.IGNORECASE)
    return normalize_url_path(no_ext or "/")


def page_markup_to_text(source: str) -> str:
    """Strip scripts, styles, tags and template expressions from a page-definition file."""
    text = re.sub(r"<script[\s\S]*?</script>", "", source)
    text = re.sub(r"<style[\s\S]*?</style>", "", text)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\{[^}]+\}", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def load_content_files_pages(config: SiteScribeConfig, max_pages: int | None = None) -> list[SourcePage]:
    """Load markdown (and page-definition) files matched by the configured globs."""
    content_config = config.source.content_files
    if content_config is None or not content_config.globs:
        raise ConfigMissingError("content-files source requires source.content_files.globs")

    base_dir = config.resolve_path(content_config.base_dir)
    files: set[Path] = set()
    for pattern in content_config.globs:
        files.update(p for p in base_dir.glob(pattern) if p.is_file())

    selected = _limit(sorted(files), max_pages)
    logger.info(f"[SOURCE] Found {len(selected)} content files in {base_dir}")

    page_file = config.routes.page_file
    pages = []
    for file_path in selected:
        raw = file_path.read_text(encoding="utf-8", errors="replace")
        relative = file_path.relative_to(base_dir).as_posix()
        source_path = _relative_to_root(file_path, config)

        if file_path.name == page_file:
            pages.append(
                SourcePage(
                    url=content_file_to_url(relative, page_file),
                    markdown=page_markup_to_text(raw),
                    source_path=source_path,
                    route_file=source_path,
                    route_resolution="exact",
                )
            )
        else:
            pages.append(
                SourcePage(url=content_file_to_url(relative, page_file), markdown=raw, source_path=source_path)
            )

    return pages


class SiteCrawler:
    """Fetches a fixed set of routes (explicit list or sitemap) from a live site.

    This is not a link-following crawler: only listed or sitemap URLs are fetched.
    """

    def __init__(self, crawl_config: CrawlConfig, show_progress: bool = True):
        """Initialize the crawler.

        Args:
            crawl_config: Crawl source settings
            show_progress: Show progress bars during fetching (default: True)
        """
        self.base_url = crawl_config.base_url.rstrip("/")
        self.routes = crawl_config.routes
        self.sitemap_url = crawl_config.sitemap_url
        self.max_workers = crawl_config.max_workers
        self.request_timeout = crawl_config.request_timeout
        self.rate_limit_delay = crawl_config.rate_limit_delay
        self.user_agent = crawl_config.user_agent
        self.show_progress = show_progress

    def _get(self, url: str) -> requests.Response:
        response = requests.get(url, headers={"User-Agent": self.user_agent}, timeout=self.request_timeout)
        response.raise_for_status()
        return response

    def resolve_routes(self, extra_sitemaps: list[str] | None = None) -> list[str]:
        """Route paths to fetch: explicit routes, else sitemap entries, else the root."""
        if self.routes:
            return list(dict.fromkeys(normalize_url_path(route) for route in self.routes))

        candidates = []
        if self.sitemap_url:
            candidates.append(
                self.sitemap_url if self.sitemap_url.startswith("http") else join_url(self.base_url, self.sitemap_url)
            )
        candidates.extend(extra_sitemaps or [])
        candidates.append(f"{self.base_url}/sitemap.xml")

        for sitemap_url in dict.fromkeys(candidates):
            try:
                logger.info(f"[CRAWLER] Trying sitemap: {sitemap_url}")
                routes = self._parse_sitemap_xml(self._get(sitemap_url).content)
            except requests.RequestException as e:
                logger.info(f"[CRAWLER] Failed to fetch {sitemap_url}: {e}")
                continue
            if routes:
                logger.info(f"[CRAWLER] Found {len(routes)} URLs in sitemap {sitemap_url}")
                return list(dict.fromkeys(routes))

        logger.warning("[CRAWLER] No sitemap found, indexing the site root only")
        return ["/"]

    def _parse_sitemap_xml(self, xml_content: bytes) -> list[str]:
        """Parse a sitemap or sitemap index into same-site route paths."""
        try:
            tree = ET.fromstring(xml_content)
        except ET.ParseError as e:
            logger.error(f"[CRAWLER] Failed to parse sitemap XML: {e}")
            return []

        # Sitemap index: recurse into each sub-sitemap
        sitemap_elements = tree.findall("ns:sitemap", _SITEMAP_NS) or tree.findall("sitemap")
        if sitemap_elements:
            logger.info(f"[CRAWLER] Found sitemap index with {len(sitemap_elements)} sub-sitemaps")
            routes: list[str] = []
            for sitemap_elem in sitemap_elements:
                loc = sitemap_elem.find("ns:loc", _SITEMAP_NS)
                if loc is None:
                    loc = sitemap_elem.find("loc")
                if loc is None or not loc.text:
                    continue
                try:
                    routes.extend(self._parse_sitemap_xml(self._get(loc.text.strip()).content))
                except requests.RequestException as e:
                    logger.warning(f"[CRAWLER] Failed to parse sub-sitemap {loc.text}: {e}")
                time.sleep(self.rate_limit_delay)
            return routes

        site_host = urlparse(self.base_url).netloc.lower()
        routes = []
        for url_elem in tree.findall("ns:url", _SITEMAP_NS) or tree.findall("url"):
            loc = url_elem.find("ns:loc", _SITEMAP_NS)
            if loc is None:
                loc = url_elem.find("loc")
            if loc is None or not loc.text:
                continue
            parsed = urlparse(loc.text.strip())
            if parsed.netloc and parsed.netloc.lower() != site_host:
                logger.debug(f"[CRAWLER] Skipping off-site sitemap entry: {loc.text}")
                continue
            routes.append(normalize_url_path(parsed.path or "/"))
        return routes

    def fetch_page(self, route: str) -> SourcePage | None:
        """Fetch one route. Returns None on failure, non-HTML content, or off-site redirects."""
        url = join_url(self.base_url, route)
        try:
            logger.debug(f"[CRAWLER] Fetching: {url}")
            response = requests.get(url, headers={"User-Agent": self.user_agent}, timeout=self.request_timeout)

            # Verify final URL is still on the site host (blocks redirects to external sites)
            if response.url and urlparse(response.url).netloc.lower() != urlparse(self.base_url).netloc.lower():
                logger.warning(f"[CRAWLER] Redirect to external domain blocked: {url} -> {response.url}")
                return None

            response.raise_for_status()

            content_type = response.headers.get("content-type", "")
            if "text/html" not in content_type:
                logger.warning(f"[CRAWLER] Skipping non-HTML content: {url} ({content_type})")
                return None
        except requests.RequestException as e:
            logger.error(f"[CRAWLER] Failed to fetch {url}: {e}")
            return None

        return SourcePage(url=normalize_url_path(route), html=response.text, source_path=url)

    def fetch_pages(self, routes: list[str]) -> list[SourcePage]:
        """Fetch routes in parallel, preserving route order in the result."""
        results: dict[str, SourcePage] = {}
        failed = 0

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_route = {executor.submit(self.fetch_page, route): route for route in routes}

            pbar = tqdm(
                as_completed(future_to_route),
                total=len(routes),
                desc="Fetching pages",
                unit="page",
                disable=not self.show_progress,
                file=sys.stderr,
            )
            for future in pbar:
                route = future_to_route[future]
                page = future.result()
                if page is None:
                    failed += 1
                else:
                    results[route] = page
                pbar.set_postfix_str(f"failed={failed}", refresh=True)

        if failed:
            logger.warning(f"[CRAWLER] Fetch complete: {len(results)} pages ({failed} failed)")
        return [results[route] for route in routes if route in results]


def load_crawled_pages(
    config: SiteScribeConfig, max_pages: int | None = None, extra_sitemaps: list[str] | None = None
) -> list[SourcePage]:
    crawl_config = config.source.crawl
    if crawl_config is None:
        raise ConfigMissingError("crawl source requires source.crawl.base_url")

    crawler = SiteCrawler(crawl_config, show_progress=config.show_progress)
    routes = _limit(crawler.resolve_routes(extra_sitemaps), max_pages)
    return crawler.fetch_pages(routes)


def load_pages(
    mode: str, config: SiteScribeConfig, max_pages: int | None = None, extra_sitemaps: list[str] | None = None
) -> list[SourcePage]:
    """Load raw pages from the given source mode."""
    if mode == "static-output":
        return load_static_output_pages(config, max_pages)
    if mode == "content-files":
        return load_content_files_pages(config, max_pages)
    if mode == "crawl":
        return load_crawled_pages(config, max_pages, extra_sitemaps)
    raise ConfigMissingError(f"Unknown source mode {mode!r}")
