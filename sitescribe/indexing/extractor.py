"""Page extraction: raw HTML or Markdown into a normalized ExtractedPage.

Both extractors are pure functions of their inputs and config. A page that is
marked non-indexable, or whose body is empty after normalization, yields None.
"""

import logging
import re
from urllib.parse import urljoin, urlparse

import html2text
import yaml
from bs4 import BeautifulSoup, Tag

from ..config import SiteScribeConfig
from ..models import ExtractedPage
from ..utils import humanize_url_path, normalize_markdown, normalize_text, normalize_url_path

logger = logging.getLogger(__name__)

# Host used to resolve relative hrefs; never fetched
_RESOLVE_HOST = "sitescribe.invalid"

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_NOINDEX_COMMENT_RE = re.compile(r"<!--\s*noindex\s*-->", re.IGNORECASE)
_HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]


def _url_tags(url: str) -> list[str]:
    """Topic tags for a page: its first URL segment, if any."""
    return [segment for segment in normalize_url_path(url).split("/") if segment][:1]


def _fallback_title(url: str) -> str:
    return humanize_url_path(url) or normalize_url_path(url)


def _site_host(config: SiteScribeConfig) -> str | None:
    base_url = config.base_url
    if not base_url and config.source.crawl is not None:
        base_url = config.source.crawl.base_url
    return urlparse(base_url).netloc.lower() if base_url else None


def _collect_links(root: Tag, page_url: str, site_host: str | None) -> list[str]:
    """Same-site outgoing links as normalized URL paths, deduplicated in document order."""
    page_abs = f"https://{_RESOLVE_HOST}{normalize_url_path(page_url)}"
    links: list[str] = []
    seen: set[str] = set()

    for anchor in root.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:")):
            continue

        try:
            parsed = urlparse(urljoin(page_abs, href))
        except ValueError:
            logger.debug(f"[EXTRACT] Ignoring malformed link {href!r} on {page_url}")
            continue

        if parsed.scheme not in ("http", "https"):
            continue
        host = parsed.netloc.lower()
        if host != _RESOLVE_HOST and host != site_host:
            continue

        path = normalize_url_path(parsed.path or "/")
        if path not in seen:
            seen.add(path)
            links.append(path)

    return links


def _make_converter(config: SiteScribeConfig) -> html2text.HTML2Text:
    converter = html2text.HTML2Text()
    converter.body_width = 0
    converter.ignore_images = True
    converter.ignore_links = False
    converter.ignore_emphasis = False
    converter.ignore_tables = not config.transform.preserve_tables
    converter.single_line_break = False
    converter.unicode_snob = True
    return converter


def _protect_code_blocks(root: Tag, soup: BeautifulSoup) -> dict[str, str]:
    """Swap <pre> blocks for placeholder paragraphs so they survive as fenced code.

    Returns:
        Placeholder token -> fenced markdown block
    """
    blocks: dict[str, str] = {}

    for index, pre in enumerate(root.find_all("pre")):
        code = pre.find("code")
        language = ""
        for element in (code, pre):
            if element is None:
                continue
            for css_class in element.get("class") or []:
                if css_class.startswith(("language-", "lang-")):
                    language = css_class.split("-", 1)[1]
                    break
            if language:
                break

        text = pre.get_text().rstrip("\n")
        fence = "````" if "```" in text else "```"
        token = f"SITESCRIBECODEBLOCK{index}X"
        blocks[token] = f"{fence}{language}\n{text}\n{fence}"

        placeholder = soup.new_tag("p")
        placeholder.string = token
        pre.replace_with(placeholder)

    return blocks


def extract_from_html(url: str, html: str, config: SiteScribeConfig) -> ExtractedPage | None:
    """Extract a normalized page from rendered HTML.

    Args:
        url: URL path the page is served at
        html: Raw HTML document
        config: Active configuration (extract/transform sections are used)

    Returns:
        ExtractedPage, or None if the page is non-indexable or empty
    """
    extract = config.extract
    soup = BeautifulSoup(html, "html.parser")

    if extract.respect_robots_noindex:
        robots = soup.find("meta", attrs={"name": re.compile(r"^robots$", re.IGNORECASE)})
        if robots is not None and re.search(r"\bnoindex\b", robots.get("content", ""), re.IGNORECASE):
            logger.debug(f"[EXTRACT] {url} has robots noindex, skipping")
            return None

    if soup.find(attrs={extract.noindex_attr: True}) is not None:
        logger.debug(f"[EXTRACT] {url} carries {extract.noindex_attr}, skipping")
        return None

    main = soup.select_one(extract.main_selector) if extract.main_selector else None
    root = main or soup.body or soup

    title_tag = soup.find("title")
    first_heading = root.find(_HEADING_TAGS)
    title = (
        normalize_text(title_tag.get_text() if title_tag else "")
        or normalize_text(first_heading.get_text() if first_heading else "")
        or _fallback_title(url)
    )

    description = None
    description_tag = soup.find("meta", attrs={"name": "description"})
    if description_tag is not None:
        description = normalize_text(description_tag.get("content", "")) or None

    keywords: list[str] = []
    keywords_tag = soup.find("meta", attrs={"name": "keywords"})
    if keywords_tag is not None:
        keywords = [k.strip() for k in keywords_tag.get("content", "").split(",") if k.strip()]

    for element in root.find_all(["head", "title", "script", "style", "noscript", "template"]):
        element.decompose()
    for tag_name in extract.drop_tags:
        for element in root.find_all(tag_name):
            element.decompose()
    for selector in extract.drop_selectors:
        for element in root.select(selector):
            element.decompose()
    for element in root.find_all(attrs={extract.ignore_attr: True}):
        element.decompose()

    outgoing_links = _collect_links(root, url, _site_host(config))

    code_blocks = _protect_code_blocks(root, soup) if config.transform.preserve_code_blocks else {}

    markdown = _make_converter(config).handle(str(root))
    for token, block in code_blocks.items():
        markdown = markdown.replace(token, f"\n{block}\n")

    markdown = normalize_markdown(markdown)
    if not normalize_text(markdown):
        logger.debug(f"[EXTRACT] {url} has no content after extraction")
        return None

    return ExtractedPage(
        url=normalize_url_path(url),
        title=title,
        markdown=markdown,
        outgoing_links=outgoing_links,
        tags=_url_tags(url),
        indexable=True,
        description=description,
        keywords=keywords,
    )


def parse_frontmatter(markdown: str) -> tuple[dict, str]:
    """Split YAML front matter from a markdown document.

    Returns:
        Tuple of (frontmatter dict, body). Malformed front matter is treated as body text.
    """
    match = _FRONTMATTER_RE.match(markdown)
    if not match:
        return {}, markdown

    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning(f"[EXTRACT] Ignoring malformed front matter: {e}")
        return {}, markdown

    if not isinstance(data, dict):
        return {}, markdown

    return data, markdown[match.end() :]


def extract_from_markdown(url: str, markdown: str, title: str | None = None) -> ExtractedPage | None:
    """Normalize an already-Markdown source document.

    No links are extracted, so such pages get zero link-graph signal.

    Args:
        url: URL path the page is served at
        markdown: Markdown source, optionally with YAML front matter
        title: Explicit title, takes precedence over front matter

    Returns:
        ExtractedPage, or None if the page is non-indexable or empty
    """
    if _NOINDEX_COMMENT_RE.search(markdown):
        return None

    frontmatter, body = parse_frontmatter(markdown)

    own_meta = frontmatter.get("sitescribe")
    if frontmatter.get("noindex") is True or (isinstance(own_meta, dict) and own_meta.get("noindex") is True):
        return None

    normalized = normalize_markdown(body)
    if not normalize_text(normalized):
        return None

    frontmatter_title = frontmatter.get("title")
    resolved_title = (
        title or (frontmatter_title if isinstance(frontmatter_title, str) and frontmatter_title else None)
    ) or _fallback_title(url)

    description = frontmatter.get("description")

    return ExtractedPage(
        url=normalize_url_path(url),
        title=resolved_title,
        markdown=normalized,
        outgoing_links=[],
        tags=_url_tags(url),
        indexable=True,
        description=description if isinstance(description, str) else None,
    )
