"""Map URL paths to the page-definition file that renders them.

Mirrors a file-based router (SvelteKit layout by default) where each directory
segment under the routes root is one of:

* static      ``docs``          matches the literal segment
* dynamic     ``[slug]``        matches exactly one segment
* rest        ``[...path]``     matches one or more trailing segments
* optional    ``[[lang]]``      matches zero or one segment
* group       ``(marketing)``   contributes no URL segment

Patterns are ranked by a total specificity order rather than first-match-wins:
more static segments before the first wildcard, then fewer wildcards, then
finite patterns before rest patterns.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from pathlib import Path

from ..models import RouteMatch
from ..utils import normalize_url_path

logger = logging.getLogger(__name__)

DEFAULT_ROUTES_DIR = "src/routes"
DEFAULT_PAGE_FILE = "+page.svelte"

_REST_RE = re.compile(r"^\[\.\.\.([^\]]+)\]$")
_OPTIONAL_RE = re.compile(r"^\[\[([^\]]+)\]\]$")
_DYNAMIC_RE = re.compile(r"^\[([^\]]+)\]$")
_GROUP_RE = re.compile(r"^\(.+\)$")
_PARAM_RE = re.compile(r"\[[^\]]+\]")


class SegmentKind(Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"
    REST = "rest"
    OPTIONAL = "optional"
    GROUP = "group"


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    value: str
    # Only set for dynamic segments mixing literal text and params, e.g. "v[major]"
    regex: re.Pattern | None = None

    def matches(self, part: str) -> bool:
        if self.kind == SegmentKind.STATIC:
            return part == self.value
        if self.regex is not None:
            return bool(self.regex.fullmatch(part))
        return bool(part)

    @property
    def is_wildcard(self) -> bool:
        return self.kind in (SegmentKind.DYNAMIC, SegmentKind.REST, SegmentKind.OPTIONAL)


def parse_segment(raw: str) -> Segment:
    """Classify one directory name of the routes tree."""
    if _GROUP_RE.match(raw):
        return Segment(SegmentKind.GROUP, raw)

    match = _REST_RE.match(raw)
    if match:
        return Segment(SegmentKind.REST, match.group(1))

    match = _OPTIONAL_RE.match(raw)
    if match:
        return Segment(SegmentKind.OPTIONAL, match.group(1))

    match = _DYNAMIC_RE.match(raw)
    if match:
        return Segment(SegmentKind.DYNAMIC, match.group(1))

    if _PARAM_RE.search(raw):
        pieces = []
        last = 0
        for param in _PARAM_RE.finditer(raw):
            pieces.append(re.escape(raw[last : param.start()]))
            pieces.append("[^/]+")
            last = param.end()
        pieces.append(re.escape(raw[last:]))
        return Segment(SegmentKind.DYNAMIC, raw, re.compile("".join(pieces)))

    return Segment(SegmentKind.STATIC, raw)


@dataclass(frozen=True)
class RoutePattern:
    """One page-definition file and the URL segments it accepts (groups removed)."""

    route_file: str
    segments: tuple[Segment, ...]

    @cached_property
    def static_prefix(self) -> int:
        count = 0
        for segment in self.segments:
            if segment.is_wildcard:
                break
            count += 1
        return count

    @cached_property
    def wildcard_count(self) -> int:
        return sum(1 for segment in self.segments if segment.is_wildcard)

    @cached_property
    def static_count(self) -> int:
        return sum(1 for segment in self.segments if segment.kind == SegmentKind.STATIC)

    @cached_property
    def has_rest(self) -> bool:
        return any(segment.kind == SegmentKind.REST for segment in self.segments)

    @property
    def specificity_key(self) -> tuple:
        """Sort key: smaller is more specific."""
        return (-self.static_prefix, self.wildcard_count, self.has_rest, -self.static_count, self.route_file)

    def matches(self, url_path: str) -> bool:
        parts = [part for part in normalize_url_path(url_path).split("/") if part]
        return _match_segments(self.segments, 0, parts, 0)


def _match_segments(segments: tuple[Segment, ...], si: int, parts: list[str], pi: int) -> bool:
    if si == len(segments):
        return pi == len(parts)

    segment = segments[si]

    if segment.kind == SegmentKind.REST:
        # One or more segments, preferring the shortest absorption that lets the rest match
        for end in range(pi + 1, len(parts) + 1):
            if _match_segments(segments, si + 1, parts, end):
                return True
        return False

    if segment.kind == SegmentKind.OPTIONAL:
        if pi < len(parts) and segment.matches(parts[pi]) and _match_segments(segments, si + 1, parts, pi + 1):
            return True
        return _match_segments(segments, si + 1, parts, pi)

    if pi < len(parts) and segment.matches(parts[pi]):
        return _match_segments(segments, si + 1, parts, pi + 1)
    return False


def route_file_to_pattern(route_file: str, routes_dir: str = DEFAULT_ROUTES_DIR) -> RoutePattern:
    """Build a pattern from a project-relative page file path."""
    relative = Path(route_file).as_posix()
    prefix = routes_dir.strip("/")
    if relative.startswith(prefix + "/"):
        relative = relative[len(prefix) + 1 :]

    directories = [part for part in relative.split("/")[:-1] if part]
    segments = tuple(
        segment for segment in (parse_segment(part) for part in directories) if segment.kind != SegmentKind.GROUP
    )
    return RoutePattern(route_file=Path(route_file).as_posix(), segments=segments)


def build_route_patterns(
    root_dir: str | Path, routes_dir: str = DEFAULT_ROUTES_DIR, page_file: str = DEFAULT_PAGE_FILE
) -> list[RoutePattern]:
    """Walk the routes tree once and return patterns, most specific first.

    Args:
        root_dir: Project root
        routes_dir: Routes directory relative to the project root
        page_file: File name that defines a page (e.g., "+page.svelte")

    Returns:
        Patterns sorted by specificity; empty if the routes directory does not exist
    """
    root = Path(root_dir)
    routes_root = root / routes_dir
    if not routes_root.is_dir():
        logger.debug(f"[ROUTES] No routes directory at {routes_root}")
        return []

    patterns = [
        route_file_to_pattern(path.relative_to(root).as_posix(), routes_dir)
        for path in routes_root.rglob(page_file)
        if path.is_file()
    ]
    patterns.sort(key=lambda pattern: pattern.specificity_key)

    logger.debug(f"[ROUTES] Built {len(patterns)} route patterns from {routes_root}")
    return patterns


def _best_match(url_path: str, patterns: list[RoutePattern]) -> RoutePattern | None:
    candidates = [pattern for pattern in patterns if pattern.matches(url_path)]
    if not candidates:
        return None
    return min(candidates, key=lambda pattern: pattern.specificity_key)


def map_url_to_route(
    url_path: str,
    patterns: list[RoutePattern],
    routes_dir: str = DEFAULT_ROUTES_DIR,
    page_file: str = DEFAULT_PAGE_FILE,
) -> RouteMatch:
    """Resolve a URL path to the page file that renders it.

    Falls back to the most specific pattern matching an ancestor path (the root page
    included), then to the most general discovered page file, then to the default
    page file when no routes exist; fallbacks are reported as "best-effort".
    """
    normalized = normalize_url_path(url_path)

    exact = _best_match(normalized, patterns)
    if exact is not None:
        return RouteMatch(route_file=exact.route_file, route_resolution="exact")

    parts = [part for part in normalized.split("/") if part]
    for length in range(len(parts) - 1, -1, -1):
        ancestor = "/" + "/".join(parts[:length])
        match = _best_match(ancestor, patterns)
        if match is not None:
            return RouteMatch(route_file=match.route_file, route_resolution="best-effort")

    if patterns:
        # No root page exists; report the most general page file that does
        fallback = max(patterns, key=lambda pattern: pattern.specificity_key)
        return RouteMatch(route_file=fallback.route_file, route_resolution="best-effort")

    return RouteMatch(route_file=f"{routes_dir.strip('/')}/{page_file}", route_resolution="best-effort")
