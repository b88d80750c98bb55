"""URL path, text, hashing and URL-pattern helpers."""

import hashlib
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

SNIPPET_MAX_CHARS = 220

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def normalize_url_path(raw_path: str) -> str:
    """Normalize a URL path: leading slash, no repeated slashes, no trailing slash except root."""
    out = raw_path.strip()
    if not out.startswith("/"):
        out = f"/{out}"

    out = re.sub(r"/+", "/", out)

    if len(out) > 1 and out.endswith("/"):
        out = out[:-1]

    return out


def url_path_to_mirror_relative(url_path: str) -> str:
    normalized = normalize_url_path(url_path)
    if normalized == "/":
        return "index.md"
    return f"{normalized[1:]}.md"


def static_html_file_to_url(file_path: Path, root_dir: Path) -> str:
    """Map a built HTML file to the URL path it is served at.

    index.html -> /, docs/index.html -> /docs, docs/intro.html -> /docs/intro
    """
    relative = Path(file_path).relative_to(root_dir).as_posix()

    if relative == "index.html":
        return "/"
    if relative.endswith("/index.html"):
        return normalize_url_path(relative[: -len("/index.html")])
    if relative.endswith(".html"):
        return normalize_url_path(relative[: -len(".html")])

    return normalize_url_path(relative)


def get_url_depth(url_path: str) -> int:
    """Number of path segments. Root is depth 0."""
    if url_path == "/":
        return 0
    return len([segment for segment in normalize_url_path(url_path).split("/") if segment])


def humanize_url_path(url_path: str) -> str:
    normalized = normalize_url_path(url_path)
    if normalized == "/":
        return ""
    return " / ".join(re.sub(r"[-_]", " ", segment) for segment in normalized[1:].split("/"))


def join_url(base_url: str, route: str) -> str:
    base = base_url[:-1] if base_url.endswith("/") else base_url
    route_part = route if route.startswith("/") else f"/{route}"
    return f"{base}{route_part}"


def normalize_text(text: str) -> str:
    """Collapse all whitespace runs to single spaces."""
    return re.sub(r"\s+", " ", text.replace("\r\n", "\n")).strip()


def normalize_markdown(markdown: str) -> str:
    """CRLF to LF, strip trailing whitespace per line, end with exactly one newline."""
    text = markdown.replace("\r\n", "\n")
    text = re.sub(r"[ \t]+$", "", text, flags=re.MULTILINE)
    return text.strip() + "\n"


def sanitize_scope_name(scope_name: str) -> str:
    name = re.sub(r"[^a-z0-9._-]+", "-", scope_name.lower())
    return name.strip("-")[:80]


def to_snippet(markdown: str, max_len: int = SNIPPET_MAX_CHARS) -> str:
    """Plain-text preview of a markdown fragment."""
    plain = re.sub(r"```[\s\S]*?```", " ", markdown)
    plain = re.sub(r"`([^`]+)`", r"\1", plain)
    plain = re.sub(r"[#>*_|\-]", " ", plain)
    plain = re.sub(r"\s+", " ", plain).strip()

    if len(plain) <= max_len:
        return plain

    return plain[: max(0, max_len - 1)].strip() + "…"


def sha1(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def match_url_pattern(url: str, pattern: str) -> bool:
    """Match a URL path against an exact, ``/x/*`` or ``/x/**`` pattern.

    Patterns:
        /blog      exact match only
        /blog/*    one level: /blog/foo but not /blog/foo/bar
        /blog/**   any depth, including /blog itself

    Args:
        url: Normalized URL path
        pattern: Pattern string

    Returns:
        True if the URL matches
    """

    def _strip(value: str) -> str:
        return value[:-1] if value != "/" and value.endswith("/") else value

    normalized_url = _strip(url)
    normalized_pattern = _strip(pattern)

    if normalized_pattern.endswith("/**"):
        prefix = normalized_pattern[:-3]
        if prefix == "":
            return True
        return normalized_url == prefix or normalized_url.startswith(prefix + "/")

    if normalized_pattern.endswith("/*"):
        prefix = normalized_pattern[:-2]
        if prefix == "":
            return normalized_url != "/" and "/" not in normalized_url[1:]
        if not normalized_url.startswith(prefix + "/"):
            return False
        rest = normalized_url[len(prefix) + 1 :]
        return len(rest) > 0 and "/" not in rest

    return normalized_url == normalized_pattern


def match_url_patterns(url: str, patterns: list[str]) -> bool:
    return any(match_url_pattern(url, pattern) for pattern in patterns)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_duration(value: str) -> timedelta:
    """Parse a short duration such as ``30d``, ``12h`` or ``2w``.

    Raises:
        ValueError: If the value is not a supported duration
    """
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r} (expected e.g. 30d, 12h, 2w)")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def parse_iso_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
