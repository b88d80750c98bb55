"""Markdown mirror of indexed pages under ``<state_dir>/pages/<scope>/``."""

import logging
import re
import shutil
from pathlib import Path

import yaml

from ..models import MirrorPage, Scope
from ..utils import normalize_markdown, url_path_to_mirror_relative

logger = logging.getLogger(__name__)

_GENERATED_AT_RE = re.compile(r"^generated_at: .*$", re.MULTILINE)


def build_mirror_markdown(page: MirrorPage) -> str:
    frontmatter = {
        "url": page.url,
        "title": page.title,
        "scope": page.scope,
        "route_file": page.route_file,
        "route_resolution": page.route_resolution,
        "generated_at": page.generated_at,
        "incoming_links": page.incoming_links,
        "outgoing_links": page.outgoing_links,
        "depth": page.depth,
        "tags": list(page.tags),
    }
    if page.description:
        frontmatter["description"] = page.description

    header = yaml.safe_dump(frontmatter, sort_keys=False, allow_unicode=True, width=10_000)
    return f"---\n{header}---\n{normalize_markdown(page.markdown)}"


def mirror_dir(state_dir: Path, scope: Scope) -> Path:
    return Path(state_dir) / "pages" / scope.scope_name


def write_mirror_page(state_dir: Path, scope: Scope, page: MirrorPage) -> Path:
    """Write a page's mirror file, leaving it untouched if only generated_at changed."""
    output_path = mirror_dir(state_dir, scope) / url_path_to_mirror_relative(page.url)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    content = build_mirror_markdown(page)
    if output_path.exists():
        existing = output_path.read_text(encoding="utf-8")
        if _GENERATED_AT_RE.sub("", existing) == _GENERATED_AT_RE.sub("", content):
            return output_path

    output_path.write_text(content, encoding="utf-8")
    return output_path


def clean_mirror_for_scope(state_dir: Path, scope: Scope):
    target = mirror_dir(state_dir, scope)
    if target.exists():
        shutil.rmtree(target)
        logger.info(f"[MIRROR] Removed mirror files in {target}")
