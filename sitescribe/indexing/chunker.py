"""Hybrid heading-aware chunker.

A page is split along headings first. Sections longer than ``max_chars`` are
split into blocks (paragraphs, fenced code, tables, blockquotes) which are
packed greedily, with ``overlap_chars`` of trailing context carried into the
next chunk. Code fences, tables and blockquotes listed in ``dont_split_inside``
are never cut, even when a single block exceeds ``max_chars``.
"""

import re
from dataclasses import dataclass, field

from ..config import ChunkingConfig, SiteScribeConfig
from ..models import Chunk, MirrorPage, Scope
from ..utils import normalize_text, sha1, sha256, to_snippet

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_FENCE_RE = re.compile(r"^(```|~~~)")
_TABLE_SEPARATOR_RE = re.compile(r"^\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?$")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+(?=\S)")


@dataclass
class Section:
    section_title: str
    heading_path: list[str]
    text: str


@dataclass
class Block:
    text: str
    atomic: bool = False


@dataclass
class _Piece:
    """A chunk under construction. ``overlap`` is the length of its carried-over prefix."""

    text: str
    overlap: int = 0
    blocks: list[Block] = field(default_factory=list)


def parse_heading_sections(markdown: str, heading_path_depth: int) -> list[Section]:
    """Split markdown into sections at ATX headings outside code fences.

    The heading line itself stays at the top of its section's text.
    """
    sections: list[Section] = []
    heading_stack: list[str | None] = []
    in_fence = False
    current = Section(section_title="", heading_path=[], text="")

    def flush():
        if normalize_text(current.text):
            sections.append(Section(current.section_title, current.heading_path, current.text.strip()))

    for line in markdown.split("\n"):
        if _FENCE_RE.match(line.strip()):
            in_fence = not in_fence

        match = None if in_fence else _HEADING_RE.match(line)
        if match:
            flush()

            level = len(match.group(1))
            title = match.group(2).strip()
            del heading_stack[level - 1 :]
            heading_stack.extend([None] * (level - 1 - len(heading_stack)))
            heading_stack.append(title)

            path = [entry for entry in heading_stack if entry][:heading_path_depth]
            current = Section(section_title=title, heading_path=path, text=f"{line}\n")
            continue

        current.text += f"{line}\n"

    flush()

    if not sections and normalize_text(markdown):
        sections.append(Section(section_title="", heading_path=[], text=markdown.strip()))

    return sections


def _is_table_start(lines: list[str], i: int) -> bool:
    stripped = lines[i].strip()
    if stripped.startswith("|"):
        return True
    # Pipe tables without leading bars: header row followed by a separator row
    return "|" in stripped and i + 1 < len(lines) and bool(_TABLE_SEPARATOR_RE.match(lines[i + 1].strip()))


def blockify(text: str, dont_split_inside: list[str]) -> list[Block]:
    """Split section text into paragraph blocks, keeping configured block kinds whole."""
    lines = text.split("\n")
    blocks: list[Block] = []
    current: list[str] = []
    atomic = False

    def flush():
        nonlocal current, atomic
        value = "\n".join(current).strip()
        if value:
            blocks.append(Block(value, atomic))
        current = []
        atomic = False

    i = 0
    while i < len(lines):
        line = lines[i]
        stripped = line.strip()

        if _FENCE_RE.match(stripped):
            fence = stripped[:3]
            flush()
            current.append(line)
            i += 1
            while i < len(lines):
                current.append(lines[i])
                if lines[i].strip().startswith(fence):
                    break
                i += 1
            atomic = "code" in dont_split_inside
            flush()
            i += 1
            continue

        if stripped and _is_table_start(lines, i):
            flush()
            current.append(line)
            while i + 1 < len(lines) and lines[i + 1].strip() and "|" in lines[i + 1]:
                i += 1
                current.append(lines[i])
            atomic = "table" in dont_split_inside
            flush()
            i += 1
            continue

        if stripped.startswith(">"):
            flush()
            current.append(line)
            while i + 1 < len(lines) and lines[i + 1].strip().startswith(">"):
                i += 1
                current.append(lines[i])
            atomic = "blockquote" in dont_split_inside
            flush()
            i += 1
            continue

        if not stripped:
            flush()
        else:
            current.append(line)
        i += 1

    flush()
    return blocks


def _hard_split(text: str, max_chars: int) -> list[str]:
    """Split text at whitespace so every part fits in max_chars."""
    parts: list[str] = []
    remaining = text.strip()
    while len(remaining) > max_chars:
        cut = remaining.rfind(" ", 0, max_chars + 1)
        if cut <= 0:
            cut = max_chars
        parts.append(remaining[:cut].strip())
        remaining = remaining[cut:].strip()
    if remaining:
        parts.append(remaining)
    return parts


def _split_long_block(block: Block, max_chars: int) -> list[Block]:
    """Break an over-long splittable paragraph on sentence boundaries."""
    if block.atomic or len(block.text) <= max_chars:
        return [block]

    pieces: list[str] = []
    current = ""
    for sentence in _SENTENCE_SPLIT_RE.split(block.text):
        for part in _hard_split(sentence, max_chars):
            candidate = f"{current} {part}" if current else part
            if len(candidate) <= max_chars:
                current = candidate
            else:
                pieces.append(current)
                current = part
    if current:
        pieces.append(current)

    return [Block(piece) for piece in pieces]


def _overlap_tail(piece: _Piece, overlap_chars: int) -> str:
    """Trailing context of the last block of a piece, starting on a word boundary."""
    if overlap_chars <= 0 or not piece.blocks or piece.blocks[-1].atomic:
        return ""

    last = piece.blocks[-1].text
    if len(last) <= overlap_chars:
        return last.strip()

    tail = last[len(last) - overlap_chars :]
    space = tail.find(" ")
    if 0 <= space < len(tail) - 1:
        tail = tail[space + 1 :]
    return tail.strip()


def split_section(section: Section, config: ChunkingConfig) -> list[str]:
    """Split one section into chunk texts honoring max/min/overlap settings."""
    text = section.text.strip()
    if not text:
        return []
    if len(text) <= config.max_chars:
        return [text]

    blocks: list[Block] = []
    for block in blockify(text, config.dont_split_inside):
        blocks.extend(_split_long_block(block, config.max_chars))

    pieces: list[_Piece] = []
    current: _Piece | None = None

    for block in blocks:
        if current is None:
            current = _Piece(block.text, blocks=[block])
            continue

        candidate = f"{current.text}\n\n{block.text}"
        if len(candidate) <= config.max_chars:
            current.text = candidate
            current.blocks.append(block)
            continue

        pieces.append(current)

        overlap = _overlap_tail(current, config.overlap_chars)
        if overlap and len(overlap) + 2 + len(block.text) <= config.max_chars:
            current = _Piece(f"{overlap}\n\n{block.text}", overlap=len(overlap) + 2, blocks=[block])
        else:
            current = _Piece(block.text, blocks=[block])

    if current is not None and current.text.strip():
        pieces.append(current)

    merged: list[str] = []
    for piece in pieces:
        if merged and len(piece.text) < config.min_chars:
            addition = piece.text[piece.overlap :].strip()
            candidate = f"{merged[-1]}\n\n{addition}"
            if len(candidate) <= config.max_chars:
                merged[-1] = candidate
                continue
        merged.append(piece.text.strip())

    return merged


def chunk_page(page: MirrorPage, config: SiteScribeConfig, scope: Scope) -> list[Chunk]:
    """Chunk a mirror page with the hybrid strategy.

    Same page content always yields the same chunk keys and content hashes.

    Args:
        page: Page to chunk
        config: Active configuration (chunking section is used)
        scope: Scope the chunks belong to; part of every chunk key

    Returns:
        Chunks in document order, ordinals starting at 0
    """
    sections = parse_heading_sections(page.markdown, config.chunking.heading_path_depth)

    chunks: list[Chunk] = []
    for section in sections:
        for chunk_text in split_section(section, config.chunking):
            ordinal = len(chunks)
            section_key = normalize_text(section.section_title).lower()
            chunks.append(
                Chunk(
                    chunk_key=sha1(f"{scope.scope_name}|{page.url}|{ordinal}|{section_key}"),
                    ordinal=ordinal,
                    url=page.url,
                    path=page.url,
                    title=page.title,
                    section_title=section.section_title,
                    heading_path=list(section.heading_path),
                    chunk_text=chunk_text,
                    snippet=to_snippet(chunk_text),
                    depth=page.depth,
                    incoming_links=page.incoming_links,
                    route_file=page.route_file,
                    tags=list(page.tags),
                    content_hash=sha256(normalize_text(chunk_text)),
                    description=page.description,
                    keywords=list(page.keywords),
                )
            )

    return chunks


def build_embedding_text(chunk: Chunk, prepend_title: bool = True) -> str:
    """Text sent to the embeddings provider for a chunk."""
    if not prepend_title:
        return chunk.chunk_text

    prefix = chunk.title
    path = [entry for entry in chunk.heading_path if entry and entry != chunk.title]
    if path:
        prefix = f"{prefix} > {' > '.join(path)}"
    return f"{prefix}\n\n{chunk.chunk_text}"
