"""Heading-aware chunking with token-measured overlap."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .config import ChunkingConfig
from .schemas import Chunk, ChunkMetadata, ContentItem
from .utils import estimate_tokens

logger = logging.getLogger(__name__)

INTRO_LABEL = "intro"

_HEADING_RE = re.compile(r"^(##|###)\s+(.+)$")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\n+")
_WORD_RE = re.compile(r"\S+")


@dataclass
class Section:
    heading: Optional[str]
    content: str


def split_by_headings(content: str) -> List[Section]:
    """
    Split markdown content at ``##`` / ``###`` headings.

    Content before the first heading becomes a section without a heading.
    Sections with no content are dropped.
    """
    sections: List[Section] = []
    heading: Optional[str] = None
    lines: List[str] = []

    for line in content.split("\n"):
        match = _HEADING_RE.match(line)
        if match:
            if lines:
                sections.append(Section(heading, "\n".join(lines).strip()))
            heading = match.group(2).strip()
            lines = []
        else:
            lines.append(line)

    if lines:
        sections.append(Section(heading, "\n".join(lines).strip()))

    return [section for section in sections if section.content]


def last_n_tokens(text: str, n: int) -> str:
    """
    Longest suffix of ``text`` starting on a word boundary whose estimated
    size is at most ``n`` tokens. The result is always a verbatim suffix.
    """
    text = text.rstrip()
    if n <= 0 or not text:
        return ""
    if estimate_tokens(text) <= n:
        return text
    for match in _WORD_RE.finditer(text):
        if estimate_tokens(text[match.start():]) <= n:
            return text[match.start():]
    return ""


def _split_oversized(paragraph: str, max_tokens: int, target_tokens: int) -> List[str]:
    """Cut a paragraph above ``max_tokens`` into word-aligned pieces of at most ``target_tokens``."""
    if estimate_tokens(paragraph) <= max_tokens:
        return [paragraph]

    pieces: List[str] = []
    start: Optional[int] = None
    end = 0
    for match in _WORD_RE.finditer(paragraph):
        if start is None:
            start = match.start()
        elif estimate_tokens(paragraph[start:match.end()]) > target_tokens:
            pieces.append(paragraph[start:end])
            start = match.start()
        end = match.end()
    if start is not None:
        pieces.append(paragraph[start:end])
    return pieces


def chunk_with_overlap(text: str, config: ChunkingConfig, seed: str = "") -> List[str]:
    """
    Accumulate paragraphs until the next one would exceed ``max_tokens``.

    Every chunk after the first opens with the trailing ``overlap_tokens`` of
    the chunk before it. ``seed`` pre-fills the first chunk the same way.
    """
    paragraphs: List[str] = []
    for para in _PARAGRAPH_SPLIT_RE.split(text):
        para = para.strip()
        if para:
            paragraphs.extend(_split_oversized(para, config.max_tokens, config.target_tokens))

    chunks: List[str] = []
    current = seed.strip()
    has_content = False

    for para in paragraphs:
        candidate = f"{current}\n\n{para}" if current else para
        if has_content and estimate_tokens(candidate) > config.max_tokens:
            chunks.append(current)
            overlap = last_n_tokens(current, config.overlap_tokens)
            current = f"{overlap}\n\n{para}" if overlap else para
        else:
            current = candidate
        has_content = True

    if has_content and current.strip():
        chunks.append(current.strip())

    return chunks


def chunk_document(item: ContentItem, config: Optional[ChunkingConfig] = None) -> List[Chunk]:
    """
    Chunk a content item by heading boundaries.

    Chunks under ``min_tokens`` are dropped with a warning; a document can
    legitimately yield no chunks at all.
    """
    config = config or ChunkingConfig()
    chunks: List[Chunk] = []
    global_index = 0
    previous_tail = ""
    # Repeated headings continue the same ordinal sequence.
    ordinals: Dict[str, int] = {}

    for section in split_by_headings(item.content):
        label = section.heading or INTRO_LABEL
        seed = last_n_tokens(previous_tail, config.overlap_tokens) if previous_tail else ""
        texts = chunk_with_overlap(section.content, config, seed=seed)

        for text in texts:
            ordinal = ordinals.get(label, 0)
            ordinals[label] = ordinal + 1
            chunk_id = f"{item.id}#{label}-{ordinal}"
            tokens = estimate_tokens(text)
            if tokens < config.min_tokens:
                logger.warning("Skipping small chunk (%d tokens): %s", tokens, chunk_id)
                continue

            chunks.append(
                Chunk(
                    id=chunk_id,
                    parent_id=item.id,
                    text=text,
                    tokens=tokens,
                    metadata=ChunkMetadata(
                        type=item.type,
                        title=item.title,
                        section=section.heading,
                        tags=list(item.metadata.tags),
                        url=f"/{item.type}/{item.slug}",
                        index=global_index,
                    ),
                )
            )
            global_index += 1

        if texts:
            previous_tail = texts[-1]

    return chunks


def chunk_all(items: Iterable[ContentItem], config: Optional[ChunkingConfig] = None) -> List[Chunk]:
    """Chunk every item, preserving item order."""
    all_chunks: List[Chunk] = []
    for item in items:
        all_chunks.extend(chunk_document(item, config))
    return all_chunks
