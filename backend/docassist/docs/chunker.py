"""Chunk builder - token-budgeted, heading-aware chunks with trailing overlap."""

import math
import re
from dataclasses import dataclass

from backend.docassist.docs.normalize import normalize_text
from backend.docassist.docs.segmenter import Section, split_sections

DEFAULT_CHARS_PER_TOKEN = 4
SECTION_PREFIX = "Section: "
NO_HEADING = "(no heading)"

_PARAGRAPH_BREAK = re.compile(r"\n{2,}")


@dataclass(frozen=True)
class Chunk:
    """A retrieval-sized piece of text: section header line, blank line, body."""

    path: tuple[str, ...]
    text: str

    @property
    def section_path(self) -> str:
        return " > ".join(self.path)


def estimate_tokens(text: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Approximate token count from character length (never below 1)."""
    return max(1, math.ceil(len(text) / chars_per_token))


def section_header(path: tuple[str, ...]) -> str:
    """Header line naming the heading path of a chunk."""
    return SECTION_PREFIX + (" > ".join(path) if path else NO_HEADING)


def _hard_split(paragraph: str, window_chars: int, overlap_chars: int) -> list[str]:
    """Split an oversized paragraph into fixed character windows with overlap."""
    step = window_chars - overlap_chars if overlap_chars < window_chars else window_chars
    windows: list[str] = []
    start = 0
    while start < len(paragraph):
        end = start + window_chars
        windows.append(paragraph[start:end])
        if end >= len(paragraph):
            break
        start += step
    return windows


def build_chunks(
    sections: list[Section],
    *,
    max_tokens: int,
    overlap_tokens: int,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
) -> list[Chunk]:
    """Pack section paragraphs into chunks within a token budget.

    Deterministic, no I/O. Per section:
        1. Split the body into blank-line-delimited paragraphs
        2. Greedily accumulate paragraphs while the estimate stays within max_tokens
        3. On overflow, flush the buffer and seed the next one with the last
           overlap_tokens worth of characters from the flushed text
        4. A paragraph that alone exceeds max_tokens is hard-split into
           max_tokens-sized character windows overlapping by overlap_tokens,
           each emitted directly
        5. Every chunk is prefixed with its section header; empty chunks are
           never emitted

    Args:
        sections: Sections from split_sections()
        max_tokens: Token budget per chunk body
        overlap_tokens: Trailing overlap carried into the next chunk
        chars_per_token: Character-per-token ratio for the estimate

    Returns:
        Chunks in document order
    """
    overlap_chars = max(0, overlap_tokens) * chars_per_token
    window_chars = max_tokens * chars_per_token
    chunks: list[Chunk] = []

    for section in sections:
        header = section_header(section.path)

        def emit(body: str, path: tuple[str, ...] = section.path, header: str = header) -> None:
            body = body.strip()
            if body:
                chunks.append(Chunk(path=path, text=f"{header}\n\n{body}"))

        buffer = ""
        for paragraph in _PARAGRAPH_BREAK.split(section.text):
            if not paragraph.strip():
                continue

            candidate = f"{buffer}\n\n{paragraph}" if buffer else paragraph
            if estimate_tokens(candidate, chars_per_token) <= max_tokens:
                buffer = candidate
                continue

            seed = ""
            if buffer:
                emit(buffer)
                if overlap_chars > 0:
                    seed = buffer[-overlap_chars:]

            if estimate_tokens(paragraph, chars_per_token) > max_tokens:
                for window in _hard_split(paragraph, window_chars, overlap_chars):
                    emit(window)
                buffer = ""
                continue

            seeded = f"{seed}\n\n{paragraph}" if seed else paragraph
            buffer = seeded if estimate_tokens(seeded, chars_per_token) <= max_tokens else paragraph

        emit(buffer)

    return chunks


def chunk_text(
    text: str,
    *,
    enabled: bool = True,
    max_tokens: int = 700,
    overlap_tokens: int = 150,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
) -> list[Chunk]:
    """Normalize, segment and chunk raw text.

    With chunking disabled the whole normalized text is a single chunk.
    """
    normalized = normalize_text(text)
    if not normalized:
        return []

    if not enabled:
        return [Chunk(path=(), text=normalized)]

    return build_chunks(
        split_sections(normalized),
        max_tokens=max_tokens,
        overlap_tokens=overlap_tokens,
        chars_per_token=chars_per_token,
    )
