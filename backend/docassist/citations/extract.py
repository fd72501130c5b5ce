"""Source extraction from completion output.

Collects cited file ids and quotes from message annotations and file_search
tool results, and deduplicates them for the final reply.
"""

import re
from dataclasses import dataclass
from typing import Any

QUOTE_KEY_CHARS = 80
SNIPPET_MAX_CHARS = 240

_SECTION = re.compile(r"Section:\s*(.+)", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class RawSource:
    """A cited file id with the quoted text, before metadata resolution."""

    file_id: str
    quote: str


def _file_id(entry: dict[str, Any]) -> str | None:
    file_id = entry.get("file_id")
    if not file_id and isinstance(entry.get("file"), dict):
        file_id = entry["file"].get("id")
    return str(file_id) if file_id else None


def extract_sources(output: list[dict[str, Any]]) -> list[RawSource]:
    """Extract unique sources from completion output items.

    Args:
        output: Output items as dicts (messages with annotations, file_search calls)

    Returns:
        Sources in first-seen order, deduplicated by (file_id, quote prefix)
    """
    found: list[RawSource] = []

    for item in output:
        for content in item.get("content") or []:
            if not isinstance(content, dict):
                continue
            for annotation in content.get("annotations") or []:
                file_id = _file_id(annotation)
                if not file_id:
                    continue
                quote = annotation.get("quote") or annotation.get("text") or content.get("text")
                found.append(RawSource(file_id=file_id, quote=str(quote or "")))

        if item.get("type") == "file_search_call":
            for result in item.get("results") or []:
                file_id = _file_id(result)
                if not file_id:
                    continue
                quote = result.get("text") or result.get("snippet") or ""
                found.append(RawSource(file_id=file_id, quote=str(quote)))

    # Use dict for deduplication by (file_id, quote prefix) key
    unique: dict[tuple[str, str], RawSource] = {}
    for source in found:
        key = (source.file_id, source.quote[:QUOTE_KEY_CHARS])
        if key not in unique:
            unique[key] = source

    return list(unique.values())


def extract_section(quote: str) -> str:
    """Heading path from a chunk's "Section: ..." header line, if quoted."""
    match = _SECTION.search(quote or "")
    return match.group(1).strip() if match else ""


def clip_snippet(text: str, max_len: int = SNIPPET_MAX_CHARS) -> str:
    """Collapse whitespace and clip to max_len characters."""
    snippet = _WHITESPACE.sub(" ", text or "").strip()
    if len(snippet) <= max_len:
        return snippet
    return snippet[:max_len] + "…"


def extract_plan_passages(text: str, limit: int = 6) -> list[str]:
    """Bullet-prefixed lines of a plan response, capped at limit."""
    passages: list[str] = []
    for line in (text or "").split("\n"):
        match = re.match(r"^-\s+(.+)", line)
        if match and match.group(1).strip():
            passages.append(match.group(1).strip())
    return passages[:limit]
