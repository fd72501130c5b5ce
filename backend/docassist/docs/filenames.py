"""Display filenames for synchronized units."""

import re

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")
_NON_SLUG = re.compile(r"[^a-z0-9]+")


def safe_name(value: str, fallback: str) -> str:
    """Replace filename-unsafe runs with underscores."""
    cleaned = _UNSAFE.sub("_", value or "")
    return cleaned or fallback


def slugify(value: str, max_len: int = 60) -> str:
    """Lowercase dash-separated slug, "section" when nothing survives."""
    slug = _NON_SLUG.sub("-", (value or "").lower()).strip("-") or "section"
    return slug[:max_len]


def clip(filename: str, max_chars: int) -> str:
    return filename[:max_chars]


def doc_filename(title: str, doc_id: str) -> str:
    return f"{safe_name(title, 'document')}_{doc_id[:8]}.txt"


def doc_chunk_filename(title: str, doc_id: str, section_path: str, part: int) -> str:
    slug = slugify(section_path or f"part-{part}")
    return f"{safe_name(title, 'document')}_{doc_id[:8]}__{slug}__part-{part}.txt"


def tab_filename(title: str, tab_id: str, doc_id: str) -> str:
    return f"tab_{safe_name(title, 'tab')}_{safe_name(tab_id, 'tab')}_{doc_id[:8]}.txt"


def tab_chunk_filename(title: str, tab_id: str, section_path: str, part: int) -> str:
    slug = slugify(section_path or f"part-{part}")
    return f"tab_{safe_name(title, 'tab')}_{safe_name(tab_id, 'tab')}_{slug}__part-{part}.txt"
