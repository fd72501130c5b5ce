"""Text normalizer - canonical form so identical content hashes identically."""

import re

_LINE_BREAKS = re.compile(r"\r\n?|\u2028|\u2029")
_TRAILING_SPACE = re.compile(r"[ \t]+\n")
_BLANK_RUNS = re.compile(r"\n{3,}")


def normalize_text(text: str | None) -> str:
    """Normalize raw text.

    Pure and idempotent: normalize_text(normalize_text(x)) == normalize_text(x).

    Rules, in order:
        1. All line-break variants become "\\n"
        2. Non-breaking spaces become ordinary spaces
        3. Trailing spaces/tabs before a line break are removed
        4. Runs of 3+ newlines collapse to a single blank line
        5. Leading/trailing whitespace is trimmed
    """
    if not text:
        return ""

    normalized = _LINE_BREAKS.sub("\n", text)
    normalized = normalized.replace("\u00a0", " ")
    normalized = _TRAILING_SPACE.sub("\n", normalized)
    normalized = _BLANK_RUNS.sub("\n\n", normalized)
    return normalized.strip()
