"""Structural segmenter - split normalized text into heading-scoped sections."""

import re
from dataclasses import dataclass

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+)$")


@dataclass(frozen=True)
class Section:
    """A run of lines under one heading path."""

    path: tuple[str, ...]
    text: str


def split_sections(text: str) -> list[Section]:
    """Split normalized text into sections in document order.

    A heading line ("#" to "######") starts a new section and replaces every
    heading at its level or deeper on the current path. The heading line itself
    stays in the section body. Text before the first heading (or text with no
    headings at all) forms a section with an empty path.

    Args:
        text: Normalized text

    Returns:
        Sections with non-empty, trimmed bodies
    """
    sections: list[Section] = []
    stack: list[tuple[int, str]] = []
    current_path: tuple[str, ...] = ()
    current_lines: list[str] = []

    def flush() -> None:
        body = "\n".join(current_lines).strip()
        if body:
            sections.append(Section(path=current_path, text=body))

    for line in text.split("\n"):
        match = HEADING_PATTERN.match(line)
        if match is None:
            current_lines.append(line)
            continue

        flush()
        level = len(match.group(1))
        while stack and stack[-1][0] >= level:
            stack.pop()
        stack.append((level, match.group(2).strip()))

        current_path = tuple(title for _, title in stack)
        current_lines = [line]

    flush()

    if not sections and text.strip():
        sections.append(Section(path=(), text=text.strip()))

    return sections
