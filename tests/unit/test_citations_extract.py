"""Unit tests for source extraction."""

from backend.docassist.citations.extract import (
    RawSource,
    clip_snippet,
    extract_plan_passages,
    extract_section,
    extract_sources,
)


def test_sources_from_annotations_and_tool_results() -> None:
    output = [
        {
            "type": "file_search_call",
            "results": [
                {"file_id": "file_1", "text": "Section: Intro\n\nHello"},
                {"file_id": None, "text": "ignored"},
            ],
        },
        {
            "type": "message",
            "content": [
                {
                    "type": "output_text",
                    "text": "Answer text",
                    "annotations": [
                        {"type": "file_citation", "file_id": "file_2"},
                        {"type": "url_citation", "url": "https://example.com"},
                    ],
                }
            ],
        },
    ]

    sources = extract_sources(output)

    assert sources == [
        RawSource(file_id="file_1", quote="Section: Intro\n\nHello"),
        RawSource(file_id="file_2", quote="Answer text"),
    ]


def test_sources_deduplicated_by_file_and_quote_prefix() -> None:
    shared = "x" * 80
    output = [
        {
            "type": "file_search_call",
            "results": [
                {"file_id": "file_1", "text": shared + " first tail"},
                {"file_id": "file_1", "text": shared + " second tail"},
                {"file_id": "file_2", "text": shared},
                {"file": {"id": "file_1"}, "text": "different"},
            ],
        }
    ]

    sources = extract_sources(output)

    assert [(s.file_id, s.quote[-6:]) for s in sources] == [
        ("file_1", "t tail"),
        ("file_2", "xxxxxx"),
        ("file_1", "ferent"),
    ]


def test_empty_output_has_no_sources() -> None:
    assert extract_sources([]) == []
    assert extract_sources([{"type": "message", "content": None}]) == []


def test_extract_section_from_chunk_header() -> None:
    assert extract_section("Section: Guide > Setup\n\n# Setup\nsteps") == "Guide > Setup"
    assert extract_section("no header here") == ""


def test_clip_snippet_collapses_whitespace_and_clips() -> None:
    assert clip_snippet("  a\n\n b\tc  ") == "a b c"
    clipped = clip_snippet("y" * 300)
    assert clipped == "y" * 240 + "…"


def test_plan_passages_parsed_and_capped() -> None:
    plan = "PLAN:\n- step one\nPASSAGES:\n" + "\n".join(f"- quote {i}" for i in range(8))

    passages = extract_plan_passages(plan)

    assert passages == ["step one", "quote 0", "quote 1", "quote 2", "quote 3", "quote 4"]
