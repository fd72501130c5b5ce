"""Integration tests for document, tab and upload synchronization."""

from unittest.mock import AsyncMock

import pytest

from backend.docassist.db.inmemory import InMemoryMetadataStore
from backend.docassist.db.sql_repositories import SqlMetadataStore
from backend.docassist.errors import EmptyContentError, ExternalServiceError, ValidationError
from backend.docassist.knowledge.engine import DocAssistEngine
from backend.docassist.llm.client import InMemoryKnowledgeService

TWO_SECTIONS = "# Intro\n\nWelcome to the project.\n\n# Usage\n\nRun the tool daily."


def _doc_index_uploads(service: InMemoryKnowledgeService, index_id: str) -> list[str]:
    return [filename for target, filename in service.uploads if target == index_id]


@pytest.mark.asyncio
async def test_unchanged_document_is_uploaded_once(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    first = await engine.sync_document("doc-1", "Hello world", title="Notes", file_scope=False)
    second = await engine.sync_document("doc-1", "Hello world", title="Notes", file_scope=False)

    session = await engine.store.get_session("doc-1")
    assert session is not None
    assert first.reused is False
    assert second.reused is True
    assert second.vector_store_file_id == first.vector_store_file_id
    assert second.docs_file_id == first.docs_file_id
    assert len(_doc_index_uploads(service, session.vector_store_id)) == 1


@pytest.mark.asyncio
async def test_chunks_and_parent_are_recorded(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    result = await engine.sync_document("doc-1", TWO_SECTIONS, title="Guide", file_scope=False)

    units = await engine.store.list_units("doc-1")
    kinds = sorted(unit.kind for unit in units)
    assert kinds == ["doc", "doc_chunk", "doc_chunk"]

    parent = next(unit for unit in units if unit.kind == "doc")
    assert parent.id == result.docs_file_id
    assert parent.vector_store_file_id == result.vector_store_file_id
    assert parent.filename.startswith("Guide_doc-1")

    session = await engine.store.get_session("doc-1")
    assert session is not None
    filenames = _doc_index_uploads(service, session.vector_store_id)
    assert filenames == ["Guide_doc-1__intro__part-1.txt", "Guide_doc-1__usage__part-2.txt"]
    uploaded = list(service.files[session.vector_store_id].values())
    assert uploaded[0].decode().startswith("Section: Intro\n\n# Intro")


@pytest.mark.asyncio
async def test_edited_document_reuses_unchanged_chunks(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    await engine.sync_document("doc-1", TWO_SECTIONS, file_scope=False)
    edited = TWO_SECTIONS.replace("daily", "weekly")

    result = await engine.sync_document("doc-1", edited, file_scope=False)

    session = await engine.store.get_session("doc-1")
    assert session is not None
    assert result.reused is False
    # Intro chunk reused, only the changed Usage chunk uploaded again
    assert len(_doc_index_uploads(service, session.vector_store_id)) == 3
    parents = await engine.list_files("doc-1")
    assert len(parents) == 2


@pytest.mark.asyncio
async def test_same_text_in_two_tabs_is_kept_apart(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    first = await engine.sync_tab("doc-1", "t.1", "Shared text", title="A", file_scope=False)
    second = await engine.sync_tab("doc-1", "t.2", "Shared text", title="B", file_scope=False)

    assert first.reused is False
    assert second.reused is False
    assert first.vector_store_file_id != second.vector_store_file_id

    parents = await engine.list_files("doc-1")
    assert sorted(entry.filename for entry in parents) == [
        "tab_A_t.1_doc-1.txt",
        "tab_B_t.2_doc-1.txt",
    ]
    assert len({entry.sha256 for entry in parents}) == 2


@pytest.mark.asyncio
async def test_replace_knowledge_retires_previous_units(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    await engine.sync_document("doc-1", TWO_SECTIONS, file_scope=False)

    result = await engine.sync_document(
        "doc-1", "Completely new text.", replace_knowledge=True, file_scope=False
    )

    assert result.reused is False
    assert len(service.deleted_files) == 2
    units = await engine.store.list_units("doc-1")
    assert sorted(unit.kind for unit in units) == ["doc", "doc_chunk"]
    assert all(unit.vector_store_file_id == result.vector_store_file_id for unit in units)


@pytest.mark.asyncio
async def test_replace_keeps_rows_whose_handles_survive(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    await engine.sync_document("doc-1", "Old text", file_scope=False)
    service.delete_index_file = AsyncMock(  # type: ignore[method-assign]
        side_effect=ExternalServiceError("delete_index_file", "unavailable")
    )

    await engine.sync_document("doc-1", "New text", replace_knowledge=True, file_scope=False)

    parents = await engine.list_files("doc-1")
    assert len(parents) == 2


@pytest.mark.asyncio
async def test_replace_upload_discards_fresh_copy_when_old_handle_survives(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    first = await engine.upload_file("doc-1", "notes.bin", b"\x00\x01payload")
    delete_index_file = service.delete_index_file

    async def fail_for_first(index_id: str, file_id: str) -> None:
        if file_id == first.vector_store_file_id:
            raise ExternalServiceError("delete_index_file", "unavailable")
        await delete_index_file(index_id, file_id)

    service.delete_index_file = fail_for_first  # type: ignore[method-assign]

    second = await engine.upload_file(
        "doc-1", "notes.bin", b"\x00\x01payload", replace_knowledge=True
    )

    assert second.reused is True
    assert second.vector_store_file_id == first.vector_store_file_id
    assert second.docs_file_id == first.docs_file_id
    assert second.file_vector_store_id == first.file_vector_store_id

    session = await engine.store.get_session("doc-1")
    assert session is not None
    assert list(service.files[session.vector_store_id]) == [first.vector_store_file_id]
    assert len(service.deleted_files) == 1
    assert len(service.deleted_indexes) == 1
    assert first.file_vector_store_id in service.indexes


@pytest.mark.asyncio
async def test_file_scope_creates_dedicated_index(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    result = await engine.sync_document("doc-1", TWO_SECTIONS, title="Guide")

    assert result.has_file_scope is True
    assert result.file_vector_store_id is not None
    metadata = service.indexes[result.file_vector_store_id]
    assert metadata["doc_id"] == "doc-1"
    assert metadata["kind"] == "doc"
    assert len(service.files[result.file_vector_store_id]) == 2

    units = await engine.store.list_units("doc-1")
    assert all(unit.file_vector_store_id == result.file_vector_store_id for unit in units)
    assert all(unit.file_vector_store_file_id for unit in units)


@pytest.mark.asyncio
async def test_tab_file_scope_metadata_names_tab(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    result = await engine.sync_tab("doc-1", "t.9", "Tab body")

    assert result.file_vector_store_id is not None
    assert service.indexes[result.file_vector_store_id]["tab_id"] == "t.9"


@pytest.mark.asyncio
async def test_empty_document_is_rejected(engine: DocAssistEngine) -> None:
    with pytest.raises(EmptyContentError, match="This doc is empty."):
        await engine.sync_document("doc-1", " \n \n ")


@pytest.mark.asyncio
async def test_empty_tab_and_blank_tab_id_are_rejected(engine: DocAssistEngine) -> None:
    with pytest.raises(EmptyContentError, match="This tab is empty."):
        await engine.sync_tab("doc-1", "t.1", "")
    with pytest.raises(ValidationError, match="Missing 'tabId'"):
        await engine.sync_tab("doc-1", "  ", "text")


@pytest.mark.asyncio
async def test_missing_doc_id_is_rejected(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    with pytest.raises(ValidationError, match="Missing 'docId'"):
        await engine.sync_document("   ", "text")

    assert service.conversations == {}


@pytest.mark.asyncio
async def test_sync_updates_rolling_summary(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    await engine.sync_document("doc-1", "Hello world", title="Notes", file_scope=False)

    session = await engine.store.get_session("doc-1")
    assert session is not None
    assert session.doc_summary == service.reply_text

    summary_call = service.respond_calls[-1]
    assert summary_call["index_ids"] == []
    assert summary_call["conversation_id"] is None
    assert "Content (doc: Notes):\nHello world" in summary_call["input"]


@pytest.mark.asyncio
async def test_summary_failure_does_not_fail_sync(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    service.respond = AsyncMock(  # type: ignore[method-assign]
        side_effect=ExternalServiceError("respond", "unavailable")
    )

    result = await engine.sync_document("doc-1", "Hello world", file_scope=False)

    assert result.reused is False
    session = await engine.store.get_session("doc-1")
    assert session is not None
    assert session.doc_summary is None


@pytest.mark.asyncio
async def test_summary_disabled(
    memory_store: InMemoryMetadataStore, service: InMemoryKnowledgeService, settings_factory
) -> None:  # type: ignore[no-untyped-def]
    engine = DocAssistEngine(memory_store, service, settings_factory(summary_enabled=False))

    await engine.sync_document("doc-1", "Hello world", file_scope=False)

    assert service.respond_calls == []


@pytest.mark.asyncio
async def test_upload_file_is_deduplicated_by_bytes(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    content = b"# Notes\n\nplain text"

    first = await engine.upload_file("doc-1", "my notes.md", content, mime_type="text/markdown")
    second = await engine.upload_file("doc-1", "renamed.md", content, mime_type="text/markdown")

    assert first.has_file_scope is True
    assert first.file_vector_store_id in service.indexes
    assert second.reused is True
    assert second.vector_store_file_id == first.vector_store_file_id

    entries = await engine.list_files("doc-1")
    assert [(entry.kind, entry.filename) for entry in entries] == [("upload", "my_notes.md")]
    assert len(service.respond_calls) == 1


@pytest.mark.asyncio
async def test_binary_upload_skips_summary(
    engine: DocAssistEngine, service: InMemoryKnowledgeService
) -> None:
    await engine.upload_file("doc-1", "chart.png", b"\x89PNG\r\n", mime_type="image/png")

    assert service.respond_calls == []


@pytest.mark.asyncio
async def test_upload_limits(
    memory_store: InMemoryMetadataStore, service: InMemoryKnowledgeService, settings_factory
) -> None:  # type: ignore[no-untyped-def]
    engine = DocAssistEngine(memory_store, service, settings_factory(max_upload_bytes=8))

    with pytest.raises(ValidationError, match="Invalid 'contentBase64'"):
        await engine.upload_file("doc-1", "a.txt", b"")
    with pytest.raises(ValidationError, match="File too large"):
        await engine.upload_file("doc-1", "a.txt", b"0123456789")

    assert service.conversations == {}


@pytest.mark.asyncio
async def test_sync_against_sql_store(sql_store: SqlMetadataStore, settings) -> None:  # type: ignore[no-untyped-def]
    service = InMemoryKnowledgeService()
    engine = DocAssistEngine(sql_store, service, settings)

    first = await engine.sync_document("doc-1", TWO_SECTIONS, title="Guide")
    second = await engine.sync_document("doc-1", TWO_SECTIONS, title="Guide")

    assert second.reused is True
    assert second.docs_file_id == first.docs_file_id
    entries = await engine.list_files("doc-1")
    assert len(entries) == 1
    assert entries[0].has_file_scope is True
