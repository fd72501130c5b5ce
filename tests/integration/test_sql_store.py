"""Integration tests for the SQL metadata store on SQLite."""

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.docassist.db.engine import ensure_schema
from backend.docassist.db.history import HistoryLedger
from backend.docassist.db.repositories import NewUnit, SessionRecord, TransactionalStore
from backend.docassist.db.sql_repositories import SqlMetadataStore


def _unit(sha: str, *, kind: str = "doc_chunk", handle: str = "file_a") -> NewUnit:
    return NewUnit(
        doc_id="doc-1",
        kind=kind,
        filename=f"{sha[:4]}.txt",
        sha256=sha,
        vector_store_file_id=handle,
    )


def test_sql_store_is_transactional(sql_store: SqlMetadataStore) -> None:
    assert isinstance(sql_store, TransactionalStore)


@pytest.mark.asyncio
async def test_session_roundtrip_and_updates(sql_store: SqlMetadataStore) -> None:
    await sql_store.insert_session(
        SessionRecord(doc_id="doc-1", conversation_id="conv_1", vector_store_id="vs_1")
    )

    await sql_store.update_session("doc-1", instructions="Be terse", model="gpt-test")
    await sql_store.update_summary("doc-1", "A short summary")
    session = await sql_store.get_session("doc-1")

    assert session is not None
    assert session.conversation_id == "conv_1"
    assert session.instructions == "Be terse"
    assert session.model == "gpt-test"
    assert session.doc_summary == "A short summary"
    assert session.doc_summary_updated_at is not None
    assert await sql_store.get_session("doc-2") is None


@pytest.mark.asyncio
async def test_duplicate_unit_is_ignored(sql_store: SqlMetadataStore) -> None:
    sha = "a" * 64

    await sql_store.record_unit(_unit(sha, handle="file_a"))
    await sql_store.record_unit(_unit(sha, handle="file_b"))

    units = await sql_store.list_units("doc-1")
    assert len(units) == 1
    assert units[0].vector_store_file_id == "file_a"


@pytest.mark.asyncio
async def test_refresh_on_conflict_keeps_document_handle(sql_store: SqlMetadataStore) -> None:
    sha = "b" * 64
    await sql_store.record_unit(_unit(sha, handle="file_a"))

    await sql_store.record_unit(
        NewUnit(
            doc_id="doc-1",
            kind="doc_chunk",
            filename="renamed.txt",
            sha256=sha,
            vector_store_file_id="file_b",
            file_vector_store_id="vs_scope",
            file_vector_store_file_id="file_scope",
        ),
        refresh_on_conflict=True,
    )

    unit = await sql_store.find_unit("doc-1", "doc_chunk", sha)
    assert unit is not None
    assert unit.filename == "renamed.txt"
    assert unit.vector_store_file_id == "file_a"
    assert unit.file_vector_store_id == "vs_scope"
    assert unit.file_vector_store_file_id == "file_scope"


@pytest.mark.asyncio
async def test_units_are_scoped_by_document(sql_store: SqlMetadataStore) -> None:
    await sql_store.record_unit(_unit("c" * 64))
    recorded = await sql_store.find_unit("doc-1", "doc_chunk", "c" * 64)
    assert recorded is not None

    assert await sql_store.get_unit("doc-1", recorded.id) is not None
    assert await sql_store.get_unit("doc-2", recorded.id) is None
    assert await sql_store.units_by_file_ids("doc-2", ["file_a"]) == []


@pytest.mark.asyncio
async def test_parents_only_listing_hides_chunks(sql_store: SqlMetadataStore) -> None:
    await sql_store.record_unit(_unit("d" * 64, kind="doc", handle="file_1"))
    await sql_store.record_unit(_unit("e" * 64, kind="doc_chunk", handle="file_1"))
    await sql_store.record_unit(_unit("f" * 64, kind="tab_chunk", handle="file_2"))
    await sql_store.record_unit(_unit("0" * 64, kind="upload", handle="file_3"))

    parents = await sql_store.list_units("doc-1", parents_only=True)

    assert sorted(unit.kind for unit in parents) == ["doc", "upload"]
    assert len(await sql_store.list_units("doc-1")) == 4


@pytest.mark.asyncio
async def test_delete_units_by_file_ids(sql_store: SqlMetadataStore) -> None:
    await sql_store.record_unit(_unit("1" * 64, handle="file_1"))
    await sql_store.record_unit(_unit("2" * 64, handle="file_2"))

    removed = await sql_store.delete_units_by_file_ids("doc-1", ["file_1", "file_missing"])

    assert removed == 1
    assert [unit.vector_store_file_id for unit in await sql_store.list_units("doc-1")] == [
        "file_2"
    ]
    assert await sql_store.delete_units_by_file_ids("doc-1", []) == 0


@pytest.mark.asyncio
async def test_history_is_trimmed_to_window(sql_store: SqlMetadataStore) -> None:
    ledger = HistoryLedger(sql_store, max_turns=2)

    for i in range(3):
        await ledger.append_turn("doc-1", f"question {i}", f"answer {i}")

    history = await ledger.get_history("doc-1")
    assert [entry.content for entry in history] == [
        "question 1",
        "answer 1",
        "question 2",
        "answer 2",
    ]
    assert [entry.role for entry in history] == ["user", "assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_delete_document_reports_counts(sql_store: SqlMetadataStore) -> None:
    await sql_store.insert_session(
        SessionRecord(doc_id="doc-1", conversation_id="conv_1", vector_store_id="vs_1")
    )
    await sql_store.record_unit(_unit("3" * 64, handle="file_1"))
    await sql_store.record_unit(_unit("4" * 64, handle="file_2"))
    await sql_store.append_history("doc-1", "user", "hi")
    await sql_store.append_history("doc-2", "user", "other doc")

    deleted = await sql_store.delete_document("doc-1")

    assert deleted.chat_history == 1
    assert deleted.docs_files == 2
    assert deleted.docs_sessions == 1
    assert await sql_store.count_history("doc-2") == 1

    again = await sql_store.delete_document("doc-1")
    assert (again.chat_history, again.docs_files, again.docs_sessions) == (0, 0, 0)


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(sql_store: SqlMetadataStore) -> None:
    with pytest.raises(RuntimeError):
        async with sql_store.transaction("doc-1") as tx:
            await tx.insert_session(
                SessionRecord(doc_id="doc-1", conversation_id="conv_1", vector_store_id="vs_1")
            )
            raise RuntimeError("abort")

    assert await sql_store.get_session("doc-1") is None


@pytest.mark.asyncio
async def test_ensure_schema_collapses_legacy_duplicates(sqlite_engine: AsyncEngine) -> None:
    async with sqlite_engine.begin() as conn:
        await conn.execute(text("DROP INDEX docs_files_doc_id_kind_sha256_uidx"))
        for handle, created_at in (
            ("file_old", "2024-01-01 00:00:00"),
            ("file_new", "2024-06-01 00:00:00"),
        ):
            await conn.execute(
                text(
                    "INSERT INTO docs_files (doc_id, kind, filename, sha256, "
                    "vector_store_file_id, created_at) "
                    "VALUES ('doc-1', 'doc', 'a.txt', :sha, :handle, :created_at)"
                ),
                {"sha": "5" * 64, "handle": handle, "created_at": created_at},
            )

    await ensure_schema(sqlite_engine)

    store = SqlMetadataStore(sqlite_engine)
    units = await store.list_units("doc-1")
    assert [unit.vector_store_file_id for unit in units] == ["file_new"]

    await store.record_unit(_unit("5" * 64, kind="doc", handle="file_again"))
    assert len(await store.list_units("doc-1")) == 1
