"""SQL implementation of the metadata store."""

import asyncio
import weakref
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backend.docassist.db.models import ChatHistory, DocFile, DocSession
from backend.docassist.db.repositories import (
    CHUNK_KINDS,
    DeletedCounts,
    HistoryEntry,
    NewUnit,
    SessionRecord,
    UnitRecord,
)


def _to_session_record(row: DocSession) -> SessionRecord:
    return SessionRecord(
        doc_id=row.doc_id,
        conversation_id=row.conversation_id,
        vector_store_id=row.vector_store_id,
        instructions=row.instructions,
        model=row.model,
        doc_summary=row.doc_summary,
        doc_summary_updated_at=row.doc_summary_updated_at,
    )


def _to_unit_record(row: DocFile) -> UnitRecord:
    return UnitRecord(
        id=row.id,
        doc_id=row.doc_id,
        kind=row.kind,
        filename=row.filename,
        sha256=row.sha256,
        vector_store_file_id=row.vector_store_file_id,
        file_vector_store_id=row.file_vector_store_id,
        file_vector_store_file_id=row.file_vector_store_file_id,
        created_at=row.created_at,
    )


class SqlMetadataStore:
    """SQL implementation of MetadataStore and TransactionalStore.

    Each call runs in its own short transaction, unless the store was yielded
    by `transaction()`, in which case all calls share that transaction.

    Advisory locking uses pg_advisory_xact_lock on PostgreSQL. Other dialects
    (SQLite in tests) fall back to an in-process lock per key, which only
    serializes callers within one process.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)
        self._bound: AsyncSession | None = None
        self._local_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def _bind(self, session: AsyncSession) -> "SqlMetadataStore":
        bound = SqlMetadataStore.__new__(SqlMetadataStore)
        bound._engine = self._engine
        bound._session_factory = self._session_factory
        bound._bound = session
        bound._local_locks = self._local_locks
        return bound

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self._bound is not None:
            yield self._bound
            return

        async with self._session_factory() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def transaction(self, lock_key: str) -> AsyncIterator["SqlMetadataStore"]:
        """Open a transaction holding an advisory lock on lock_key."""
        if self.dialect == "postgresql":
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": lock_key}
                    )
                    yield self._bind(session)
            return

        lock = self._local_locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._local_locks[lock_key] = lock

        async with lock:
            async with self._session_factory() as session:
                async with session.begin():
                    yield self._bind(session)

    def _insert(self) -> Callable[..., Any]:
        if self.dialect == "postgresql":
            return postgresql.insert
        if self.dialect == "sqlite":
            return sqlite.insert
        raise ValueError(f"Unsupported dialect for insert-or-ignore: {self.dialect}")

    # Sessions

    async def get_session(self, doc_id: str) -> SessionRecord | None:
        """Get the session row for a document, if any."""
        async with self._session() as session:
            row = await session.get(DocSession, doc_id)
            return _to_session_record(row) if row is not None else None

    async def insert_session(self, record: SessionRecord) -> None:
        """Insert a new session row."""
        async with self._session() as session:
            session.add(
                DocSession(
                    doc_id=record.doc_id,
                    conversation_id=record.conversation_id,
                    vector_store_id=record.vector_store_id,
                    instructions=record.instructions,
                    model=record.model,
                )
            )
            await session.flush()

    async def update_session(
        self,
        doc_id: str,
        *,
        instructions: str | None = None,
        model: str | None = None,
    ) -> None:
        """Update instructions and/or model on an existing session row."""
        values: dict[str, object] = {}
        if instructions is not None:
            values["instructions"] = instructions
        if model is not None:
            values["model"] = model
        if not values:
            return

        async with self._session() as session:
            await session.execute(
                update(DocSession)
                .where(DocSession.doc_id == doc_id)
                .values(**values, updated_at=func.now())
            )

    async def update_summary(self, doc_id: str, summary: str) -> None:
        """Persist the rolling summary and stamp its update time."""
        async with self._session() as session:
            await session.execute(
                update(DocSession)
                .where(DocSession.doc_id == doc_id)
                .values(
                    doc_summary=summary,
                    doc_summary_updated_at=func.now(),
                    updated_at=func.now(),
                )
            )

    # Synchronized units

    async def find_unit(self, doc_id: str, kind: str, sha256: str) -> UnitRecord | None:
        """Find the newest unit for (doc_id, kind, sha256)."""
        stmt = (
            select(DocFile)
            .where(DocFile.doc_id == doc_id, DocFile.kind == kind, DocFile.sha256 == sha256)
            .order_by(DocFile.created_at.desc(), DocFile.id.desc())
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_unit_record(row) if row is not None else None

    async def get_unit(self, doc_id: str, unit_id: int) -> UnitRecord | None:
        """Get a unit by its row id, scoped to the document."""
        stmt = select(DocFile).where(DocFile.doc_id == doc_id, DocFile.id == unit_id).limit(1)
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_unit_record(row) if row is not None else None

    async def record_unit(self, unit: NewUnit, *, refresh_on_conflict: bool = False) -> None:
        """Insert a unit; a duplicate (doc_id, kind, sha256) is ignored or refreshed."""
        insert = self._insert()
        stmt = insert(DocFile).values(
            doc_id=unit.doc_id,
            kind=unit.kind,
            filename=unit.filename,
            sha256=unit.sha256,
            vector_store_file_id=unit.vector_store_file_id,
            file_vector_store_id=unit.file_vector_store_id,
            file_vector_store_file_id=unit.file_vector_store_file_id,
        )
        conflict_columns = [DocFile.doc_id, DocFile.kind, DocFile.sha256]

        if refresh_on_conflict:
            stmt = stmt.on_conflict_do_update(
                index_elements=conflict_columns,
                set_={
                    "filename": stmt.excluded.filename,
                    "vector_store_file_id": func.coalesce(
                        DocFile.vector_store_file_id, stmt.excluded.vector_store_file_id
                    ),
                    "file_vector_store_id": stmt.excluded.file_vector_store_id,
                    "file_vector_store_file_id": stmt.excluded.file_vector_store_file_id,
                },
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)

        async with self._session() as session:
            await session.execute(stmt)

    async def list_units(self, doc_id: str, *, parents_only: bool = False) -> list[UnitRecord]:
        """List units for a document, newest first."""
        stmt = select(DocFile).where(DocFile.doc_id == doc_id)
        if parents_only:
            stmt = stmt.where(DocFile.kind.not_in(sorted(CHUNK_KINDS)))
        stmt = stmt.order_by(DocFile.created_at.desc(), DocFile.id.desc())

        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_unit_record(row) for row in rows]

    async def units_by_file_ids(self, doc_id: str, file_ids: list[str]) -> list[UnitRecord]:
        """List units of a document whose document-index handle is in file_ids."""
        if not file_ids:
            return []

        stmt = select(DocFile).where(
            DocFile.doc_id == doc_id, DocFile.vector_store_file_id.in_(file_ids)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_unit_record(row) for row in rows]

    async def delete_units_by_file_ids(self, doc_id: str, file_ids: list[str]) -> int:
        """Delete units of a document whose document-index handle is in file_ids."""
        if not file_ids:
            return 0

        async with self._session() as session:
            result = await session.execute(
                delete(DocFile).where(
                    DocFile.doc_id == doc_id, DocFile.vector_store_file_id.in_(file_ids)
                )
            )
            return result.rowcount or 0

    # Chat history

    async def append_history(self, doc_id: str, role: str, content: str) -> None:
        """Append a chat history entry."""
        async with self._session() as session:
            session.add(ChatHistory(doc_id=doc_id, role=role, content=content))

    async def count_history(self, doc_id: str) -> int:
        """Count chat history entries for a document."""
        stmt = select(func.count()).select_from(ChatHistory).where(ChatHistory.doc_id == doc_id)
        async with self._session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def delete_oldest_history(self, doc_id: str, count: int) -> int:
        """Delete the oldest `count` entries for a document."""
        if count <= 0:
            return 0

        oldest = (
            select(ChatHistory.id)
            .where(ChatHistory.doc_id == doc_id)
            .order_by(ChatHistory.created_at.asc(), ChatHistory.id.asc())
            .limit(count)
        )
        async with self._session() as session:
            ids = list((await session.execute(oldest)).scalars().all())
            if not ids:
                return 0
            result = await session.execute(delete(ChatHistory).where(ChatHistory.id.in_(ids)))
            return result.rowcount or 0

    async def list_history(self, doc_id: str) -> list[HistoryEntry]:
        """List chat history for a document in creation order."""
        stmt = (
            select(ChatHistory)
            .where(ChatHistory.doc_id == doc_id)
            .order_by(ChatHistory.created_at.asc(), ChatHistory.id.asc())
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [HistoryEntry(role=row.role, content=row.content) for row in rows]

    async def delete_document(self, doc_id: str) -> DeletedCounts:
        """Delete history, units and session for a document in one transaction."""
        async with self._session() as session:
            history = await session.execute(delete(ChatHistory).where(ChatHistory.doc_id == doc_id))
            files = await session.execute(delete(DocFile).where(DocFile.doc_id == doc_id))
            sessions = await session.execute(delete(DocSession).where(DocSession.doc_id == doc_id))
            return DeletedCounts(
                chat_history=history.rowcount or 0,
                docs_files=files.rowcount or 0,
                docs_sessions=sessions.rowcount or 0,
            )
