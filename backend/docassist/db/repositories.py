"""Metadata store protocol interfaces and record types."""

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol, runtime_checkable


class UnitKind(str, Enum):
    """Kind tag of a synchronized unit."""

    doc = "doc"
    doc_chunk = "doc_chunk"
    tab = "tab"
    tab_chunk = "tab_chunk"
    upload = "upload"


CHUNK_KINDS = frozenset({UnitKind.doc_chunk.value, UnitKind.tab_chunk.value, "upload_chunk"})


@dataclass
class SessionRecord:
    """Per-document session: external handles plus instructions, model and summary."""

    doc_id: str
    conversation_id: str
    vector_store_id: str
    instructions: str | None = None
    model: str | None = None
    doc_summary: str | None = None
    doc_summary_updated_at: datetime | None = None


@dataclass
class NewUnit:
    """A synchronized unit about to be recorded."""

    doc_id: str
    kind: str
    filename: str
    sha256: str
    vector_store_file_id: str
    file_vector_store_id: str | None = None
    file_vector_store_file_id: str | None = None


@dataclass
class UnitRecord:
    """A recorded synchronized unit."""

    id: int
    doc_id: str
    kind: str
    filename: str
    sha256: str
    vector_store_file_id: str
    file_vector_store_id: str | None
    file_vector_store_file_id: str | None
    created_at: datetime


@dataclass
class HistoryEntry:
    """One chat history entry."""

    role: str
    content: str


@dataclass
class DeletedCounts:
    """Rows removed when a document's state is reset."""

    chat_history: int
    docs_files: int
    docs_sessions: int


class MetadataStore(Protocol):
    """Row storage for sessions, synchronized units and chat history."""

    async def get_session(self, doc_id: str) -> SessionRecord | None:
        """Get the session row for a document, if any."""
        ...

    async def insert_session(self, record: SessionRecord) -> None:
        """Insert a new session row.

        Raises:
            sqlalchemy.exc.IntegrityError (or equivalent): If a row already exists
        """
        ...

    async def update_session(
        self,
        doc_id: str,
        *,
        instructions: str | None = None,
        model: str | None = None,
    ) -> None:
        """Update instructions and/or model on an existing session row."""
        ...

    async def update_summary(self, doc_id: str, summary: str) -> None:
        """Persist the rolling summary and stamp its update time."""
        ...

    async def find_unit(self, doc_id: str, kind: str, sha256: str) -> UnitRecord | None:
        """Find the newest unit for (doc_id, kind, sha256)."""
        ...

    async def get_unit(self, doc_id: str, unit_id: int) -> UnitRecord | None:
        """Get a unit by its row id, scoped to the document."""
        ...

    async def record_unit(self, unit: NewUnit, *, refresh_on_conflict: bool = False) -> None:
        """Insert a unit; a duplicate (doc_id, kind, sha256) is ignored.

        Args:
            unit: Unit to record
            refresh_on_conflict: On duplicate, refresh filename and file-scope
                handles while keeping the existing document-index handle
        """
        ...

    async def list_units(self, doc_id: str, *, parents_only: bool = False) -> list[UnitRecord]:
        """List units for a document, newest first."""
        ...

    async def units_by_file_ids(self, doc_id: str, file_ids: list[str]) -> list[UnitRecord]:
        """List units of a document whose document-index handle is in file_ids."""
        ...

    async def delete_units_by_file_ids(self, doc_id: str, file_ids: list[str]) -> int:
        """Delete units of a document whose document-index handle is in file_ids."""
        ...

    async def append_history(self, doc_id: str, role: str, content: str) -> None:
        """Append a chat history entry."""
        ...

    async def count_history(self, doc_id: str) -> int:
        """Count chat history entries for a document."""
        ...

    async def delete_oldest_history(self, doc_id: str, count: int) -> int:
        """Delete the oldest `count` entries for a document."""
        ...

    async def list_history(self, doc_id: str) -> list[HistoryEntry]:
        """List chat history for a document in creation order."""
        ...

    async def delete_document(self, doc_id: str) -> DeletedCounts:
        """Delete history, units and session for a document."""
        ...


@runtime_checkable
class TransactionalStore(Protocol):
    """A metadata store that can serialize work per key inside one transaction."""

    def transaction(self, lock_key: str) -> AbstractAsyncContextManager[MetadataStore]:
        """Open a transaction holding an advisory lock on lock_key.

        The yielded store runs every operation inside that transaction. The
        transaction commits on clean exit and rolls back on error.
        """
        ...
