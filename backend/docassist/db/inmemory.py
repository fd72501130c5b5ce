"""In-memory implementation of the metadata store.

Not transactional: the resource provisioner uses its unlocked fallback path
against this store.
"""

import itertools
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from backend.docassist.db.repositories import (
    CHUNK_KINDS,
    DeletedCounts,
    HistoryEntry,
    NewUnit,
    SessionRecord,
    UnitRecord,
)


@dataclass
class _HistoryRow:
    id: int
    doc_id: str
    role: str
    content: str


class InMemoryMetadataStore:
    """In-memory implementation of MetadataStore."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}
        self._units: dict[int, UnitRecord] = {}
        self._history: list[_HistoryRow] = []
        self._ids = itertools.count(1)

    async def get_session(self, doc_id: str) -> SessionRecord | None:
        """Get the session row for a document, if any."""
        record = self._sessions.get(doc_id)
        return replace(record) if record is not None else None

    async def insert_session(self, record: SessionRecord) -> None:
        """Insert a new session row."""
        if record.doc_id in self._sessions:
            raise KeyError(f"Session already exists for doc {record.doc_id}")
        self._sessions[record.doc_id] = replace(record)

    async def update_session(
        self,
        doc_id: str,
        *,
        instructions: str | None = None,
        model: str | None = None,
    ) -> None:
        """Update instructions and/or model on an existing session row."""
        record = self._sessions.get(doc_id)
        if record is None:
            return

        if instructions is not None:
            record.instructions = instructions
        if model is not None:
            record.model = model

    async def update_summary(self, doc_id: str, summary: str) -> None:
        """Persist the rolling summary and stamp its update time."""
        record = self._sessions.get(doc_id)
        if record is None:
            return

        record.doc_summary = summary
        record.doc_summary_updated_at = datetime.now(timezone.utc)

    def _newest_first(self, units: list[UnitRecord]) -> list[UnitRecord]:
        return sorted(units, key=lambda u: (u.created_at, u.id), reverse=True)

    def _find(self, doc_id: str, kind: str, sha256: str) -> UnitRecord | None:
        matches = [
            u
            for u in self._units.values()
            if u.doc_id == doc_id and u.kind == kind and u.sha256 == sha256
        ]
        return self._newest_first(matches)[0] if matches else None

    async def find_unit(self, doc_id: str, kind: str, sha256: str) -> UnitRecord | None:
        """Find the newest unit for (doc_id, kind, sha256)."""
        unit = self._find(doc_id, kind, sha256)
        return replace(unit) if unit is not None else None

    async def get_unit(self, doc_id: str, unit_id: int) -> UnitRecord | None:
        """Get a unit by its row id, scoped to the document."""
        unit = self._units.get(unit_id)
        if unit is None or unit.doc_id != doc_id:
            return None
        return replace(unit)

    async def record_unit(self, unit: NewUnit, *, refresh_on_conflict: bool = False) -> None:
        """Insert a unit; a duplicate (doc_id, kind, sha256) is ignored or refreshed."""
        existing = self._find(unit.doc_id, unit.kind, unit.sha256)

        if existing is not None:
            if refresh_on_conflict:
                existing.filename = unit.filename
                existing.vector_store_file_id = (
                    existing.vector_store_file_id or unit.vector_store_file_id
                )
                existing.file_vector_store_id = unit.file_vector_store_id
                existing.file_vector_store_file_id = unit.file_vector_store_file_id
            return

        unit_id = next(self._ids)
        self._units[unit_id] = UnitRecord(
            id=unit_id,
            doc_id=unit.doc_id,
            kind=unit.kind,
            filename=unit.filename,
            sha256=unit.sha256,
            vector_store_file_id=unit.vector_store_file_id,
            file_vector_store_id=unit.file_vector_store_id,
            file_vector_store_file_id=unit.file_vector_store_file_id,
            created_at=datetime.now(timezone.utc),
        )

    async def list_units(self, doc_id: str, *, parents_only: bool = False) -> list[UnitRecord]:
        """List units for a document, newest first."""
        units = [
            u
            for u in self._units.values()
            if u.doc_id == doc_id and not (parents_only and u.kind in CHUNK_KINDS)
        ]
        return [replace(u) for u in self._newest_first(units)]

    async def units_by_file_ids(self, doc_id: str, file_ids: list[str]) -> list[UnitRecord]:
        """List units of a document whose document-index handle is in file_ids."""
        wanted = set(file_ids)
        return [
            replace(u)
            for u in self._units.values()
            if u.doc_id == doc_id and u.vector_store_file_id in wanted
        ]

    async def delete_units_by_file_ids(self, doc_id: str, file_ids: list[str]) -> int:
        """Delete units of a document whose document-index handle is in file_ids."""
        doomed = [u.id for u in await self.units_by_file_ids(doc_id, file_ids)]
        for unit_id in doomed:
            del self._units[unit_id]
        return len(doomed)

    async def append_history(self, doc_id: str, role: str, content: str) -> None:
        """Append a chat history entry."""
        self._history.append(
            _HistoryRow(id=next(self._ids), doc_id=doc_id, role=role, content=content)
        )

    async def count_history(self, doc_id: str) -> int:
        """Count chat history entries for a document."""
        return sum(1 for row in self._history if row.doc_id == doc_id)

    async def delete_oldest_history(self, doc_id: str, count: int) -> int:
        """Delete the oldest `count` entries for a document."""
        if count <= 0:
            return 0

        ids = [row.id for row in self._history if row.doc_id == doc_id]
        doomed = set(ids[:count])
        self._history = [row for row in self._history if row.id not in doomed]
        return len(doomed)

    async def list_history(self, doc_id: str) -> list[HistoryEntry]:
        """List chat history for a document in creation order."""
        return [
            HistoryEntry(role=row.role, content=row.content)
            for row in self._history
            if row.doc_id == doc_id
        ]

    async def delete_document(self, doc_id: str) -> DeletedCounts:
        """Delete history, units and session for a document."""
        history_before = len(self._history)
        self._history = [row for row in self._history if row.doc_id != doc_id]

        unit_ids = [u.id for u in self._units.values() if u.doc_id == doc_id]
        for unit_id in unit_ids:
            del self._units[unit_id]

        session = self._sessions.pop(doc_id, None)

        return DeletedCounts(
            chat_history=history_before - len(self._history),
            docs_files=len(unit_ids),
            docs_sessions=1 if session is not None else 0,
        )
