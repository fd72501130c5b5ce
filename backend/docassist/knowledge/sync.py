"""Knowledge synchronization - documents, tabs and raw uploads.

Flow per request:
    ensure session -> (replace? retire old units) -> dedup check on parent
    -> chunk -> per chunk (dedup check -> upload or reuse -> record)
    -> record parent -> rolling summary (best-effort)

Uploads are sequential so the first chunk's handle, which becomes the
parent's representative handle, is deterministic. A failure mid-loop leaves
already recorded chunks in place; a retry reuses them through the ledger.
"""

import logging
import re
from dataclasses import dataclass

from backend.docassist.config import Settings
from backend.docassist.db.repositories import (
    MetadataStore,
    NewUnit,
    SessionRecord,
    UnitKind,
    UnitRecord,
)
from backend.docassist.docs import filenames
from backend.docassist.docs.chunker import Chunk, chunk_text
from backend.docassist.docs.normalize import normalize_text
from backend.docassist.errors import EmptyContentError, ValidationError
from backend.docassist.knowledge.cleanup import (
    delete_each,
    discard_session_resources,
    retire_knowledge,
)
from backend.docassist.knowledge.ledger import DedupLedger, content_digest
from backend.docassist.knowledge.provisioner import ResourceProvisioner, index_name
from backend.docassist.knowledge.summary import RollingSummarizer
from backend.docassist.llm.client import KnowledgeService
from backend.docassist.models.knowledge import SyncResult

logger = logging.getLogger(__name__)

TEXT_MIME = "text/plain"
DEFAULT_MIME = "application/octet-stream"

_TEXT_MIME_HINTS = ("json", "xml", "yaml", "csv")
_TEXT_EXTENSIONS = re.compile(r"\.(txt|md|markdown|csv|tsv|json|ya?ml|xml)$", re.IGNORECASE)


def is_text_like(mime_type: str | None, filename: str) -> bool:
    """Whether an upload is worth feeding to the rolling summary."""
    mime = (mime_type or "").lower()
    if mime.startswith("text/") or any(hint in mime for hint in _TEXT_MIME_HINTS):
        return True
    return bool(_TEXT_EXTENSIONS.search(filename or ""))


@dataclass
class _TextUnit:
    """Naming and hashing rules for one synchronizable text unit."""

    parent_kind: UnitKind
    chunk_kind: UnitKind
    title: str
    entry_filename: str
    tab_id: str | None = None

    def chunk_filename(self, doc_id: str, chunk: Chunk, part: int) -> str:
        if self.tab_id is not None:
            return filenames.tab_chunk_filename(self.title, self.tab_id, chunk.section_path, part)
        return filenames.doc_chunk_filename(self.title, doc_id, chunk.section_path, part)

    def digest(self, text: str) -> str:
        return content_digest(text, disambiguator=self.tab_id)


def _result_from_unit(unit: UnitRecord, *, reused: bool) -> SyncResult:
    return SyncResult(
        vector_store_file_id=unit.vector_store_file_id,
        docs_file_id=unit.id,
        file_vector_store_id=unit.file_vector_store_id,
        reused=reused,
        has_file_scope=bool(unit.file_vector_store_id),
    )


class KnowledgeSynchronizer:
    """Pushes content into a document's indexes exactly once per digest."""

    def __init__(
        self,
        store: MetadataStore,
        service: KnowledgeService,
        provisioner: ResourceProvisioner,
        ledger: DedupLedger,
        summarizer: RollingSummarizer,
        settings: Settings,
    ) -> None:
        self._store = store
        self._service = service
        self._provisioner = provisioner
        self._ledger = ledger
        self._summarizer = summarizer
        self._settings = settings

    def _clip(self, filename: str) -> str:
        return filenames.clip(filename, self._settings.max_filename_chars)

    async def sync_document(
        self,
        doc_id: str,
        *,
        text: str,
        title: str = "",
        instructions: str | None = None,
        replace_knowledge: bool = False,
        file_scope: bool = True,
    ) -> SyncResult:
        """Synchronize a whole document's text."""
        unit = _TextUnit(
            parent_kind=UnitKind.doc,
            chunk_kind=UnitKind.doc_chunk,
            title=title,
            entry_filename=self._clip(filenames.doc_filename(title, doc_id)),
        )
        return await self._sync_text(
            doc_id,
            unit,
            text=text,
            instructions=instructions,
            replace_knowledge=replace_knowledge,
            file_scope=file_scope,
        )

    async def sync_tab(
        self,
        doc_id: str,
        tab_id: str,
        *,
        text: str,
        title: str = "",
        instructions: str | None = None,
        replace_knowledge: bool = False,
        file_scope: bool = True,
    ) -> SyncResult:
        """Synchronize one tab; digests include the tab id."""
        if not tab_id.strip():
            raise ValidationError("Missing 'tabId'")
        unit = _TextUnit(
            parent_kind=UnitKind.tab,
            chunk_kind=UnitKind.tab_chunk,
            title=title,
            entry_filename=self._clip(filenames.tab_filename(title, tab_id, doc_id)),
            tab_id=tab_id,
        )
        return await self._sync_text(
            doc_id,
            unit,
            text=text,
            instructions=instructions,
            replace_knowledge=replace_knowledge,
            file_scope=file_scope,
        )

    async def _begin(
        self, doc_id: str, instructions: str | None, replace_knowledge: bool
    ) -> SessionRecord:
        session = await self._provisioner.ensure_session(doc_id, instructions)
        if replace_knowledge:
            outcome = await retire_knowledge(
                self._store, self._service, doc_id, session.vector_store_id
            )
            logger.info(
                f"[sync] replace knowledge for {doc_id}: "
                f"{len(outcome.succeeded)}/{outcome.attempted} handles deleted"
            )
        return session

    async def _sync_text(
        self,
        doc_id: str,
        unit: _TextUnit,
        *,
        text: str,
        instructions: str | None,
        replace_knowledge: bool,
        file_scope: bool,
    ) -> SyncResult:
        session = await self._begin(doc_id, instructions, replace_knowledge)
        settings = self._settings

        normalized = normalize_text(text)
        if not normalized:
            raise EmptyContentError(f"This {unit.parent_kind.value} is empty.")

        parent_digest = unit.digest(normalized)
        parent_kind = unit.parent_kind.value
        if not replace_knowledge:
            hit = await self._ledger.lookup(doc_id, parent_kind, parent_digest)
            if hit is not None:
                return _result_from_unit(hit.unit, reused=True)

        chunks = chunk_text(
            normalized,
            enabled=settings.chunking_enabled,
            max_tokens=settings.chunk_max_tokens,
            overlap_tokens=settings.chunk_overlap_tokens,
            chars_per_token=settings.chars_per_token,
        )
        if not chunks:
            raise EmptyContentError("No content to sync.")

        file_index_id: str | None = None
        if file_scope:
            metadata = {"doc_id": doc_id, "kind": parent_kind, "sha256": parent_digest}
            if unit.tab_id is not None:
                metadata["tab_id"] = unit.tab_id
            file_index_id = await self._service.create_index(
                name=f"{index_name(doc_id)}-{parent_kind}-{parent_digest[:12]}",
                metadata=metadata,
            )

        first_handle: str | None = None
        first_file_handle: str | None = None
        chunk_kind = unit.chunk_kind.value

        for i, chunk in enumerate(chunks):
            body = chunk.text.strip()
            if not body:
                continue

            chunk_digest = unit.digest(body)
            filename = self._clip(unit.chunk_filename(doc_id, chunk, i + 1))
            payload = body.encode("utf-8")

            handle: str | None = None
            if not replace_knowledge:
                hit = await self._ledger.lookup(doc_id, chunk_kind, chunk_digest)
                handle = hit.unit.vector_store_file_id if hit is not None else None
            if handle is None:
                handle = await self._service.upload_file(
                    session.vector_store_id, filename=filename, content=payload, mime_type=TEXT_MIME
                )

            file_handle: str | None = None
            if file_index_id is not None:
                file_handle = await self._service.upload_file(
                    file_index_id, filename=filename, content=payload, mime_type=TEXT_MIME
                )

            await self._ledger.record(
                NewUnit(
                    doc_id=doc_id,
                    kind=chunk_kind,
                    filename=filename,
                    sha256=chunk_digest,
                    vector_store_file_id=handle,
                    file_vector_store_id=file_index_id,
                    file_vector_store_file_id=file_handle,
                ),
                refresh_on_conflict=True,
            )

            if first_handle is None:
                first_handle = handle
                first_file_handle = file_handle

        if first_handle is None:
            raise EmptyContentError("No content to sync.")

        await self._ledger.record(
            NewUnit(
                doc_id=doc_id,
                kind=parent_kind,
                filename=unit.entry_filename,
                sha256=parent_digest,
                vector_store_file_id=first_handle,
                file_vector_store_id=file_index_id,
                file_vector_store_file_id=first_file_handle,
            )
        )

        await self._summarizer.refresh(
            doc_id,
            kind=parent_kind,
            title=unit.title,
            text=normalized,
            previous_summary=session.doc_summary,
        )

        recorded = await self._store.find_unit(doc_id, parent_kind, parent_digest)
        return SyncResult(
            vector_store_file_id=first_handle,
            docs_file_id=recorded.id if recorded is not None else None,
            file_vector_store_id=file_index_id,
            reused=False,
            has_file_scope=file_index_id is not None,
        )

    async def upload_file(
        self,
        doc_id: str,
        *,
        filename: str,
        content: bytes,
        mime_type: str | None = None,
        instructions: str | None = None,
        replace_knowledge: bool = False,
    ) -> SyncResult:
        """Upload raw file bytes to the document index and a dedicated file index.

        The digest covers the raw bytes. Text-like uploads also feed the
        rolling summary.
        """
        if not content:
            raise ValidationError("Invalid 'contentBase64'")
        if len(content) > self._settings.max_upload_bytes:
            raise ValidationError(f"File too large (max {self._settings.max_upload_bytes} bytes)")

        session = await self._begin(doc_id, instructions, replace_knowledge)
        kind = UnitKind.upload.value
        digest = content_digest(content)
        safe = self._clip(filenames.safe_name(filename, "upload"))
        mime = mime_type or DEFAULT_MIME

        if not replace_knowledge:
            hit = await self._ledger.lookup(doc_id, kind, digest)
            if hit is not None:
                return _result_from_unit(hit.unit, reused=True)

        file_index_id = await self._service.create_index(
            name=f"{index_name(doc_id)}-{kind}-{digest[:12]}",
            metadata={"doc_id": doc_id, "kind": kind, "sha256": digest, "filename": safe},
        )
        handle = await self._service.upload_file(
            session.vector_store_id, filename=safe, content=content, mime_type=mime
        )
        file_handle = await self._service.upload_file(
            file_index_id, filename=safe, content=content, mime_type=mime
        )

        await self._ledger.record(
            NewUnit(
                doc_id=doc_id,
                kind=kind,
                filename=safe,
                sha256=digest,
                vector_store_file_id=handle,
                file_vector_store_id=file_index_id,
                file_vector_store_file_id=file_handle,
            )
        )

        recorded = await self._store.find_unit(doc_id, kind, digest)
        if recorded is not None and recorded.vector_store_file_id != handle:
            # An existing row kept its handle; the fresh copies are orphans.
            logger.info(
                f"[sync] upload {digest[:12]} for {doc_id} already recorded as "
                f"{recorded.vector_store_file_id}, discarding {handle}"
            )
            await delete_each(
                [handle],
                lambda file_id: self._service.delete_index_file(session.vector_store_id, file_id),
                label="index file",
            )
            await discard_session_resources(self._service, index_id=file_index_id)
            return _result_from_unit(recorded, reused=True)

        if is_text_like(mime_type, safe):
            await self._summarizer.refresh(
                doc_id,
                kind=kind,
                title=filename,
                text=content.decode("utf-8", errors="replace"),
                previous_summary=session.doc_summary,
            )

        return SyncResult(
            vector_store_file_id=handle,
            docs_file_id=recorded.id if recorded is not None else None,
            file_vector_store_id=file_index_id,
            reused=False,
            has_file_scope=True,
        )
