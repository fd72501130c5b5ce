"""Knowledge engine facade - the operations exposed to callers.

Inputs are validated and size-bounded here, before any external call.
"""

import logging
from dataclasses import asdict

from backend.docassist.config import Settings
from backend.docassist.db.history import HistoryLedger
from backend.docassist.db.repositories import HistoryEntry, MetadataStore
from backend.docassist.errors import ValidationError
from backend.docassist.knowledge.cleanup import CleanupReport, cleanup_external_resources
from backend.docassist.knowledge.ledger import DedupLedger
from backend.docassist.knowledge.provisioner import ResourceProvisioner
from backend.docassist.knowledge.summary import RollingSummarizer
from backend.docassist.knowledge.sync import KnowledgeSynchronizer
from backend.docassist.llm.client import KnowledgeService
from backend.docassist.models.knowledge import (
    ChatReply,
    FileEntry,
    ResetResult,
    SessionInfo,
    SyncResult,
)
from backend.docassist.orchestration.policies import RetrievalPolicy
from backend.docassist.orchestration.retrieval import RetrievalOrchestrator
from backend.docassist.utils.metrics import PrometheusExternalMetrics

logger = logging.getLogger(__name__)


def require_text(
    name: str, value: str | None, *, max_chars: int, allow_empty: bool = False
) -> str:
    """Validate a bounded string field.

    Raises:
        ValidationError: If missing, blank (unless allowed) or too long
    """
    if value is None:
        raise ValidationError(f"Missing '{name}'")
    if not allow_empty and not value.strip():
        raise ValidationError(f"Missing '{name}'")
    if len(value) > max_chars:
        raise ValidationError(f"'{name}' too long (max {max_chars} chars)")
    return value.strip() if not allow_empty else value


class DocAssistEngine:
    """Wires the provisioner, synchronizer, retrieval orchestrator and history."""

    def __init__(
        self,
        store: MetadataStore,
        service: KnowledgeService,
        settings: Settings,
        *,
        policy: RetrievalPolicy | None = None,
        metrics: PrometheusExternalMetrics | None = None,
    ) -> None:
        self.store = store
        self.service = service
        self.settings = settings
        self.provisioner = ResourceProvisioner(store, service, model=settings.openai_model)
        self.history = HistoryLedger(store, settings.max_turns_per_doc)
        self.summarizer = RollingSummarizer(store, service, settings)
        self.synchronizer = KnowledgeSynchronizer(
            store,
            service,
            self.provisioner,
            DedupLedger(store, metrics),
            self.summarizer,
            settings,
        )
        self.retrieval = RetrievalOrchestrator(
            store, service, self.provisioner, self.history, settings, policy=policy
        )

    def _doc_id(self, doc_id: str | None) -> str:
        return require_text("docId", doc_id, max_chars=self.settings.max_doc_id_chars)

    def _instructions(self, instructions: str | None) -> str:
        return require_text(
            "instructions",
            instructions or "",
            max_chars=self.settings.max_instructions_chars,
            allow_empty=True,
        )

    async def init_session(self, doc_id: str, instructions: str | None = None) -> SessionInfo:
        """Create or fetch the document's session."""
        doc_id = self._doc_id(doc_id)
        session = await self.provisioner.ensure_session(doc_id, self._instructions(instructions))
        return SessionInfo(
            doc_id=session.doc_id,
            conversation_id=session.conversation_id,
            vector_store_id=session.vector_store_id,
            model=session.model,
            has_summary=bool(session.doc_summary),
        )

    async def sync_document(
        self,
        doc_id: str,
        text: str,
        *,
        title: str = "",
        instructions: str | None = None,
        replace_knowledge: bool = False,
        file_scope: bool = True,
    ) -> SyncResult:
        settings = self.settings
        return await self.synchronizer.sync_document(
            self._doc_id(doc_id),
            text=require_text(
                "docText", text, max_chars=settings.max_doc_text_chars, allow_empty=True
            ),
            title=require_text(
                "docTitle", title, max_chars=settings.max_doc_title_chars, allow_empty=True
            ),
            instructions=self._instructions(instructions),
            replace_knowledge=replace_knowledge,
            file_scope=file_scope,
        )

    async def sync_tab(
        self,
        doc_id: str,
        tab_id: str,
        text: str,
        *,
        title: str = "",
        instructions: str | None = None,
        replace_knowledge: bool = False,
        file_scope: bool = True,
    ) -> SyncResult:
        settings = self.settings
        return await self.synchronizer.sync_tab(
            self._doc_id(doc_id),
            require_text("tabId", tab_id, max_chars=settings.max_tab_id_chars),
            text=require_text(
                "tabText", text, max_chars=settings.max_doc_text_chars, allow_empty=True
            ),
            title=require_text(
                "tabTitle", title, max_chars=settings.max_doc_title_chars, allow_empty=True
            ),
            instructions=self._instructions(instructions),
            replace_knowledge=replace_knowledge,
            file_scope=file_scope,
        )

    async def upload_file(
        self,
        doc_id: str,
        filename: str,
        content: bytes,
        *,
        mime_type: str | None = None,
        instructions: str | None = None,
        replace_knowledge: bool = False,
    ) -> SyncResult:
        return await self.synchronizer.upload_file(
            self._doc_id(doc_id),
            filename=require_text("filename", filename, max_chars=self.settings.max_filename_chars),
            content=content,
            mime_type=mime_type,
            instructions=self._instructions(instructions),
            replace_knowledge=replace_knowledge,
        )

    async def chat(
        self,
        doc_id: str,
        message: str,
        *,
        file_id: int | None = None,
        instructions: str | None = None,
    ) -> ChatReply:
        return await self.retrieval.chat(
            self._doc_id(doc_id),
            require_text("userMessage", message, max_chars=self.settings.max_user_message_chars),
            file_id=file_id,
            instructions=self._instructions(instructions),
        )

    async def chat_with_doc(self, doc_id: str, doc_text: str, message: str) -> str:
        """Chat over inline document text, carrying the stored history.

        The document text is clipped to max_doc_chars and sent as a system
        message; no retrieval index is involved. The turn is recorded only
        after the model replies.
        """
        settings = self.settings
        doc_id = self._doc_id(doc_id)
        doc_text = require_text(
            "docText", doc_text, max_chars=settings.max_doc_text_chars, allow_empty=True
        )
        if not doc_text:
            raise ValidationError("Missing 'docText'")
        message = require_text("userMessage", message, max_chars=settings.max_user_message_chars)

        history = await self.history.get_history(doc_id)
        messages = [
            {"role": "system", "content": settings.system_prompt},
            {
                "role": "system",
                "content": "Here is the current document content (possibly truncated):\n\n"
                + doc_text[: settings.max_doc_chars],
            },
            *({"role": entry.role, "content": entry.content} for entry in history),
            {"role": "user", "content": message},
        ]
        reply = await self.service.complete(
            model=settings.openai_model,
            messages=messages,
            max_output_tokens=settings.max_output_tokens,
        )
        await self.history.append_turn(doc_id, message, reply)
        return reply

    async def list_files(self, doc_id: str) -> list[FileEntry]:
        """Parent units of a document, newest first."""
        units = await self.store.list_units(self._doc_id(doc_id), parents_only=True)
        return [
            FileEntry(
                id=unit.id,
                kind=unit.kind,
                filename=unit.filename,
                sha256=unit.sha256,
                vector_store_file_id=unit.vector_store_file_id,
                has_file_scope=bool(unit.file_vector_store_id),
                created_at=unit.created_at,
            )
            for unit in units
        ]

    async def get_history(self, doc_id: str) -> list[HistoryEntry]:
        return await self.history.get_history(self._doc_id(doc_id))

    async def cleanup_external(self, doc_id: str) -> CleanupReport:
        """Delete the document's external resources; metadata rows are kept."""
        return await cleanup_external_resources(self.store, self.service, self._doc_id(doc_id))

    async def reset_document(
        self, doc_id: str, *, cleanup_external: bool | None = None
    ) -> ResetResult:
        """Delete all state for a document, optionally cleaning external resources first."""
        doc_id = self._doc_id(doc_id)
        if cleanup_external is None:
            cleanup_external = self.settings.reset_cleanup_openai

        cleanup: dict[str, object] | None = None
        if cleanup_external:
            cleanup = asdict(await cleanup_external_resources(self.store, self.service, doc_id))

        deleted = await self.store.delete_document(doc_id)
        logger.info(
            f"[engine] reset {doc_id}: history={deleted.chat_history} "
            f"files={deleted.docs_files} sessions={deleted.docs_sessions}"
        )
        return ResetResult(
            doc_id=doc_id,
            deleted_chat_history=deleted.chat_history,
            deleted_docs_files=deleted.docs_files,
            deleted_docs_sessions=deleted.docs_sessions,
            cleanup=cleanup,
        )

    async def run_instruction(self, text: str, instruction: str) -> str:
        """One-shot instruction over supplied text, without retrieval or history."""
        text = require_text("text", text, max_chars=self.settings.max_doc_text_chars)
        instruction = require_text(
            "instruction", instruction, max_chars=self.settings.max_user_message_chars
        )
        return await self.service.complete(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": self.settings.system_prompt},
                {"role": "user", "content": f"Context:\n{text}\n\nInstruction:\n{instruction}"},
            ],
            max_output_tokens=self.settings.max_output_tokens,
        )
