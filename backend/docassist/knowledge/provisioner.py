"""Per-document session provisioning.

A session pairs an external conversation with the document-scoped index.
First use of a document races: concurrent callers must not each create
external resources. Creation therefore runs under a per-document advisory
lock inside one transaction, re-checking for an existing row after the lock
is acquired. Handles created by a failed attempt are deleted before the error
propagates.
"""

import logging
from typing import Any

from backend.docassist.db.repositories import MetadataStore, SessionRecord, TransactionalStore
from backend.docassist.knowledge.cleanup import discard_session_resources
from backend.docassist.llm.client import KnowledgeService

logger = logging.getLogger(__name__)


def index_name(doc_id: str) -> str:
    return f"docassist-{doc_id}"


class ResourceProvisioner:
    """Creates and caches a document's conversation and index handles."""

    def __init__(self, store: MetadataStore, service: KnowledgeService, *, model: str) -> None:
        self._store = store
        self._service = service
        self._model = model

    async def ensure_session(self, doc_id: str, instructions: str | None = None) -> SessionRecord:
        """Return the document's session, creating it on first use.

        Args:
            doc_id: Owning document id
            instructions: Custom instructions; a non-blank value that differs
                from the stored one replaces it

        Returns:
            SessionRecord with both external handles populated
        """
        existing = await self._reconcile(self._store, doc_id, instructions)
        if existing is not None:
            return existing

        if isinstance(self._store, TransactionalStore):
            return await self._create_locked(self._store, doc_id, instructions)

        logger.debug(f"[provisioner] store is not transactional, creating {doc_id} unlocked")
        created: dict[str, Any] = {}
        try:
            return await self._create(self._store, doc_id, instructions, created)
        except Exception:
            await discard_session_resources(self._service, **created)
            raise

    async def _reconcile(
        self, store: MetadataStore, doc_id: str, instructions: str | None
    ) -> SessionRecord | None:
        session = await store.get_session(doc_id)
        if session is None:
            return None

        new_instructions: str | None = None
        incoming = instructions or ""
        if incoming.strip() and incoming.strip() != (session.instructions or "").strip():
            new_instructions = incoming
            session.instructions = incoming

        new_model: str | None = None
        if session.model != self._model:
            new_model = self._model
            session.model = self._model

        if new_instructions is not None or new_model is not None:
            await store.update_session(doc_id, instructions=new_instructions, model=new_model)
        return session

    async def _create_locked(
        self, store: TransactionalStore, doc_id: str, instructions: str | None
    ) -> SessionRecord:
        created: dict[str, Any] = {}
        try:
            async with store.transaction(doc_id) as tx:
                existing = await self._reconcile(tx, doc_id, instructions)
                if existing is not None:
                    return existing
                return await self._create(tx, doc_id, instructions, created)
        except Exception:
            # Covers failures at commit, after the handles were created
            await discard_session_resources(self._service, **created)
            raise

    async def _create(
        self,
        store: MetadataStore,
        doc_id: str,
        instructions: str | None,
        created: dict[str, Any],
    ) -> SessionRecord:
        metadata = {"doc_id": doc_id}
        created["conversation_id"] = await self._service.create_conversation(metadata=metadata)
        created["index_id"] = await self._service.create_index(
            name=index_name(doc_id), metadata=metadata
        )

        record = SessionRecord(
            doc_id=doc_id,
            conversation_id=created["conversation_id"],
            vector_store_id=created["index_id"],
            instructions=instructions or "",
            model=self._model,
        )
        await store.insert_session(record)
        logger.info(
            f"[provisioner] created session for {doc_id}: "
            f"conversation={record.conversation_id} index={record.vector_store_id}"
        )
        return record
