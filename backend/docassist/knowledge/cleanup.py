"""Best-effort deletion of external resources.

Every delete is attempted independently; failures are collected into the
returned outcome instead of raised, so one unreachable resource never blocks
the rest of a batch.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from backend.docassist.db.repositories import MetadataStore
from backend.docassist.llm.client import KnowledgeService

logger = logging.getLogger(__name__)


@dataclass
class DeleteOutcome:
    """Aggregate result of a batch of best-effort deletes."""

    attempted: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)

    def merge(self, other: "DeleteOutcome") -> None:
        self.attempted += other.attempted
        self.succeeded.extend(other.succeeded)
        self.failed_ids.extend(other.failed_ids)


@dataclass
class CleanupReport:
    """Per-resource-kind outcomes of cleaning up one document's external resources."""

    doc_id: str
    doc_index_files: DeleteOutcome = field(default_factory=DeleteOutcome)
    file_index_files: DeleteOutcome = field(default_factory=DeleteOutcome)
    file_indexes: DeleteOutcome = field(default_factory=DeleteOutcome)
    doc_index: DeleteOutcome = field(default_factory=DeleteOutcome)
    conversation: DeleteOutcome = field(default_factory=DeleteOutcome)


async def delete_each(
    ids: list[str], delete: Callable[[str], Awaitable[None]], *, label: str
) -> DeleteOutcome:
    """Attempt delete(id) for each distinct id, collecting successes and failures."""
    outcome = DeleteOutcome()
    for resource_id in dict.fromkeys(i for i in ids if i):
        outcome.attempted += 1
        try:
            await delete(resource_id)
        except Exception as e:
            logger.warning(f"[cleanup] failed to delete {label} {resource_id}: {e}")
            outcome.failed_ids.append(resource_id)
        else:
            outcome.succeeded.append(resource_id)
    return outcome


async def discard_session_resources(
    service: KnowledgeService,
    *,
    conversation_id: str | None = None,
    index_id: str | None = None,
) -> None:
    """Delete a just-created index and conversation, swallowing failures."""
    if index_id:
        await delete_each([index_id], service.delete_index, label="index")
    if conversation_id:
        await delete_each([conversation_id], service.delete_conversation, label="conversation")


async def retire_knowledge(
    store: MetadataStore, service: KnowledgeService, doc_id: str, index_id: str
) -> DeleteOutcome:
    """Delete every recorded unit's handle from the document index.

    Only rows whose handle was actually deleted are removed from the store;
    rows for handles that failed to delete stay in place.
    """
    units = await store.list_units(doc_id)
    file_ids = [unit.vector_store_file_id for unit in units]

    outcome = await delete_each(
        file_ids,
        lambda file_id: service.delete_index_file(index_id, file_id),
        label="index file",
    )
    if outcome.succeeded:
        removed = await store.delete_units_by_file_ids(doc_id, outcome.succeeded)
        logger.info(
            f"[cleanup] retired {removed} unit rows for doc {doc_id} "
            f"({len(outcome.failed_ids)} handles failed)"
        )
    return outcome


async def cleanup_external_resources(
    store: MetadataStore, service: KnowledgeService, doc_id: str
) -> CleanupReport:
    """Delete all external resources of a document, leaving metadata rows untouched.

    Order: document-index files, file-scoped index files and indexes, the
    document index, then the conversation.
    """
    report = CleanupReport(doc_id=doc_id)
    session = await store.get_session(doc_id)
    units = await store.list_units(doc_id)

    if session is not None and session.vector_store_id:
        doc_index_id = session.vector_store_id
        report.doc_index_files = await delete_each(
            [unit.vector_store_file_id for unit in units],
            lambda file_id: service.delete_index_file(doc_index_id, file_id),
            label="index file",
        )

    files_by_index: dict[str, list[str]] = {}
    for unit in units:
        if unit.file_vector_store_id:
            bucket = files_by_index.setdefault(unit.file_vector_store_id, [])
            if unit.file_vector_store_file_id:
                bucket.append(unit.file_vector_store_file_id)

    for file_index_id, index_file_ids in files_by_index.items():
        report.file_index_files.merge(
            await delete_each(
                index_file_ids,
                lambda file_id, file_index_id=file_index_id: service.delete_index_file(
                    file_index_id, file_id
                ),
                label="file-scoped index file",
            )
        )
    report.file_indexes = await delete_each(
        list(files_by_index), service.delete_index, label="file-scoped index"
    )

    if session is not None:
        report.doc_index = await delete_each(
            [session.vector_store_id], service.delete_index, label="index"
        )
        report.conversation = await delete_each(
            [session.conversation_id], service.delete_conversation, label="conversation"
        )

    logger.info(
        f"[cleanup] doc {doc_id}: files {len(report.doc_index_files.succeeded)}/"
        f"{report.doc_index_files.attempted}, file indexes {len(report.file_indexes.succeeded)}/"
        f"{report.file_indexes.attempted}"
    )
    return report
