"""Rolling per-document summary kept on the session row."""

import logging

from backend.docassist.config import Settings
from backend.docassist.db.repositories import MetadataStore
from backend.docassist.llm.client import KnowledgeService

logger = logging.getLogger(__name__)

SUMMARY_OUTPUT_TOKEN_CAP = 600


def summary_instructions(max_chars: int) -> str:
    return (
        "You summarize project content for future Q&A.\n\n"
        f"Return a concise summary (max {max_chars} chars) covering: goals, key facts, "
        "decisions, open questions. Use short paragraphs or bullets. "
        "Do NOT include sensitive data."
    )


def summary_input(*, kind: str, title: str, text: str, previous: str | None) -> str:
    label = f"{kind or 'doc'}: {title}" if title else (kind or "doc")
    prev = (previous or "").strip()
    if prev:
        return f"Previous summary:\n{prev}\n\nNew content ({label}):\n{text}"
    return f"Content ({label}):\n{text}"


class RollingSummarizer:
    """Folds newly synchronized content into the document's summary."""

    def __init__(
        self,
        store: MetadataStore,
        service: KnowledgeService | None,
        settings: Settings,
    ) -> None:
        self._store = store
        self._service = service
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return self._settings.summary_enabled and self._service is not None

    async def update(
        self,
        doc_id: str,
        *,
        kind: str,
        title: str,
        text: str,
        previous_summary: str | None,
    ) -> str | None:
        """Ask for a new bounded summary and persist it.

        Returns:
            The stored summary, or None when skipped or the model returned nothing
        """
        if not self.enabled or self._service is None:
            return None
        raw = text.strip()
        if not raw:
            return None

        settings = self._settings
        result = await self._service.respond(
            model=settings.openai_model,
            instructions=summary_instructions(settings.summary_max_chars),
            input_text=summary_input(
                kind=kind,
                title=title,
                text=raw[: settings.summary_input_max_chars],
                previous=previous_summary,
            ),
            max_output_tokens=min(SUMMARY_OUTPUT_TOKEN_CAP, settings.max_output_tokens),
        )

        summary = result.output_text.strip()[: settings.summary_max_chars]
        if not summary:
            return None

        await self._store.update_summary(doc_id, summary)
        return summary

    async def refresh(
        self,
        doc_id: str,
        *,
        kind: str,
        title: str,
        text: str,
        previous_summary: str | None,
    ) -> str | None:
        """Best-effort update: failures are logged, never raised."""
        try:
            return await self.update(
                doc_id, kind=kind, title=title, text=text, previous_summary=previous_summary
            )
        except Exception as e:
            logger.warning(f"[summary] update failed for doc {doc_id}: {e}", exc_info=True)
            return None
