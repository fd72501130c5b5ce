"""Retrieval orchestration for chat turns.

A turn resolves its index scope, optionally short-circuits model questions,
assembles instructions from the base prompt, rolling summary and custom
instructions, then runs either one retrieval-bound completion or the
two-step plan-then-answer flow. Cited sources are resolved against the
document's recorded units.
"""

import logging
import time

from backend.docassist.citations.extract import (
    RawSource,
    clip_snippet,
    extract_plan_passages,
    extract_section,
    extract_sources,
)
from backend.docassist.config import Settings
from backend.docassist.db.history import HistoryLedger
from backend.docassist.db.repositories import (
    CHUNK_KINDS,
    MetadataStore,
    SessionRecord,
    UnitRecord,
)
from backend.docassist.knowledge.provisioner import ResourceProvisioner
from backend.docassist.llm.client import CompletionResult, KnowledgeService
from backend.docassist.models.knowledge import ChatReply, Scope, Source
from backend.docassist.orchestration.policies import RetrievalPolicy
from backend.docassist.utils.logging import ChatEvent, ChatEventLogger

logger = logging.getLogger(__name__)

MODEL_INFO_RESPONSE_ID = "local-model-info"
SECTION_SEPARATOR = "\n\n---\n"

PLAN_PROMPT = (
    "You must use file_search. Return a brief plan and 3-6 quoted passages.\n"
    "Format:\nPLAN: <2-5 bullets>\nPASSAGES:\n- <quote>\n- <quote>\n"
    "\nQuestion: {message}"
)
ANSWER_FROM_PASSAGES_PROMPT = (
    "Answer the question using ONLY the passages below. If information is missing, say so.\n\n"
    "PASSAGES:\n{passages}\n\nQUESTION:\n{message}"
)
NO_PASSAGES = "(no passages returned)"


def build_instructions(base: str, summary: str | None, custom: str | None) -> str:
    """Base prompt, then rolling summary, then custom instructions."""
    summary = (summary or "").strip()
    custom = (custom or "").strip()
    if not summary and not custom:
        return base

    parts = [base]
    if summary:
        parts.append(f"Project memory (auto-summary):\n{summary}")
    if custom:
        parts.append(f"Project instructions (user-provided):\n{custom}")
    return SECTION_SEPARATOR.join(parts).strip()


class RetrievalOrchestrator:
    """Runs chat turns against a document's knowledge."""

    def __init__(
        self,
        store: MetadataStore,
        service: KnowledgeService,
        provisioner: ResourceProvisioner,
        history: HistoryLedger,
        settings: Settings,
        *,
        policy: RetrievalPolicy | None = None,
        event_logger: ChatEventLogger | None = None,
    ) -> None:
        self._store = store
        self._service = service
        self._provisioner = provisioner
        self._history = history
        self._settings = settings
        self._policy = policy or RetrievalPolicy()
        self._events = event_logger or ChatEventLogger(enabled=settings.chat_log_enabled)

    async def chat(
        self,
        doc_id: str,
        message: str,
        *,
        file_id: int | None = None,
        instructions: str | None = None,
    ) -> ChatReply:
        """Answer a message, optionally scoped to one synchronized file.

        Args:
            doc_id: Owning document id
            message: User message
            file_id: Unit row id to scope retrieval to; unresolvable ids fall
                back to the whole document
            instructions: Custom instructions to reconcile into the session

        Returns:
            ChatReply with reply text, sources and the resolved scope
        """
        started = time.monotonic()
        session = await self._provisioner.ensure_session(doc_id, instructions)
        model = session.model or self._settings.openai_model

        scope_index_id = await self._resolve_scope(doc_id, file_id)
        scope = Scope(type="file", file_id=file_id) if scope_index_id else Scope()

        if self._policy.model_query(message):
            reply = f"The backend is calling this model: {model}"
            await self._record_turn(doc_id, message, reply)
            return ChatReply(reply=reply, response_id=MODEL_INFO_RESPONSE_ID, scope=scope)

        instructions_text = build_instructions(
            self._settings.system_prompt, session.doc_summary, session.instructions
        )
        index_ids = [scope_index_id or session.vector_store_id]
        force_search = self._settings.force_file_search and self._policy.force_search(message)
        two_step = self._settings.two_step_enabled and self._policy.complex_prompt(message)

        if two_step:
            response, raw_sources = await self._plan_then_answer(
                session, model, instructions_text, index_ids, message
            )
        else:
            response = await self._service.respond(
                model=model,
                instructions=instructions_text,
                input_text=message,
                conversation_id=session.conversation_id,
                index_ids=index_ids,
                force_search=force_search,
                max_output_tokens=self._settings.max_output_tokens,
            )
            raw_sources = extract_sources(response.output)

        sources = await self._resolve_sources(doc_id, raw_sources)
        reply = response.output_text.strip()
        await self._record_turn(doc_id, message, reply)

        self._events.log_chat(
            ChatEvent(
                doc_id=doc_id,
                scope=scope.type,
                file_id=scope.file_id,
                model=model,
                force_search=force_search,
                two_step=two_step,
                used_sources=len(sources),
                latency_ms=(time.monotonic() - started) * 1000,
                usage=response.usage,
            )
        )

        return ChatReply(
            reply=reply, response_id=response.response_id, sources=sources, scope=scope
        )

    async def _resolve_scope(self, doc_id: str, file_id: int | None) -> str | None:
        if file_id is None or file_id <= 0:
            return None
        try:
            unit = await self._store.get_unit(doc_id, file_id)
        except Exception as e:
            logger.warning(f"[retrieval] scope lookup failed for {doc_id}/{file_id}: {e}")
            return None
        if unit is None or not unit.file_vector_store_id:
            logger.debug(f"[retrieval] file {file_id} has no file scope, using whole document")
            return None
        return unit.file_vector_store_id

    async def _plan_then_answer(
        self,
        session: SessionRecord,
        model: str,
        instructions_text: str,
        index_ids: list[str],
        message: str,
    ) -> tuple[CompletionResult, list[RawSource]]:
        plan = await self._service.respond(
            model=model,
            instructions=instructions_text,
            input_text=PLAN_PROMPT.format(message=message),
            conversation_id=session.conversation_id,
            index_ids=index_ids,
            force_search=True,
            max_output_tokens=self._settings.max_output_tokens,
        )
        raw_sources = extract_sources(plan.output)
        passages = extract_plan_passages(plan.output_text)

        answer = await self._service.respond(
            model=model,
            instructions=instructions_text,
            input_text=ANSWER_FROM_PASSAGES_PROMPT.format(
                passages="\n".join(passages) if passages else NO_PASSAGES, message=message
            ),
            conversation_id=session.conversation_id,
            max_output_tokens=self._settings.max_output_tokens,
        )
        return answer, raw_sources

    async def _resolve_sources(self, doc_id: str, raw_sources: list[RawSource]) -> list[Source]:
        file_ids = list(dict.fromkeys(source.file_id for source in raw_sources))
        units = await self._store.units_by_file_ids(doc_id, file_ids)
        meta: dict[str, UnitRecord] = {}
        for unit in units:
            # Parents share the first chunk's handle; the chunk names the passage
            if unit.vector_store_file_id not in meta or unit.kind in CHUNK_KINDS:
                meta[unit.vector_store_file_id] = unit

        sources: list[Source] = []
        for raw in raw_sources:
            unit = meta.get(raw.file_id)
            sources.append(
                Source(
                    file_id=raw.file_id,
                    filename=unit.filename if unit else None,
                    kind=unit.kind if unit else None,
                    section=extract_section(raw.quote),
                    snippet=clip_snippet(raw.quote),
                )
            )
        return sources

    async def _record_turn(self, doc_id: str, message: str, reply: str) -> None:
        try:
            await self._history.append_turn(doc_id, message, reply)
        except Exception as e:
            logger.error(f"[retrieval] history append failed for {doc_id}: {e}", exc_info=True)
