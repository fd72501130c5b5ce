"""Hosted retrieval + completion service adapter.

Security: Reads API key from settings only, never hardcoded.
Provides a deterministic in-memory service when no key is present for testing.
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import openai
from openai import AsyncOpenAI

from backend.docassist.config import Settings
from backend.docassist.errors import ExternalServiceError
from backend.docassist.utils.metrics import PrometheusExternalMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CompletionResult:
    """Output of one completion turn.

    Attributes:
        response_id: Service-assigned id of the response
        output_text: Concatenated assistant text
        output: Raw output items (messages with annotations, tool calls with results)
        usage: Token usage as reported by the service
    """

    response_id: str
    output_text: str
    output: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)


class KnowledgeService(Protocol):
    """Protocol for the hosted retrieval + completion service.

    Each resource kind has exactly one delete operation.
    """

    async def create_conversation(self, *, metadata: dict[str, str]) -> str:
        """Create a conversation handle and return its id."""
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    async def create_index(self, *, name: str, metadata: dict[str, str]) -> str:
        """Create a retrieval index and return its id."""
        ...

    async def delete_index(self, index_id: str) -> None:
        ...

    async def upload_file(
        self, index_id: str, *, filename: str, content: bytes, mime_type: str
    ) -> str:
        """Upload bytes into an index, wait for indexing, return the indexed file id."""
        ...

    async def delete_index_file(self, index_id: str, file_id: str) -> None:
        ...

    async def respond(
        self,
        *,
        model: str,
        instructions: str,
        input_text: str,
        conversation_id: str | None = None,
        index_ids: list[str] | None = None,
        force_search: bool = False,
        max_output_tokens: int,
    ) -> CompletionResult:
        """Run one completion turn, with retrieval bound to index_ids when given."""
        ...

    async def complete(
        self, *, model: str, messages: list[dict[str, str]], max_output_tokens: int
    ) -> str:
        """Plain message-list completion without retrieval."""
        ...


class OpenAIKnowledgeService:
    """OpenAI-backed service: conversations, vector stores and the Responses API."""

    def __init__(
        self,
        api_key: str,
        *,
        metrics: PrometheusExternalMetrics | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize OpenAI service.

        Args:
            api_key: OpenAI API key (read from settings)
            metrics: Metrics sink for external calls
            client: Preconfigured SDK client (tests)
        """
        self.client = client or AsyncOpenAI(api_key=api_key)
        self._metrics = metrics or PrometheusExternalMetrics()

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        start_time = time.monotonic()
        try:
            result = await fn()
        except openai.OpenAIError as e:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            self._metrics.record_call(operation, "error", elapsed_ms)
            logger.error(f"[openai] {operation} failed: {e}")
            raise ExternalServiceError(operation, str(e)) from e
        elapsed_ms = (time.monotonic() - start_time) * 1000
        self._metrics.record_call(operation, "success", elapsed_ms)
        return result

    async def create_conversation(self, *, metadata: dict[str, str]) -> str:
        conversation = await self._call(
            "create_conversation", lambda: self.client.conversations.create(metadata=metadata)
        )
        return conversation.id

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._call(
            "delete_conversation", lambda: self.client.conversations.delete(conversation_id)
        )

    async def create_index(self, *, name: str, metadata: dict[str, str]) -> str:
        store = await self._call(
            "create_index",
            lambda: self.client.vector_stores.create(name=name, metadata=metadata),
        )
        return store.id

    async def delete_index(self, index_id: str) -> None:
        await self._call("delete_index", lambda: self.client.vector_stores.delete(index_id))

    async def upload_file(
        self, index_id: str, *, filename: str, content: bytes, mime_type: str
    ) -> str:
        indexed = await self._call(
            "upload_file",
            lambda: self.client.vector_stores.files.upload_and_poll(
                vector_store_id=index_id, file=(filename, content, mime_type)
            ),
        )
        if indexed.status != "completed":
            raise ExternalServiceError(
                "upload_file", f"indexing of {filename} ended with status {indexed.status}"
            )
        return indexed.id

    async def delete_index_file(self, index_id: str, file_id: str) -> None:
        await self._call(
            "delete_index_file",
            lambda: self.client.vector_stores.files.delete(file_id, vector_store_id=index_id),
        )

    async def respond(
        self,
        *,
        model: str,
        instructions: str,
        input_text: str,
        conversation_id: str | None = None,
        index_ids: list[str] | None = None,
        force_search: bool = False,
        max_output_tokens: int,
    ) -> CompletionResult:
        request: dict[str, Any] = {
            "model": model,
            "instructions": instructions,
            "input": input_text,
            "max_output_tokens": max_output_tokens,
        }
        if conversation_id:
            request["conversation"] = conversation_id
        if index_ids:
            request["tools"] = [{"type": "file_search", "vector_store_ids": index_ids}]
            request["include"] = ["file_search_call.results"]
            if force_search:
                request["tool_choice"] = {"type": "file_search"}

        response = await self._call("respond", lambda: self.client.responses.create(**request))
        usage = response.usage.model_dump() if response.usage else {}
        return CompletionResult(
            response_id=response.id,
            output_text=(response.output_text or "").strip(),
            output=[item.model_dump() for item in response.output],
            usage=usage,
        )

    async def complete(
        self, *, model: str, messages: list[dict[str, str]], max_output_tokens: int
    ) -> str:
        response = await self._call(
            "complete",
            lambda: self.client.chat.completions.create(
                model=model,
                messages=messages,  # type: ignore[arg-type]
                max_completion_tokens=max_output_tokens,
            ),
        )
        if not response.choices:
            raise ExternalServiceError("complete", "no choices returned from model")
        content = response.choices[0].message.content
        if not content:
            raise ExternalServiceError("complete", "no content in model response")
        return content.strip()


class InMemoryKnowledgeService:
    """Deterministic in-memory service for testing (no API key required).

    Tracks every created and deleted resource so tests can assert on them.
    Uploaded files are searchable: a retrieval turn cites the first files of
    the bound indexes through file_search results and message annotations.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.conversations: dict[str, dict[str, str]] = {}
        self.indexes: dict[str, dict[str, str]] = {}
        self.files: dict[str, dict[str, bytes]] = {}
        self.uploads: list[tuple[str, str]] = []
        self.deleted_conversations: list[str] = []
        self.deleted_indexes: list[str] = []
        self.deleted_files: list[tuple[str, str]] = []
        self.respond_calls: list[dict[str, Any]] = []
        self.complete_calls: list[list[dict[str, str]]] = []
        self.reply_text = "Stub reply generated without a hosted model."
        self.complete_text = "Stub completion generated without a hosted model."
        self.max_cited_files = 2

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids):06d}"

    async def create_conversation(self, *, metadata: dict[str, str]) -> str:
        await asyncio.sleep(0)
        conversation_id = self._new_id("conv")
        self.conversations[conversation_id] = dict(metadata)
        return conversation_id

    async def delete_conversation(self, conversation_id: str) -> None:
        if self.conversations.pop(conversation_id, None) is None:
            raise ExternalServiceError("delete_conversation", f"unknown {conversation_id}")
        self.deleted_conversations.append(conversation_id)

    async def create_index(self, *, name: str, metadata: dict[str, str]) -> str:
        await asyncio.sleep(0)
        index_id = self._new_id("vs")
        self.indexes[index_id] = {"name": name, **metadata}
        self.files[index_id] = {}
        return index_id

    async def delete_index(self, index_id: str) -> None:
        if self.indexes.pop(index_id, None) is None:
            raise ExternalServiceError("delete_index", f"unknown {index_id}")
        self.files.pop(index_id, None)
        self.deleted_indexes.append(index_id)

    async def upload_file(
        self, index_id: str, *, filename: str, content: bytes, mime_type: str
    ) -> str:
        if index_id not in self.indexes:
            raise ExternalServiceError("upload_file", f"unknown index {index_id}")
        await asyncio.sleep(0)
        file_id = self._new_id("file")
        self.files[index_id][file_id] = content
        self.uploads.append((index_id, filename))
        return file_id

    async def delete_index_file(self, index_id: str, file_id: str) -> None:
        if self.files.get(index_id, {}).pop(file_id, None) is None:
            raise ExternalServiceError("delete_index_file", f"unknown {file_id}")
        self.deleted_files.append((index_id, file_id))

    async def respond(
        self,
        *,
        model: str,
        instructions: str,
        input_text: str,
        conversation_id: str | None = None,
        index_ids: list[str] | None = None,
        force_search: bool = False,
        max_output_tokens: int,
    ) -> CompletionResult:
        self.respond_calls.append(
            {
                "model": model,
                "instructions": instructions,
                "input": input_text,
                "conversation_id": conversation_id,
                "index_ids": list(index_ids or []),
                "force_search": force_search,
            }
        )
        response_id = self._new_id("resp")

        hits: list[tuple[str, str]] = []
        for index_id in index_ids or []:
            for file_id, content in self.files.get(index_id, {}).items():
                hits.append((file_id, content.decode("utf-8", errors="replace")))
        hits = hits[: self.max_cited_files]

        output: list[dict[str, Any]] = []
        if hits:
            output.append(
                {
                    "type": "file_search_call",
                    "results": [{"file_id": fid, "text": text} for fid, text in hits],
                }
            )
        output.append(
            {
                "type": "message",
                "content": [
                    {
                        "type": "output_text",
                        "text": self.reply_text,
                        "annotations": [
                            {"type": "file_citation", "file_id": fid, "quote": text}
                            for fid, text in hits
                        ],
                    }
                ],
            }
        )
        return CompletionResult(
            response_id=response_id,
            output_text=self.reply_text,
            output=output,
            usage={"input_tokens": len(input_text) // 4, "output_tokens": 8},
        )

    async def complete(
        self, *, model: str, messages: list[dict[str, str]], max_output_tokens: int
    ) -> str:
        self.complete_calls.append(messages)
        return self.complete_text


def get_knowledge_service(
    settings: Settings, metrics: PrometheusExternalMetrics | None = None
) -> KnowledgeService:
    """Factory function to get the appropriate service based on config.

    Returns:
        OpenAIKnowledgeService if an API key is configured, InMemoryKnowledgeService otherwise
    """
    api_key = settings.openai_api_key

    if api_key and api_key.get_secret_value():
        logger.info("Using OpenAI knowledge service")
        return OpenAIKnowledgeService(api_key.get_secret_value(), metrics=metrics)
    else:
        logger.warning("No OpenAI API key configured, using in-memory knowledge service")
        return InMemoryKnowledgeService()
