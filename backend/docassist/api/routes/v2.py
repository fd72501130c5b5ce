"""Knowledge endpoints - session init, sync, upload, chat, listing and reset."""

import base64
import binascii
import re
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from backend.docassist.api.deps import get_engine
from backend.docassist.errors import ValidationError
from backend.docassist.knowledge.engine import DocAssistEngine
from backend.docassist.models.knowledge import (
    CamelModel,
    ChatReply,
    FileEntry,
    ResetResult,
    SessionInfo,
    SyncResult,
)

router = APIRouter(prefix="/v2", tags=["knowledge"])

Engine = Annotated[DocAssistEngine, Depends(get_engine)]

LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class InitRequest(CamelModel):
    """Request body for POST /v2/init."""

    doc_id: str
    instructions: str | None = None


class SyncDocRequest(CamelModel):
    """Request body for POST /v2/sync-doc."""

    doc_id: str
    doc_text: str
    doc_title: str = ""
    instructions: str | None = None
    replace_knowledge: bool = False
    file_scope: bool = True


class SyncTabRequest(CamelModel):
    """Request body for POST /v2/sync-tab."""

    doc_id: str
    tab_id: str
    tab_text: str
    tab_title: str = ""
    instructions: str | None = None
    replace_knowledge: bool = False
    file_scope: bool = True


class UploadFileRequest(CamelModel):
    """Request body for POST /v2/upload-file."""

    doc_id: str
    filename: str
    content_base64: str
    mime_type: str | None = Field(default=None, max_length=256)
    instructions: str | None = None
    replace_knowledge: bool = False


class ChatRequest(CamelModel):
    """Request body for POST /v2/chat."""

    doc_id: str
    user_message: str
    file_id: int | None = None
    instructions: str | None = None

    @field_validator("file_id", mode="before")
    @classmethod
    def _leading_int(cls, value: Any) -> int | None:
        """Parse the leading integer; anything unparseable means no file scope."""
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        match = LEADING_INT.match(str(value))
        return int(match.group(1)) if match else None


class DocIdRequest(CamelModel):
    """Request body for endpoints keyed only by document."""

    doc_id: str


class ResetRequest(CamelModel):
    """Request body for POST /v2/reset-doc."""

    doc_id: str
    cleanup_open_ai: bool | None = Field(default=None, alias="cleanupOpenAI")


class ListFilesResponse(CamelModel):
    """Response for GET /v2/list-files."""

    doc_id: str
    files: list[FileEntry]


class InfoLimits(CamelModel):
    max_doc_id_chars: int
    max_user_message_chars: int
    max_instructions_chars: int
    max_doc_title_chars: int
    max_filename_chars: int
    max_doc_text_chars: int
    max_upload_bytes: int


class InfoResponse(CamelModel):
    """Response for GET /v2/info."""

    service: str
    server_time: datetime
    model: str
    max_output_tokens: int
    limits: InfoLimits


def decode_upload(content_base64: str, max_bytes: int) -> bytes:
    """Decode base64 upload content, enforcing the size bound.

    Raises:
        ValidationError: If the content is empty, malformed or too large
    """
    encoded = "".join(content_base64.split())
    if not encoded:
        raise ValidationError("Invalid 'contentBase64'")
    # 4 base64 chars encode 3 bytes
    estimated = (len(encoded) * 3) // 4 - encoded[-2:].count("=")
    if estimated > max_bytes:
        raise ValidationError(f"File too large (max {max_bytes} bytes)")
    try:
        content = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid 'contentBase64'") from e
    if not content:
        raise ValidationError("Invalid 'contentBase64'")
    return content


@router.get("/info", response_model=InfoResponse)
async def info(engine: Engine) -> InfoResponse:
    """Effective model and request limits."""
    settings = engine.settings
    return InfoResponse(
        service="docassist",
        server_time=datetime.now(timezone.utc),
        model=settings.openai_model,
        max_output_tokens=settings.max_output_tokens,
        limits=InfoLimits(
            max_doc_id_chars=settings.max_doc_id_chars,
            max_user_message_chars=settings.max_user_message_chars,
            max_instructions_chars=settings.max_instructions_chars,
            max_doc_title_chars=settings.max_doc_title_chars,
            max_filename_chars=settings.max_filename_chars,
            max_doc_text_chars=settings.max_doc_text_chars,
            max_upload_bytes=settings.max_upload_bytes,
        ),
    )


@router.post("/init", response_model=SessionInfo)
async def init_session(request: InitRequest, engine: Engine) -> SessionInfo:
    """Create or fetch the document's session."""
    return await engine.init_session(request.doc_id, request.instructions)


@router.post("/sync-doc", response_model=SyncResult)
async def sync_doc(request: SyncDocRequest, engine: Engine) -> SyncResult:
    """Synchronize a whole document into its knowledge indexes."""
    return await engine.sync_document(
        request.doc_id,
        request.doc_text,
        title=request.doc_title,
        instructions=request.instructions,
        replace_knowledge=request.replace_knowledge,
        file_scope=request.file_scope,
    )


@router.post("/sync-tab", response_model=SyncResult)
async def sync_tab(request: SyncTabRequest, engine: Engine) -> SyncResult:
    """Synchronize one tab of a document."""
    return await engine.sync_tab(
        request.doc_id,
        request.tab_id,
        request.tab_text,
        title=request.tab_title,
        instructions=request.instructions,
        replace_knowledge=request.replace_knowledge,
        file_scope=request.file_scope,
    )


@router.post("/upload-file", response_model=SyncResult)
async def upload_file(request: UploadFileRequest, engine: Engine) -> SyncResult:
    """Upload a base64-encoded file into the document's knowledge."""
    content = decode_upload(request.content_base64, engine.settings.max_upload_bytes)
    return await engine.upload_file(
        request.doc_id,
        request.filename,
        content,
        mime_type=request.mime_type,
        instructions=request.instructions,
        replace_knowledge=request.replace_knowledge,
    )


@router.post("/chat", response_model=ChatReply)
async def chat(request: ChatRequest, engine: Engine) -> ChatReply:
    """Chat with the document, optionally scoped to one synchronized file."""
    return await engine.chat(
        request.doc_id,
        request.user_message,
        file_id=request.file_id,
        instructions=request.instructions,
    )


@router.get("/list-files", response_model=ListFilesResponse)
async def list_files(
    engine: Engine, doc_id: Annotated[str, Query(alias="docId")] = ""
) -> ListFilesResponse:
    """Synchronized documents, tabs and uploads for a document, newest first."""
    files = await engine.list_files(doc_id)
    return ListFilesResponse(doc_id=doc_id.strip(), files=files)


@router.post("/reset-doc", response_model=ResetResult)
async def reset_doc(request: ResetRequest, engine: Engine) -> ResetResult:
    """Delete all server-side state for a document."""
    return await engine.reset_document(request.doc_id, cleanup_external=request.cleanup_open_ai)


@router.post("/cleanup-openai")
async def cleanup_openai(request: DocIdRequest, engine: Engine) -> dict[str, Any]:
    """Delete the document's external resources, keeping metadata rows."""
    report = await engine.cleanup_external(request.doc_id)
    return {"ok": True, **asdict(report)}


class DocsAgentRequest(BaseModel):
    """Request body for POST /docs-agent."""

    text: str
    instruction: str


class DocsAgentResponse(CamelModel):
    result_text: str


class ChatDocsRequest(CamelModel):
    """Request body for POST /chat-docs."""

    doc_id: str
    doc_text: str
    user_message: str


class ChatDocsResponse(CamelModel):
    reply: str


agent_router = APIRouter(tags=["knowledge"])


@agent_router.post("/docs-agent", response_model=DocsAgentResponse)
async def docs_agent(request: DocsAgentRequest, engine: Engine) -> DocsAgentResponse:
    """Apply a one-shot instruction to the supplied text."""
    result = await engine.run_instruction(request.text, request.instruction)
    return DocsAgentResponse(result_text=result)


@agent_router.post("/chat-docs", response_model=ChatDocsResponse)
async def chat_docs(request: ChatDocsRequest, engine: Engine) -> ChatDocsResponse:
    """Chat over inline document text with the document's stored history."""
    reply = await engine.chat_with_doc(request.doc_id, request.doc_text, request.user_message)
    return ChatDocsResponse(reply=reply)
