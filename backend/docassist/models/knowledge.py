"""Knowledge sync and retrieval result models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncResult(CamelModel):
    """Outcome of synchronizing one document, tab or uploaded file."""

    vector_store_file_id: str
    docs_file_id: int | None = None
    file_vector_store_id: str | None = None
    reused: bool = False
    has_file_scope: bool = False


class Source(CamelModel):
    """A cited passage resolved against the document's synchronized units."""

    file_id: str
    filename: str | None = None
    kind: str | None = None
    section: str = ""
    snippet: str = ""


class Scope(CamelModel):
    """Index scope a chat turn retrieved from."""

    type: Literal["all", "file"] = "all"
    file_id: int | None = None


class ChatReply(CamelModel):
    """Assistant reply with its sources."""

    reply: str
    response_id: str
    sources: list[Source] = Field(default_factory=list)
    scope: Scope = Field(default_factory=Scope)


class FileEntry(CamelModel):
    """A parent unit as listed to the client."""

    id: int
    kind: str
    filename: str
    sha256: str
    vector_store_file_id: str
    has_file_scope: bool
    created_at: datetime


class SessionInfo(CamelModel):
    """Session handles returned on init."""

    doc_id: str
    conversation_id: str
    vector_store_id: str
    model: str | None = None
    has_summary: bool = False


class ResetResult(CamelModel):
    """Rows removed by a document reset, plus the external cleanup outcome if run."""

    doc_id: str
    deleted_chat_history: int = 0
    deleted_docs_files: int = 0
    deleted_docs_sessions: int = 0
    cleanup: dict[str, object] | None = None
