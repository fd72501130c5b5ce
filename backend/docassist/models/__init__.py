"""Models package - re-exports for convenience."""

from backend.docassist.models.knowledge import (
    CamelModel,
    ChatReply,
    FileEntry,
    ResetResult,
    Scope,
    SessionInfo,
    Source,
    SyncResult,
)

__all__ = [
    "CamelModel",
    "ChatReply",
    "FileEntry",
    "ResetResult",
    "Scope",
    "SessionInfo",
    "Source",
    "SyncResult",
]
