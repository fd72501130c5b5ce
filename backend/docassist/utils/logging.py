"""Structured logging for chat turns."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class ChatEvent:
    """One completed chat turn, as reported to the structured log."""

    doc_id: str
    scope: str
    file_id: int | None
    model: str
    force_search: bool
    two_step: bool
    used_sources: int
    latency_ms: float
    usage: dict[str, Any] = field(default_factory=dict)


class ChatEventLogger:
    """Structured logger for chat turns."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled

    def log_chat(self, event: ChatEvent) -> None:
        """Log a chat turn with structured data (no-op when disabled)."""
        if not self._enabled:
            return

        log_data: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": "docassist.chat",
            **asdict(event),
        }
        log_data["latency_ms"] = round(event.latency_ms, 2)

        logger.info(
            f"Chat turn: doc={event.doc_id} scope={event.scope} sources={event.used_sources}",
            extra={"structured": log_data},
        )
