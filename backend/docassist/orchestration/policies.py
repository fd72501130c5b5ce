"""Retrieval heuristics as injectable predicates."""

import re
from collections.abc import Callable
from dataclasses import dataclass

MessagePredicate = Callable[[str], bool]

_FORCE_SEARCH = re.compile(
    r"\b(doc|document|file|tab|section|chapter|above|below|in this|in the doc|in the file"
    r"|from the doc)\b",
    re.IGNORECASE,
)
_COMPLEX = re.compile(
    r"\b(compare|options|trade-?off|design|architecture|root cause|strategy|plan|proposal"
    r"|alternatives|risk|mitigation)\b",
    re.IGNORECASE,
)
_ASKS_MODEL = re.compile(r"(\bmelyik\b|\bwhich\b).*(\bmodel\b|\bopenai\b)", re.IGNORECASE)

COMPLEX_MIN_CHARS = 400


def mentions_document(message: str) -> bool:
    """Message refers to the document itself, so retrieval should be forced."""
    return bool(_FORCE_SEARCH.search(message))


def is_complex(message: str) -> bool:
    """Long or analytical message that benefits from plan-then-answer."""
    return len(message) > COMPLEX_MIN_CHARS or bool(_COMPLEX.search(message))


def asks_model(message: str) -> bool:
    """Message asks which model is answering."""
    return bool(_ASKS_MODEL.search(message))


@dataclass(frozen=True)
class RetrievalPolicy:
    """Predicates deciding how a chat turn is run.

    Attributes:
        force_search: Force the retrieval tool to be invoked
        complex_prompt: Use the two-step plan-then-answer flow (when enabled)
        model_query: Answer locally with the bound model name
    """

    force_search: MessagePredicate = mentions_document
    complex_prompt: MessagePredicate = is_complex
    model_query: MessagePredicate = asks_model
