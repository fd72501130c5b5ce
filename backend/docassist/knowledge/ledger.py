"""Content addressing and the dedup ledger."""

import hashlib
import logging
from dataclasses import dataclass

from backend.docassist.db.repositories import MetadataStore, NewUnit, UnitRecord
from backend.docassist.utils.metrics import PrometheusExternalMetrics

logger = logging.getLogger(__name__)


def content_digest(content: str | bytes, *, disambiguator: str | None = None) -> str:
    """SHA-256 hex digest of a unit's exact content.

    A disambiguator (e.g. a tab id) is prefixed so identical text owned by
    different owners hashes differently.
    """
    if isinstance(content, str):
        if disambiguator is not None:
            content = f"{disambiguator}\n\n{content}"
        data = content.encode("utf-8")
    else:
        data = content
        if disambiguator is not None:
            data = disambiguator.encode("utf-8") + b"\n\n" + data
    return hashlib.sha256(data).hexdigest()


@dataclass
class LedgerHit:
    """Existing handles for an already-synchronized unit."""

    unit: UnitRecord
    reused: bool = True


class DedupLedger:
    """Looks up and records synchronized units keyed by (doc_id, kind, digest)."""

    def __init__(
        self, store: MetadataStore, metrics: PrometheusExternalMetrics | None = None
    ) -> None:
        self._store = store
        self._metrics = metrics or PrometheusExternalMetrics()

    async def lookup(self, doc_id: str, kind: str, digest: str) -> LedgerHit | None:
        """Return the existing unit if it carries a usable index handle."""
        unit = await self._store.find_unit(doc_id, kind, digest)
        if unit is None or not unit.vector_store_file_id:
            return None
        logger.debug(f"[ledger] reuse {kind} {digest[:12]} for doc {doc_id}")
        self._metrics.inc_reuse(kind)
        return LedgerHit(unit=unit)

    async def record(self, unit: NewUnit, *, refresh_on_conflict: bool = False) -> None:
        """Record a unit after upload. A concurrent duplicate is ignored."""
        await self._store.record_unit(unit, refresh_on_conflict=refresh_on_conflict)
