"""Engine wiring for request handlers."""

import logging

from backend.docassist.config import Settings, get_settings
from backend.docassist.db.engine import create_async_engine_from_settings, ensure_schema
from backend.docassist.db.inmemory import InMemoryMetadataStore
from backend.docassist.db.repositories import MetadataStore
from backend.docassist.db.sql_repositories import SqlMetadataStore
from backend.docassist.knowledge.engine import DocAssistEngine
from backend.docassist.llm.client import get_knowledge_service
from backend.docassist.utils.metrics import PrometheusExternalMetrics

logger = logging.getLogger(__name__)


async def build_engine(settings: Settings) -> DocAssistEngine:
    """Build the engine from settings.

    Uses PostgreSQL (or any SQLAlchemy async URL) when DATABASE_URL is set,
    otherwise an in-memory store.
    """
    store: MetadataStore
    if settings.database_url:
        db_engine = create_async_engine_from_settings(settings)
        await ensure_schema(db_engine)
        store = SqlMetadataStore(db_engine)
    else:
        logger.warning("DATABASE_URL not set, using in-memory metadata store")
        store = InMemoryMetadataStore()

    metrics = PrometheusExternalMetrics()
    return DocAssistEngine(
        store, get_knowledge_service(settings, metrics), settings, metrics=metrics
    )


# Global engine, built on first request
_engine: DocAssistEngine | None = None


async def get_engine() -> DocAssistEngine:
    """FastAPI dependency for the knowledge engine (override in tests)."""
    global _engine
    if _engine is None:
        _engine = await build_engine(get_settings())
    return _engine
