"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text

from backend.docassist.api.deps import get_engine
from backend.docassist.db.sql_repositories import SqlMetadataStore
from backend.docassist.knowledge.engine import DocAssistEngine
from backend.docassist.llm.client import InMemoryKnowledgeService

router = APIRouter()


async def check_db(engine: DocAssistEngine) -> tuple[bool, str]:
    """Check metadata store connectivity.

    Returns:
        (is_ok, status_message)
    """
    store = engine.store
    if not isinstance(store, SqlMetadataStore):
        return (True, "in_memory")

    try:
        async with store.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return (True, "ok")
    except Exception as e:
        return (False, f"error: {type(e).__name__}")


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check for Docker/k8s.

    Returns:
        200 OK always (application is running)
    """
    return {"status": "ok"}


@router.get("/healthz", response_model=None)
async def healthz(engine: DocAssistEngine = Depends(get_engine)) -> dict[str, Any] | Response:
    """Component health: metadata store and knowledge service mode.

    Returns:
        200 with component status if the store is reachable
        503 otherwise
    """
    db_ok, db_status = await check_db(engine)
    service_status = (
        "in_memory" if isinstance(engine.service, InMemoryKnowledgeService) else "openai"
    )

    response_body = {
        "status": "ok" if db_ok else "degraded",
        "components": {"db": db_status, "knowledge_service": service_status},
    }
    if not db_ok:
        return JSONResponse(content=response_body, status_code=503)
    return response_body
