"""Prometheus metrics endpoint."""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint.

    Exposes all registered Prometheus metrics including:
    - docassist_external_calls_total{operation, outcome}
    - docassist_external_latency_ms{operation}
    - docassist_dedup_reuse_total{kind}
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
