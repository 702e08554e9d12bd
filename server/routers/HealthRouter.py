import time

from fastapi import APIRouter, Request, Response

from server.models.responses import HealthResponse
from shared.metrics.metrics import render_latest

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> HealthResponse:
    """Liveness probe with conversation and RAG store statistics."""
    state = request.app.state
    return HealthResponse(
        uptime=time.time() - state.started_at,
        conversation_stats=state.conversation_store.get_stats(),
        rag_stats=state.rag_store.get_stats(),
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus exposition of every gateway metric."""
    body, content_type = render_latest()
    return Response(content=body, media_type=content_type)
