from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_admin_key
from server.dependencies.rate_limit import enforce_rate_limit
from server.models.requests import RAGIndexRequest

router = APIRouter(prefix="/v1/rag", tags=["rag"], dependencies=[Depends(enforce_rate_limit)])


@router.post("/index")
async def index_codebase(
    request: Request,
    body: RAGIndexRequest,
    _: None = Depends(verify_admin_key),
) -> dict:
    """Queue an indexing job for a project directory.

    Args:
        request (Request): FastAPI request (provides app.state.rag_store).
        body (RAGIndexRequest): ``projectPath`` and optional indexing options.
        _ (None): Auth dependency result (unused).

    Returns:
        dict: ``{"success": True, "result": {"jobId", "status"}}``.
    """
    result = await request.app.state.rag_store.index_codebase(body.projectPath, body.options)
    return {"success": True, "result": result}


@router.delete("/index")
async def clear_index(request: Request, _: None = Depends(verify_admin_key)) -> dict:
    request.app.state.rag_store.clear_index()
    return {"success": True, "message": "RAG index cleared"}


@router.get("/stats")
async def rag_stats(request: Request) -> dict:
    return {"success": True, "stats": request.app.state.rag_store.get_stats()}
