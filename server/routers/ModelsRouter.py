from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_admin_key
from server.dependencies.rate_limit import enforce_rate_limit
from server.models.requests import ModelSwitchRequest

router = APIRouter(prefix="/v1/models", tags=["models"], dependencies=[Depends(enforce_rate_limit)])


@router.get("")
async def list_models(request: Request) -> dict:
    """Enumerate every model the gateway accepts."""
    registry = request.app.state.model_registry
    return {"models": [spec.model_dump(by_alias=True) for spec in registry.list_models()]}


@router.post("/switch")
async def switch_model(
    request: Request,
    body: ModelSwitchRequest,
    _: None = Depends(verify_admin_key),
) -> dict:
    """Change the default generation model used by chat completions.

    Args:
        request (Request): FastAPI request (provides app.state.chat_service).
        body (ModelSwitchRequest): JSON body with the new model id.
        _ (None): Auth dependency result (unused).

    Returns:
        dict: ``{"success": True, "model": <id>}``.
    """
    model = await request.app.state.chat_service.switch_model(body.model)
    return {"success": True, "model": model}
