from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from server.core.ChatService import SSE_HEADERS, ChatStreamResult
from server.dependencies.rate_limit import enforce_rate_limit
from server.models.requests import ChatCompletionRequest

router = APIRouter(prefix="/v1/chat", tags=["chat"], dependencies=[Depends(enforce_rate_limit)])


@router.post("/completions")
async def chat_completions(request: Request, body: ChatCompletionRequest):
    """Run an orchestrated chat turn.

    Args:
        request (Request): FastAPI request (provides app.state.chat_service).
        body (ChatCompletionRequest): Messages plus optional model, sampling and session id.

    Returns:
        dict | StreamingResponse: An OpenAI-style chat completion, or a
        ``text/event-stream`` response when the upstream streams.
    """
    result = await request.app.state.chat_service.create_completion(body)
    if isinstance(result, ChatStreamResult):
        return StreamingResponse(result.events, media_type="text/event-stream", headers=SSE_HEADERS)
    return result
