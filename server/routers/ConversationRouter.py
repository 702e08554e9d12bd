from fastapi import APIRouter, Depends, Request

from server.dependencies.rate_limit import enforce_rate_limit
from server.models.requests import FeedbackRequest
from server.models.responses import HistoryResponse, SuccessResponse
from shared.models.errors import InvalidRequestError

router = APIRouter(prefix="/v1/conversations", tags=["conversations"], dependencies=[Depends(enforce_rate_limit)])


@router.get("/{session_id}/history")
async def get_history(request: Request, session_id: str) -> HistoryResponse:
    """Return every message stored for a session (empty for unknown sessions)."""
    messages = request.app.state.conversation_store.get_conversation(session_id)
    return HistoryResponse(
        sessionId=session_id,
        messages=[m.model_dump(exclude_none=True) for m in messages],
        count=len(messages),
    )


@router.post("/{session_id}/feedback")
async def add_feedback(request: Request, session_id: str, body: FeedbackRequest) -> SuccessResponse:
    """Attach user feedback to a session as a tagged system message.

    Raises:
        InvalidRequestError: If ``feedback`` is missing or empty.
    """
    if not body.feedback:
        raise InvalidRequestError("Feedback is required")
    await request.app.state.conversation_store.add_feedback(session_id, body.feedback, body.type or "correction")
    return SuccessResponse(message="Feedback recorded")


@router.delete("/{session_id}")
async def clear_conversation(request: Request, session_id: str) -> SuccessResponse:
    request.app.state.conversation_store.clear(session_id)
    return SuccessResponse(message="Conversation cleared")
