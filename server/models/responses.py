from typing import Any

from pydantic import BaseModel


class ChatCompletionMessage(BaseModel):
    role: str = "assistant"
    content: str


class ChatCompletionChoice(BaseModel):
    index: int = 0
    message: ChatCompletionMessage
    finish_reason: str = "stop"


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatCompletionResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: list[ChatCompletionChoice]
    usage: Usage
    system_fingerprint: str
    processing_time_ms: int
    session_id: str
    conversation_stats: dict


class EmbeddingItem(BaseModel):
    index: int
    embedding: list[float]


class EmbedResponse(BaseModel):
    object: str = "list"
    data: list[EmbeddingItem]


class RerankResult(BaseModel):
    index: int
    relevance_score: float


class RerankResponse(BaseModel):
    object: str = "list"
    results: list[RerankResult]


class VisionResponse(BaseModel):
    object: str = "list"
    data: Any


class HistoryResponse(BaseModel):
    sessionId: str
    messages: list[dict]
    count: int


class SuccessResponse(BaseModel):
    success: bool = True
    message: str | None = None


class HealthResponse(BaseModel):
    status: str = "healthy"
    uptime: float
    conversation_stats: dict
    rag_stats: dict
