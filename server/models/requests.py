from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Any = ""


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: list[ChatMessage] = []
    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")


class ModelSwitchRequest(BaseModel):
    model: str | None = None


class EmbedRequest(BaseModel):
    input: str | list[str] | None = None
    model: str | None = None


class RerankRequest(BaseModel):
    query: str | None = None
    documents: list[Any] | None = None
    model: str | None = None
    top_n: int | None = None


class VisionRequest(BaseModel):
    input: Any = None
    model: str | None = None


class RAGIndexRequest(BaseModel):
    projectPath: str | None = None
    options: dict | None = None


class FeedbackRequest(BaseModel):
    feedback: str | None = None
    type: str = "correction"
