from typing import Literal

from pydantic import BaseModel

Role = Literal["system", "user", "assistant"]


class Message(BaseModel):
    role: Role
    content: str
    timestamp: int
    """Creation time in epoch milliseconds"""
    metadata: dict | None = None


class ChatTurn(BaseModel):
    """One history entry in the upstream's chat-history format."""

    role: Literal["USER", "CHATBOT"]
    message: str


class FormattedHistory(BaseModel):
    """Conversation prepared for an upstream chat call."""

    preamble: str | None = None
    chat_history: list[ChatTurn] = []
    message: str
