from abc import ABC, abstractmethod
from typing import Any

from shared.clients.llm.ChatStream import ChatStream


class ModelsNamespace:
    """Nested ``models`` namespace so that ``client.models.list()`` routes to ``do_list_models``."""

    def __init__(self, owner: "LLMOperations"):
        self._owner = owner

    async def list(self, *args, **kwargs) -> list[dict]:
        return await self._owner.do_list_models(*args, **kwargs)


class LLMOperations(ABC):
    """The upstream operation set shared by raw clients and the resilient wrapper.

    Payload shapes:
        chat:   {model, message, chat_history?, preamble?, temperature?, max_tokens?, stream?}
        embed:  {model, texts, input_type?}
        rerank: {model, query, documents, top_n?}
        vision: {model, input}
    """

    @property
    def models(self) -> ModelsNamespace:
        return ModelsNamespace(self)

    @abstractmethod
    async def do_chat(self, payload: dict) -> dict | ChatStream:
        """Run a chat call. Returns ``{"text": ..., ...}``, or a :class:`ChatStream` when ``payload["stream"]`` is true."""
        pass

    @abstractmethod
    async def do_embed(self, payload: dict) -> list[list[float]]:
        """Embed ``payload["texts"]``. Vectors come back in input order."""
        pass

    @abstractmethod
    async def do_rerank(self, payload: dict) -> list[dict]:
        """Rank documents against a query. Returns ``[{"index", "relevance_score"}, ...]``."""
        pass

    @abstractmethod
    async def do_vision(self, payload: dict) -> Any:
        pass

    @abstractmethod
    async def do_list_models(self) -> list[dict]:
        pass

    def supports_vision(self) -> bool:
        return False
