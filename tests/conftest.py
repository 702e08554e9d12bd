import asyncio
import logging

import pytest

from shared.clients.llm.ChatStream import ChatStream
from shared.clients.llm.LLMOperations import LLMOperations
from shared.clients.pool.OutboundPool import reset_global_pool
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import ColorLogger

# variables a developer shell may carry that change component defaults
_GATEWAY_ENV = (
    "LLM_ENGINE", "LLM_COHERE_MODEL", "LLM_COHERE_STREAMING_SUPPORTED", "LLM_COHERE_CB_FAILURES",
    "LLM_COHERE_CB_RESET_MS", "ADMIN_API_KEY", "RAG_PERSIST_EMBEDDINGS", "RAG_EMBEDDINGS_DIR",
    "RAG_SNAPSHOT_PATH", "MODELS_CONFIG_PATH", "OUTBOUND_USE_GLOBAL_AGENT", "SKIP_DIAGNOSTICS",
    "RATE_LIMIT_MAX_REQUESTS", "MAX_REQUEST_BODY_BYTES", "EXTERNAL_API_MAX_ATTEMPTS",
    "EXTERNAL_API_BASE_DELAY_MS", "RAG_EMBED_MODEL", "ALLOWED_ORIGINS",
)


class FakeLLMClient(LLMOperations):
    """In-memory upstream recording every call."""

    def __init__(self):
        self.calls: dict[str, list] = {"chat": [], "embed": [], "rerank": [], "vision": [], "models": []}
        self.chat_text = "hi"
        self.chat_delay = 0.0
        self.stream_chunks: list[dict] = [{"text": "Hel"}, {"text": "lo"}]
        self.stream_error: Exception | None = None
        self.embed_fn = lambda text: [float(len(text)), 1.0]
        self.errors: dict[str, list[Exception]] = {}
        self.always_fail: dict[str, Exception] = {}
        self.vision_enabled = False
        self.opened_streams: list[ChatStream] = []

    def get_engine_name(self) -> str:
        return "cohere"

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.always_fail:
            raise self.always_fail[operation]
        pending = self.errors.get(operation)
        if pending:
            raise pending.pop(0)

    async def do_chat(self, payload):
        self.calls["chat"].append(payload)
        self._maybe_fail("chat")
        if self.chat_delay:
            await asyncio.sleep(self.chat_delay)
        if payload.get("stream"):
            stream = ChatStream(self._stream())
            self.opened_streams.append(stream)
            return stream
        return {"text": self.chat_text}

    async def _stream(self):
        for chunk in self.stream_chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    async def do_embed(self, payload):
        self.calls["embed"].append(payload)
        self._maybe_fail("embed")
        return [self.embed_fn(text) for text in payload["texts"]]

    async def do_rerank(self, payload):
        self.calls["rerank"].append(payload)
        self._maybe_fail("rerank")
        count = len(payload["documents"])
        return [{"index": i, "relevance_score": round(1 - i / (count + 1), 3)} for i in reversed(range(count))]

    async def do_vision(self, payload):
        self.calls["vision"].append(payload)
        self._maybe_fail("vision")
        return [{"index": 0, "text": "a picture"}]

    async def do_list_models(self):
        self.calls["models"].append(None)
        self._maybe_fail("models")
        return [{"name": "command-a-03-2025"}]

    def supports_vision(self) -> bool:
        return self.vision_enabled


@pytest.fixture
def gateway_env(monkeypatch, tmp_path):
    for key in _GATEWAY_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ROOT_DIR", str(tmp_path))
    monkeypatch.setenv("LLM_COHERE_API_KEY", "test-key")
    yield monkeypatch
    reset_global_pool()


@pytest.fixture
def helper_config(gateway_env):
    return HelperConfig(logger=ColorLogger(logging.getLogger("gateway.tests")))


@pytest.fixture
def fake_upstream():
    return FakeLLMClient()
