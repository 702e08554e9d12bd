import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator

from services.conversation.ConversationStore import ConversationStore
from services.conversation.models.Message import FormattedHistory
from services.registry.ModelRegistry import ModelRegistry
from shared.clients.llm.LLMOperations import LLMOperations
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import InvalidRequestError
from server.models.requests import ChatCompletionRequest
from server.models.responses import (
    ChatCompletionChoice,
    ChatCompletionMessage,
    ChatCompletionResponse,
    Usage,
)

SSE_PRIMER = ": ok\n\n"
SSE_DONE = "event: done\ndata: {}\n\n"
SSE_ERROR = "event: error\ndata: {}\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


def estimate_tokens(text: str | None) -> int:
    """Rough token count using the common four-characters-per-token approximation."""
    if not text:
        return 0
    return max(1, len(text) // 4)


def extract_content_string(content: Any) -> str:
    """Flatten an inbound message ``content`` (string, ``{text}`` object or list of parts) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and content.get("text"):
        return str(content["text"])
    if isinstance(content, list):
        return " ".join(str(p["text"]) for p in content if isinstance(p, dict) and p.get("text"))
    try:
        return json.dumps(content)
    except (TypeError, ValueError):
        return str(content)


def extract_chunk_text(chunk: Any) -> str:
    """Text of one stream chunk: ``text``, ``delta.content`` or ``content``, else its JSON form."""
    if chunk is None:
        return ""
    if isinstance(chunk, str):
        return chunk
    if isinstance(chunk, bytes):
        return chunk.decode("utf-8", errors="replace")
    if isinstance(chunk, dict):
        if isinstance(chunk.get("text"), str):
            return chunk["text"]
        delta = chunk.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            return delta["content"]
        if isinstance(chunk.get("content"), str):
            return chunk["content"]
    try:
        return json.dumps(chunk)
    except (TypeError, ValueError):
        return str(chunk)


def extract_response_text(response: Any) -> str:
    if isinstance(response, dict):
        if isinstance(response.get("text"), str):
            return response["text"]
        message = response.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
    return ""


@dataclass
class ChatStreamResult:
    """A chat answer that is delivered as server-sent events."""

    session_id: str
    events: AsyncIterator[str]


class ChatService:
    """Orchestrates a chat completion: session bookkeeping, RAG preamble, upstream call, response shaping."""

    def __init__(
        self,
        helper_config: HelperConfig,
        llm_client: LLMOperations,
        conversation_store: ConversationStore,
        model_registry: ModelRegistry,
        default_model: str | None = None,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._llm_client = llm_client
        self._conversations = conversation_store
        self._registry = model_registry
        self.engine = getattr(llm_client, "engine", "upstream")
        self.streaming_enabled = bool(getattr(llm_client, "streaming_supported", False))
        self.diagnostics = not helper_config.get_bool_val("SKIP_DIAGNOSTICS", default=False)

        self.current_model = default_model or helper_config.get_string_val(
            f"LLM_{self.engine.upper()}_MODEL", default=model_registry.get_default_model("generation") or ""
        )
        self.default_temperature = helper_config.get_number_val("DEFAULT_TEMPERATURE", default=0.7)
        self.default_max_tokens = int(helper_config.get_number_val("DEFAULT_COMPLETION_TOKENS", default=512))
        self.max_total_tokens = int(helper_config.get_number_val("MAX_TOTAL_TOKENS", default=4000))
        self.min_completion_tokens = int(helper_config.get_number_val("MIN_COMPLETION_TOKENS", default=50))
        self.max_completion_tokens = int(helper_config.get_number_val("MAX_COMPLETION_TOKENS", default=2048))
        self.token_safety_buffer = int(helper_config.get_number_val("TOKEN_SAFETY_BUFFER", default=100))

    ##########################################
    ############### CORE #####################
    ##########################################

    async def create_completion(self, request: ChatCompletionRequest) -> dict | ChatStreamResult:
        """Run one chat turn.

        Args:
            request (ChatCompletionRequest): The inbound chat request.

        Returns:
            dict | ChatStreamResult: The chat-completion body, or an SSE event
            stream when streaming is enabled and the upstream streams.

        Raises:
            InvalidRequestError: If there are no messages or the model is not a known generation model.
            GatewayError: If the upstream call fails.
        """
        started = time.time()
        if not request.messages:
            raise InvalidRequestError("Messages array required")
        model = request.model or self.current_model
        self._registry.validate_model(model, required_type="generation")

        session_id = request.session_id or uuid.uuid4().hex
        for message in request.messages:
            await self._conversations.add_message(session_id, message.role, extract_content_string(message.content))

        history = self._conversations.get_formatted_history_with_rag(session_id)
        payload, prompt_tokens = self._build_payload(model, history, request)
        if self.diagnostics:
            self.logging.info(
                "Chat session=%s model=%s history=%d prompt_tokens~%d max_tokens=%d",
                session_id, model, len(history.chat_history), prompt_tokens, payload["max_tokens"],
            )

        response = await self._llm_client.do_chat(payload)

        if self.streaming_enabled and hasattr(response, "__aiter__"):
            return ChatStreamResult(session_id=session_id, events=self._stream_events(session_id, response))

        text = extract_response_text(response)
        await self._conversations.add_message(session_id, "assistant", text)
        return self._format_response(text, model, prompt_tokens, started, session_id)

    async def switch_model(self, model: str | None) -> str:
        """Change the default generation model used when a request names none."""
        self._registry.validate_model(model, required_type="generation")
        self.current_model = model
        self.logging.info("Default chat model switched to %s", model, color="cyan")
        return model

    ##########################################
    ############### STREAMING ################
    ##########################################

    async def _stream_events(self, session_id: str, stream: Any) -> AsyncIterator[str]:
        yield SSE_PRIMER
        collected: list[str] = []
        try:
            async for chunk in stream:
                text = extract_chunk_text(chunk)
                if text:
                    collected.append(text)
                    yield f"data: {json.dumps({'text': text})}\n\n"
        except Exception as e:
            self.logging.error("Streaming response for session %s failed: %s", session_id, e)
            yield SSE_ERROR
            return
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()

        await self._conversations.add_message(session_id, "assistant", "".join(collected))
        yield SSE_DONE

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _build_payload(self, model: str, history: FormattedHistory, request: ChatCompletionRequest) -> tuple[dict, int]:
        prompt_text = " ".join(
            [history.preamble or "", history.message] + [turn.message for turn in history.chat_history]
        )
        prompt_tokens = estimate_tokens(prompt_text)
        payload = {
            "model": model,
            "message": history.message,
            "temperature": request.temperature if request.temperature is not None else self.default_temperature,
            "max_tokens": self._clamp_max_tokens(request.max_tokens, prompt_tokens),
        }
        if history.chat_history:
            payload["chat_history"] = [turn.model_dump() for turn in history.chat_history]
        if history.preamble:
            payload["preamble"] = history.preamble
        return payload, prompt_tokens

    def _clamp_max_tokens(self, requested: int | None, prompt_tokens: int) -> int:
        wanted = requested if requested and requested > 0 else self.default_max_tokens
        budget = self.max_total_tokens - prompt_tokens - self.token_safety_buffer
        return max(self.min_completion_tokens, min(wanted, self.max_completion_tokens, budget))

    def _format_response(self, text: str, model: str, prompt_tokens: int, started: float, session_id: str) -> dict:
        completion_tokens = estimate_tokens(text)
        response = ChatCompletionResponse(
            id=f"chatcmpl-{uuid.uuid4().hex}",
            created=int(time.time()),
            model=f"{self.engine}/{model}",
            choices=[ChatCompletionChoice(message=ChatCompletionMessage(content=text))],
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            system_fingerprint=f"{self.engine}_chat_{model}_{int(time.time() * 1000)}",
            processing_time_ms=int((time.time() - started) * 1000),
            session_id=session_id,
            conversation_stats=self._conversations.get_stats(),
        )
        return response.model_dump()
