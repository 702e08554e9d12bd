from typing import Any

from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.errors import UpstreamError

_CHAT_FIELDS = (
    "model", "message", "chat_history", "preamble", "temperature", "max_tokens",
    "stream", "p", "k", "seed", "stop_sequences", "frequency_penalty", "presence_penalty",
)


class LLMClientCohere(LLMClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default="https://api.cohere.com", val_type="string")
        self._api_key = self.get_config_val("API_KEY", default=None, val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Cohere"

    def _get_default_chat_model(self) -> str:
        return "command-a-03-2025"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="API_KEY", val_type="string", default=None),
            EnvConfig(env_key="BASE_URL", val_type="string", default="https://api.cohere.com"),
            EnvConfig(env_key="MODEL", val_type="string", default="command-a-03-2025"),
            EnvConfig(env_key="STREAMING_SUPPORTED", val_type="bool", default=False),
            EnvConfig(env_key="CB_FAILURES", val_type="number", default=2),
            EnvConfig(env_key="CB_RESET_MS", val_type="number", default=10000),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        return {"Authorization": f"Bearer {self._api_key}", "Accept": "application/json"}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/v1/models"

    def _get_endpoint_models(self) -> str:
        return "/v1/models"

    def _get_endpoint_embedding(self) -> str:
        return "/v1/embed"

    def _get_endpoint_chat(self) -> str:
        return "/v1/chat"

    def _get_endpoint_rerank(self) -> str:
        return "/v1/rerank"

    def _get_endpoint_vision(self) -> str:
        return "/v2/chat"

    ################ PAYLOAD BUILDER ##################
    def get_chat_payload(self, payload: dict) -> dict:
        """Build the Cohere /v1/chat body from a gateway chat payload.

        Unknown fields are dropped; an empty chat history or preamble is omitted.
        """
        body = {k: payload[k] for k in _CHAT_FIELDS if payload.get(k) is not None}
        body.setdefault("model", self.chat_model)
        self._require(body, "message")
        if not body.get("chat_history"):
            body.pop("chat_history", None)
        if not body.get("preamble"):
            body.pop("preamble", None)
        return body

    def get_embed_payload(self, payload: dict) -> dict:
        """Build the Cohere /v1/embed body.

        v3 embedding models require an ``input_type``; documents are the default.
        """
        texts = self._require(payload, "texts")
        model = self._require(payload, "model")
        body = {"model": model, "texts": [texts] if isinstance(texts, str) else list(texts)}
        input_type = payload.get("input_type")
        if input_type is None and "v3" in str(model):
            input_type = "search_document"
        if input_type is not None:
            body["input_type"] = input_type
        return body

    def get_rerank_payload(self, payload: dict) -> dict:
        body = {
            "model": self._require(payload, "model"),
            "query": self._require(payload, "query"),
            "documents": self._require(payload, "documents"),
        }
        if payload.get("top_n") is not None:
            body["top_n"] = payload["top_n"]
        return body

    def get_vision_payload(self, payload: dict) -> dict:
        """Build a Cohere /v2/chat body carrying image content parts.

        ``input`` may be a prompt string, an image URL / data URI, a dict with
        ``text``/``prompt`` and ``image``/``image_url``, or a list of those.
        """
        raw = self._require(payload, "input")
        items = raw if isinstance(raw, list) else [raw]
        content: list[dict] = []
        for item in items:
            content.extend(self._to_content_parts(item))
        return {
            "model": self._require(payload, "model"),
            "messages": [{"role": "user", "content": content}],
        }

    ##########################################
    ################# OTHER ##################
    ##########################################

    def extract_chat_response(self, response_data: dict) -> dict:
        text = response_data.get("text")
        if text is None:
            raise UpstreamError(
                "Cohere chat response does not contain text. Response keys: %s" % list(response_data.keys())
            )
        return {
            "text": text,
            "generation_id": response_data.get("generation_id"),
            "finish_reason": response_data.get("finish_reason"),
            "meta": response_data.get("meta"),
        }

    def extract_stream_event(self, event: dict) -> dict | None:
        event_type = event.get("event_type")
        if event_type == "text-generation":
            return {"text": event.get("text", "")}
        if event_type == "stream-end" and event.get("finish_reason") == "ERROR":
            raise UpstreamError("Cohere stream ended with an error")
        return None

    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        """Extract vectors from a /v1/embed response.

        Handles both ``{"embeddings": [[...]]}`` and the typed form
        ``{"embeddings": {"float": [[...]]}}``.

        Raises:
            UpstreamError: If the response does not contain embeddings.
        """
        embeddings = response_data.get("embeddings")
        if isinstance(embeddings, dict):
            embeddings = embeddings.get("float")
        if not isinstance(embeddings, list):
            raise UpstreamError(
                "Cohere response does not contain valid embeddings. Response keys: %s" % list(response_data.keys())
            )
        return embeddings

    def extract_rerank_results(self, response_data: dict) -> list[dict]:
        results = response_data.get("results") or []
        return [
            {"index": r.get("index", 0), "relevance_score": r.get("relevance_score", r.get("score", 0))}
            for r in results
        ]

    def extract_models(self, response_data: dict) -> list[dict]:
        return response_data.get("models") or []

    def extract_vision_response(self, response_data: dict) -> Any:
        message = response_data.get("message") or {}
        parts = message.get("content") or []
        texts = [p.get("text", "") for p in parts if isinstance(p, dict) and p.get("type") == "text"]
        return [{"index": 0, "text": "".join(texts), "finish_reason": response_data.get("finish_reason")}]

    ##########################################
    ############### HELPERS ##################
    ##########################################

    @staticmethod
    def _to_content_parts(item: Any) -> list[dict]:
        if isinstance(item, str):
            if item.startswith(("http://", "https://", "data:image/")):
                return [{"type": "image_url", "image_url": {"url": item}}]
            return [{"type": "text", "text": item}]
        if isinstance(item, dict):
            if item.get("type") in ("text", "image_url"):
                return [item]
            parts = []
            text = item.get("text") or item.get("prompt")
            if text:
                parts.append({"type": "text", "text": text})
            image = item.get("image_url") or item.get("image") or item.get("url")
            if isinstance(image, dict):
                image = image.get("url")
            if image:
                parts.append({"type": "image_url", "image_url": {"url": image}})
            return parts
        return [{"type": "text", "text": str(item)}]
