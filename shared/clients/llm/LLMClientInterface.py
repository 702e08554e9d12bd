import json
from abc import abstractmethod
from typing import Any, AsyncIterator

import httpx

from shared.clients.ClientInterface import ClientInterface
from shared.clients.llm.ChatStream import ChatStream
from shared.clients.llm.LLMOperations import LLMOperations
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import NotImplementedFeatureError, UpstreamError


class LLMClientInterface(ClientInterface, LLMOperations):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)

        # default generation model and streaming support of this upstream
        self.chat_model = self.get_config_val("MODEL", default=self._get_default_chat_model(), val_type="string")
        self.streaming_supported = self.get_config_val("STREAMING_SUPPORTED", default=False, val_type="bool")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        return "llm"

    @abstractmethod
    def _get_default_chat_model(self) -> str:
        pass

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_endpoint_models(self) -> str:
        """Returns the endpoint path for model listing requests (e.g. "/v1/models")."""
        pass

    @abstractmethod
    def _get_endpoint_embedding(self) -> str:
        """Returns the endpoint path for embedding requests (e.g. "/v1/embed")."""
        pass

    @abstractmethod
    def _get_endpoint_chat(self) -> str:
        """Returns the endpoint path for chat requests (e.g. "/v1/chat")."""
        pass

    @abstractmethod
    def _get_endpoint_rerank(self) -> str:
        """Returns the endpoint path for rerank requests (e.g. "/v1/rerank")."""
        pass

    def _get_endpoint_vision(self) -> str | None:
        """Returns the endpoint path for vision requests, or None if the upstream has none."""
        return None

    def supports_vision(self) -> bool:
        return self._get_endpoint_vision() is not None

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_chat_payload(self, payload: dict) -> dict:
        """Build the backend-specific request body for a chat request.

        Args:
            payload (dict): Gateway chat payload
                ({model, message, chat_history?, preamble?, temperature?, max_tokens?, stream?}).

        Returns:
            dict: JSON-serialisable request body.
        """
        pass

    @abstractmethod
    def get_embed_payload(self, payload: dict) -> dict:
        pass

    @abstractmethod
    def get_rerank_payload(self, payload: dict) -> dict:
        pass

    def get_vision_payload(self, payload: dict) -> dict:
        raise NotImplementedFeatureError("Vision is not supported by this upstream")

    ##########################################
    ################# OTHER ##################
    ##########################################

    @abstractmethod
    def extract_chat_response(self, response_data: dict) -> dict:
        """Normalise a raw chat response to a dict with at least a ``text`` field."""
        pass

    @abstractmethod
    def extract_stream_event(self, event: dict) -> dict | None:
        """Map one decoded stream event to a chunk ``{"text": ...}``.

        Returns:
            dict | None: The chunk, or None for events that carry no text.

        Raises:
            UpstreamError: If the event reports a failed generation.
        """
        pass

    @abstractmethod
    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        """Extract embedding vectors from a raw embedding response, in input order."""
        pass

    @abstractmethod
    def extract_rerank_results(self, response_data: dict) -> list[dict]:
        pass

    @abstractmethod
    def extract_models(self, response_data: dict) -> list[dict]:
        pass

    def extract_vision_response(self, response_data: dict) -> Any:
        return response_data

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_list_models(self) -> list[dict]:
        """Fetch the models the upstream exposes."""
        response = await self.do_request(method="GET", endpoint=self._get_endpoint_models(), raise_on_error=True)
        return self.extract_models(response.json())

    async def do_embed(self, payload: dict) -> list[list[float]]:
        """Send an embedding request and return the extracted vectors.

        Args:
            payload (dict): {"model": ..., "texts": [...], "input_type"?: ...}

        Returns:
            list[list[float]]: Embedding vectors in the same order as the inputs.
        """
        body = self.get_embed_payload(payload)
        response = await self.do_request(method="POST", endpoint=self._get_endpoint_embedding(), json=body, raise_on_error=True)
        embeddings = self.extract_embeddings_from_response(response.json())
        return embeddings

    async def do_rerank(self, payload: dict) -> list[dict]:
        body = self.get_rerank_payload(payload)
        response = await self.do_request(method="POST", endpoint=self._get_endpoint_rerank(), json=body, raise_on_error=True)
        return self.extract_rerank_results(response.json())

    async def do_vision(self, payload: dict) -> Any:
        endpoint = self._get_endpoint_vision()
        if endpoint is None:
            raise NotImplementedFeatureError("Vision is not supported by this upstream")
        body = self.get_vision_payload(payload)
        response = await self.do_request(method="POST", endpoint=endpoint, json=body, raise_on_error=True)
        return self.extract_vision_response(response.json())

    async def do_chat(self, payload: dict) -> dict | ChatStream:
        """Send a chat request.

        Args:
            payload (dict): Gateway chat payload. With ``stream`` set the call
                returns once the response headers arrive.

        Returns:
            dict | ChatStream: ``{"text": ...}`` or a stream of ``{"text": ...}`` chunks.

        Raises:
            UpstreamError: If the upstream answers with a non-2xx status.
        """
        body = self.get_chat_payload(payload)
        if body.get("stream"):
            response = await self.do_stream_request(method="POST", endpoint=self._get_endpoint_chat(), json=body)
            return ChatStream(self._iterate_stream_events(response), on_close=response.aclose)

        response = await self.do_request(method="POST", endpoint=self._get_endpoint_chat(), json=body, raise_on_error=True)
        return self.extract_chat_response(response.json())

    ##########################################
    ############### HELPERS ##################
    ##########################################

    async def _iterate_stream_events(self, response: httpx.Response) -> AsyncIterator[dict]:
        """Decode newline-delimited JSON events (``data:`` prefixes tolerated) into text chunks."""
        async for line in response.aiter_lines():
            line = line.strip()
            if line.startswith("data:"):
                line = line[len("data:"):].strip()
            if not line or line == "[DONE]":
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                self.logging.debug("Skipping undecodable stream line: %s", line[:200])
                continue
            chunk = self.extract_stream_event(event)
            if chunk is not None:
                yield chunk

    @staticmethod
    def _require(payload: dict, field: str) -> Any:
        if field not in payload or payload[field] is None:
            raise UpstreamError(f"Payload is missing '{field}'", upstream_status=400)
        return payload[field]
