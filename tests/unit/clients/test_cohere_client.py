import asyncio
import json

import httpx
import pytest

from shared.clients.llm.ChatStream import ChatStream
from shared.clients.llm.cohere.LLMClientCohere import LLMClientCohere
from shared.models.errors import UpstreamError


def make_client(helper_config, handler) -> LLMClientCohere:
    client = LLMClientCohere(helper_config)
    client.client_factory = lambda **kwargs: httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)
    return client


def run_with_client(client: LLMClientCohere, operation):
    async def scenario():
        await client.boot()
        try:
            return await operation()
        finally:
            await client.close()

    return asyncio.run(scenario())


def test_missing_api_key_fails_configuration(gateway_env, helper_config):
    gateway_env.delenv("LLM_COHERE_API_KEY")
    with pytest.raises(ValueError):
        LLMClientCohere(helper_config)


def test_chat_sends_cohere_body_and_returns_text(helper_config):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"text": "hello there", "generation_id": "g1", "finish_reason": "COMPLETE"})

    client = make_client(helper_config, handler)
    result = run_with_client(
        client,
        lambda: client.do_chat({"message": "hi", "chat_history": [], "preamble": "", "temperature": 0.7, "sessionId": "s"}),
    )

    assert result["text"] == "hello there"
    assert seen["path"] == "/v1/chat"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"] == {"model": "command-a-03-2025", "message": "hi", "temperature": 0.7}


def test_embed_adds_input_type_for_v3_models_and_reads_typed_vectors(helper_config):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embeddings": {"float": [[0.1, 0.2], [0.3, 0.4]]}})

    client = make_client(helper_config, handler)
    vectors = run_with_client(client, lambda: client.do_embed({"model": "embed-english-v3.0", "texts": ["a", "b"]}))

    assert vectors == [[0.1, 0.2], [0.3, 0.4]]
    assert seen["body"]["input_type"] == "search_document"


def test_rerank_results_are_normalised(helper_config):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["top_n"] == 1
        return httpx.Response(200, json={"results": [{"index": 1, "relevance_score": 0.9}]})

    client = make_client(helper_config, handler)
    results = run_with_client(
        client,
        lambda: client.do_rerank({"model": "rerank-multilingual-v3.0", "query": "q", "documents": ["a", "b"], "top_n": 1}),
    )
    assert results == [{"index": 1, "relevance_score": 0.9}]


@pytest.mark.parametrize(
    "upstream_status, status_code, error_type",
    [
        (401, 401, "authentication_error"),
        (404, 404, "not_found"),
        (422, 400, "invalid_request_error"),
        (429, 429, "rate_limit_exceeded"),
        (503, 500, "internal_server_error"),
    ],
)
def test_upstream_status_is_mapped(helper_config, upstream_status, status_code, error_type):
    client = make_client(helper_config, lambda request: httpx.Response(upstream_status, json={"message": "nope"}))

    with pytest.raises(UpstreamError) as exc_info:
        run_with_client(client, lambda: client.do_embed({"model": "embed-english-v3.0", "texts": ["a"]}))

    assert exc_info.value.upstream_status == upstream_status
    assert exc_info.value.status_code == status_code
    assert exc_info.value.error_type == error_type


def test_streaming_chat_yields_text_chunks_and_closes(helper_config):
    events = [
        {"event_type": "stream-start", "generation_id": "g"},
        {"event_type": "text-generation", "text": "Hel"},
        {"event_type": "text-generation", "text": "lo"},
        {"event_type": "stream-end", "finish_reason": "COMPLETE"},
    ]
    body = "\n".join(json.dumps(e) for e in events) + "\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=body.encode(), headers={"content-type": "application/stream+json"})

    client = make_client(helper_config, handler)

    async def consume():
        stream = await client.do_chat({"message": "hi", "stream": True})
        assert isinstance(stream, ChatStream)
        texts = [chunk["text"] async for chunk in stream]
        return texts, stream.closed

    texts, closed = run_with_client(client, consume)
    assert texts == ["Hel", "lo"]
    assert closed is True


def test_stream_error_event_raises(helper_config):
    body = json.dumps({"event_type": "stream-end", "finish_reason": "ERROR"}) + "\n"
    client = make_client(helper_config, lambda request: httpx.Response(200, content=body.encode()))

    async def consume():
        stream = await client.do_chat({"message": "hi", "stream": True})
        return [chunk async for chunk in stream]

    with pytest.raises(UpstreamError):
        run_with_client(client, consume)


def test_vision_builds_content_parts(helper_config):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"message": {"content": [{"type": "text", "text": "a cat"}]}, "finish_reason": "COMPLETE"},
        )

    client = make_client(helper_config, handler)
    result = run_with_client(
        client,
        lambda: client.do_vision({"model": "command-a-vision-07-2025", "input": ["What is this?", "https://img.example/cat.png"]}),
    )

    assert seen["path"] == "/v2/chat"
    content = seen["body"]["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "What is this?"}
    assert content[1] == {"type": "image_url", "image_url": {"url": "https://img.example/cat.png"}}
    assert result[0]["text"] == "a cat"
    assert client.supports_vision() is True


def test_request_before_boot_is_rejected(helper_config):
    client = LLMClientCohere(helper_config)
    with pytest.raises(RuntimeError):
        asyncio.run(client.do_list_models())
