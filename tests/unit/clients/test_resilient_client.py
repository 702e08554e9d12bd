import asyncio

import pytest

from shared.clients.llm.ChatStream import ChatStream
from shared.clients.llm.ResilientLLMClient import ResilientLLMClient
from shared.models.errors import CircuitOpenError, NotImplementedFeatureError, UpstreamError
from shared.resilience.CircuitBreaker import CircuitBreaker
from shared.resilience.retry import RetryOptions


async def _no_sleep(seconds: float) -> None:
    return None


def make_client(helper_config, upstream, **kwargs) -> ResilientLLMClient:
    kwargs.setdefault("retry_options", RetryOptions(max_attempts=3, base_delay_ms=1, jitter=False))
    return ResilientLLMClient(helper_config, upstream=upstream, sleep=_no_sleep, **kwargs)


def test_identical_embed_calls_hit_upstream_once(helper_config, fake_upstream):
    client = make_client(helper_config, fake_upstream)
    payload = {"model": "embed-english-v3.0", "texts": ["hello"]}

    async def scenario():
        first = await client.do_embed(payload)
        second = await client.do_embed(dict(payload))
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert len(fake_upstream.calls["embed"]) == 1


def test_concurrent_identical_chats_coalesce_across_sessions(helper_config, fake_upstream):
    fake_upstream.chat_delay = 0.01
    client = make_client(helper_config, fake_upstream)

    async def scenario():
        return await asyncio.gather(
            client.do_chat({"model": "command-a-03-2025", "message": "hi", "sessionId": "a"}),
            client.do_chat({"model": "command-a-03-2025", "message": "hi", "sessionId": "b"}),
            client.do_chat({"model": "command-a-03-2025", "message": "hi"}),
        )

    results = asyncio.run(scenario())
    assert [r["text"] for r in results] == ["hi", "hi", "hi"]
    assert len(fake_upstream.calls["chat"]) == 1


def test_cache_can_be_bypassed_per_call(helper_config, fake_upstream):
    client = make_client(helper_config, fake_upstream)
    payload = {"model": "embed-english-v3.0", "texts": ["x"]}

    async def scenario():
        await client.do_embed(payload, {"cache": False})
        await client.do_embed(payload, {"cache": False})

    asyncio.run(scenario())
    assert len(fake_upstream.calls["embed"]) == 2


def test_streaming_flag_injects_stream_and_skips_cache(gateway_env, helper_config, fake_upstream):
    gateway_env.setenv("LLM_COHERE_STREAMING_SUPPORTED", "true")
    client = make_client(helper_config, fake_upstream)
    payload = {"model": "command-a-03-2025", "message": "hi"}

    async def scenario():
        first = await client.do_chat(payload)
        second = await client.do_chat(payload)
        return first, second

    first, second = asyncio.run(scenario())
    assert isinstance(first, ChatStream) and isinstance(second, ChatStream)
    assert all(call["stream"] is True for call in fake_upstream.calls["chat"])
    assert "stream" not in payload
    assert len(fake_upstream.calls["chat"]) == 2


def test_retryable_failure_is_retried_then_counted_once_by_breaker(helper_config, fake_upstream):
    fake_upstream.always_fail["rerank"] = UpstreamError("unavailable", upstream_status=503)
    client = make_client(helper_config, fake_upstream)

    with pytest.raises(UpstreamError):
        asyncio.run(client.do_rerank({"model": "rerank-multilingual-v3.0", "query": "q", "documents": ["a"]}))

    assert len(fake_upstream.calls["rerank"]) == 3
    assert client.breaker.failure_count == 1


def test_per_call_retry_override(helper_config, fake_upstream):
    fake_upstream.always_fail["embed"] = UpstreamError("unavailable", upstream_status=503)
    client = make_client(helper_config, fake_upstream)

    with pytest.raises(UpstreamError):
        asyncio.run(client.do_embed({"model": "embed-english-v3.0", "texts": ["a"]}, {"max_attempts": 1}))

    assert len(fake_upstream.calls["embed"]) == 1


def test_open_breaker_rejects_without_calling_upstream(helper_config, fake_upstream):
    fake_upstream.always_fail["chat"] = UpstreamError("unavailable", upstream_status=500)
    breaker = CircuitBreaker(helper_config, failure_threshold=2, reset_timeout_ms=60_000)
    client = make_client(helper_config, fake_upstream, breaker=breaker, retry_options=RetryOptions(max_attempts=1))

    async def scenario():
        for i in range(2):
            with pytest.raises(UpstreamError):
                await client.do_chat({"model": "command-a-03-2025", "message": f"m{i}"})
        with pytest.raises(CircuitOpenError):
            await client.do_chat({"model": "command-a-03-2025", "message": "m3"})

    asyncio.run(scenario())
    assert len(fake_upstream.calls["chat"]) == 2


def test_vision_without_upstream_support_is_not_implemented(helper_config, fake_upstream):
    client = make_client(helper_config, fake_upstream)
    with pytest.raises(NotImplementedFeatureError):
        asyncio.run(client.do_vision({"model": "command-a-vision-07-2025", "input": "x"}))
    assert fake_upstream.calls["vision"] == []


def test_models_namespace_lists_through_wrapper(helper_config, fake_upstream):
    client = make_client(helper_config, fake_upstream)
    models = asyncio.run(client.models.list())
    assert models == [{"name": "command-a-03-2025"}]


def test_ttl_resolver_sets_entry_lifetime(helper_config, fake_upstream):
    client = make_client(helper_config, fake_upstream, ttl_resolver=lambda model: 0)

    async def scenario():
        await client.do_embed({"model": "embed-english-v3.0", "texts": ["a"]})
        await asyncio.sleep(0.01)
        await client.do_embed({"model": "embed-english-v3.0", "texts": ["a"]})

    asyncio.run(scenario())
    assert len(fake_upstream.calls["embed"]) == 2
