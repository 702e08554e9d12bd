import asyncio

import pytest

from services.embedding.EmbeddingQueue import EmbeddingQueue
from services.embedding.EmbeddingSegmentLog import EmbeddingSegmentLog
from shared.clients.llm.ResilientLLMClient import ResilientLLMClient
from shared.models.errors import BackpressureError, UpstreamError
from shared.resilience.LruTtlCache import LruTtlCache


class FlakySegmentLog:
    """Segment log whose first append fails with a disk error."""

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.batches: list[list[str]] = []

    def append_batch(self, records):
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        self.batches.append([key for key, _ in records])


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_queue(helper_config, upstream, **kwargs) -> EmbeddingQueue:
    kwargs.setdefault("cache", LruTtlCache(max_size=100, ttl_ms=60_000))
    kwargs.setdefault("sleep", SleepRecorder())
    kwargs.setdefault("worker_delay_ms", 0)
    return EmbeddingQueue(helper_config, upstream=upstream, model="embed-english-v3.0", **kwargs)


def test_five_items_with_batch_of_three_take_two_calls(helper_config, fake_upstream):
    queue = make_queue(helper_config, fake_upstream, max_batch=3)

    async def scenario():
        for i in range(5):
            queue.enqueue(f"k{i}", f"text {i}")
        await queue.join()

    asyncio.run(scenario())

    batch_sizes = [len(call["texts"]) for call in fake_upstream.calls["embed"]]
    assert batch_sizes == [3, 2]
    for i in range(5):
        assert queue.cache.get(f"k{i}") == [float(len(f"text {i}")), 1.0]
    assert queue.get_stats()["embeddingBatchesProcessed"] == 2


def test_enqueue_beyond_capacity_is_rejected(helper_config, fake_upstream):
    queue = make_queue(helper_config, fake_upstream, max_queue_length=2)

    async def scenario():
        queue.enqueue("a", "a")
        queue.enqueue("b", "b")
        with pytest.raises(BackpressureError):
            queue.enqueue("c", "c")
        await queue.join()

    asyncio.run(scenario())
    assert queue.get_stats()["embeddingBackpressure"] == 1
    assert "c" not in queue.cache


def test_failed_batch_is_requeued_in_order_and_retried(helper_config, fake_upstream):
    fake_upstream.errors["embed"] = [UpstreamError("unavailable", upstream_status=503)]
    sleep = SleepRecorder()
    queue = make_queue(helper_config, fake_upstream, max_batch=2, sleep=sleep, failure_backoff_ms=10)

    async def scenario():
        for key in ("a", "b", "c"):
            queue.enqueue(key, key * 3)
        await queue.join()

    asyncio.run(scenario())

    texts = [call["texts"] for call in fake_upstream.calls["embed"]]
    assert texts == [["aaa", "bbb"], ["aaa", "bbb"], ["ccc"]]
    assert sleep.delays[0] == 1.0  # backoff never below one second
    assert all(key in queue.cache for key in ("a", "b", "c"))
    assert queue.get_stats()["embeddingFailures"] == 1


def test_wrong_vector_count_is_treated_as_failure(helper_config, fake_upstream):
    calls = 0

    async def short_embed(payload):
        nonlocal calls
        calls += 1
        if calls == 1:
            return [[1.0]]
        return [[1.0] for _ in payload["texts"]]

    fake_upstream.do_embed = short_embed
    queue = make_queue(helper_config, fake_upstream, max_batch=5)

    async def scenario():
        queue.enqueue("a", "a")
        queue.enqueue("b", "b")
        await queue.join()

    asyncio.run(scenario())
    assert calls == 2
    assert "a" in queue.cache and "b" in queue.cache


def test_committed_batches_are_appended_to_segment_log(helper_config, fake_upstream, tmp_path):
    log = EmbeddingSegmentLog(helper_config, directory=str(tmp_path / "emb"), compress=False)
    queue = make_queue(helper_config, fake_upstream, max_batch=2, segment_log=log)

    async def scenario():
        for key in ("a", "b", "c"):
            queue.enqueue(key, key)
        await queue.join()

    asyncio.run(scenario())

    loaded: list[str] = []
    log.load(lambda key, embedding: loaded.append(key))
    assert loaded == ["a", "b", "c"]


def test_shutdown_returns_inflight_batch_to_queue(helper_config, fake_upstream):
    started = asyncio.Event()

    async def hanging_embed(payload):
        started.set()
        await asyncio.sleep(10)

    fake_upstream.do_embed = hanging_embed
    queue = make_queue(helper_config, fake_upstream, max_batch=2)

    async def scenario():
        queue.enqueue("a", "a")
        queue.enqueue("b", "b")
        await started.wait()
        await queue.shutdown()

    asyncio.run(scenario())
    assert len(queue) == 2
    assert queue.is_running() is False


def test_wrong_vector_count_through_resilient_client_reaches_upstream_again(helper_config, fake_upstream):
    calls = 0

    async def short_embed(payload):
        nonlocal calls
        calls += 1
        if calls == 1:
            return [[1.0]]
        return [[2.0] for _ in payload["texts"]]

    fake_upstream.do_embed = short_embed
    client = ResilientLLMClient(helper_config, upstream=fake_upstream, ttl_resolver=lambda model: 600_000)
    sleep = SleepRecorder()
    queue = make_queue(helper_config, client, max_batch=5, sleep=sleep)

    async def scenario():
        queue.enqueue("a", "a")
        queue.enqueue("b", "b")
        await queue.join()

    asyncio.run(scenario())

    assert calls == 2
    assert len(sleep.delays) == 1
    assert queue.cache.get("a") == [2.0]
    assert queue.cache.get("b") == [2.0]
    assert client.cache.get_dedup_stats()["size"] == 0


def test_failed_segment_append_is_written_with_next_batch(helper_config, fake_upstream):
    log = FlakySegmentLog(failures=1)
    queue = make_queue(helper_config, fake_upstream, max_batch=2, segment_log=log)

    async def scenario():
        for key in ("a", "b", "c"):
            queue.enqueue(key, key)
        await queue.join()

    asyncio.run(scenario())

    assert log.batches == [["a", "b", "c"]]
    stats = queue.get_stats()
    assert stats["embeddingFailures"] == 1
    assert stats["embeddingUnpersisted"] == 0


def test_unpersisted_vectors_are_written_on_shutdown(helper_config, fake_upstream):
    log = FlakySegmentLog(failures=1)
    queue = make_queue(helper_config, fake_upstream, max_batch=2, segment_log=log)

    async def scenario():
        queue.enqueue("a", "a")
        await queue.join()
        assert queue.get_stats()["embeddingUnpersisted"] == 1
        await queue.shutdown()

    asyncio.run(scenario())

    assert log.batches == [["a"]]
    assert queue.get_stats()["embeddingUnpersisted"] == 0
