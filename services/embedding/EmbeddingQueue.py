import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

from services.embedding.EmbeddingSegmentLog import EmbeddingSegmentLog
from shared.clients.llm.LLMOperations import LLMOperations
from shared.clients.llm.ResilientLLMClient import ResilientLLMClient
from shared.helper.HelperConfig import HelperConfig
from shared.metrics.metrics import (
    EMBEDDING_BACKPRESSURE,
    EMBEDDING_BATCHES,
    EMBEDDING_FAILURES,
    EMBEDDING_QUEUE_LENGTH,
    EMBEDDING_REQUESTS,
    safe_metric,
)
from shared.models.errors import BackpressureError
from shared.resilience.LruTtlCache import LruTtlCache


class EmbeddingQueue:
    """Bounded FIFO of ``(cache_key, text)`` items drained in batches by one background worker.

    Each batch becomes a single upstream embed call. On success every vector is
    written to the cache and the whole batch is appended to the segment log in
    presentation order. On failure the batch goes back to the head of the
    queue in its original order and the worker backs off before retrying.
    """

    def __init__(
        self,
        helper_config: HelperConfig,
        upstream: LLMOperations,
        cache: LruTtlCache,
        segment_log: EmbeddingSegmentLog | None = None,
        model: str | None = None,
        max_batch: int | None = None,
        worker_delay_ms: float | None = None,
        failure_backoff_ms: float | None = None,
        max_queue_length: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.logging = helper_config.get_logger()
        self.upstream = upstream
        self.cache = cache
        self.segment_log = segment_log
        self.model = model or helper_config.get_string_val("RAG_EMBED_MODEL", default="embed-english-v3.0")
        self.max_batch = max(1, int(max_batch or helper_config.get_number_val("MAX_EMBEDDING_BATCH", default=16)))
        self.worker_delay_ms = worker_delay_ms if worker_delay_ms is not None else helper_config.get_number_val("EMBEDDING_WORKER_DELAY_MS", default=100)
        backoff = failure_backoff_ms if failure_backoff_ms is not None else helper_config.get_number_val("EMBEDDING_FAILURE_BACKOFF_MS", default=1000)
        self.failure_backoff_ms = max(1000, backoff)
        self.max_queue_length = int(max_queue_length or helper_config.get_number_val("MAX_EMBEDDING_QUEUE", default=10_000))
        self._sleep = sleep

        self._queue: deque[tuple[str, str]] = deque()
        self._unpersisted: list[tuple[str, list[float]]] = []
        self._worker: asyncio.Task | None = None
        self._stopping = False

        self.requests = 0
        self.batches_processed = 0
        self.failures = 0
        self.backpressure_rejections = 0

    ##########################################
    ################ CORE ####################
    ##########################################

    def enqueue(self, key: str, text: str) -> None:
        """Queue one text for embedding and start the worker if it is idle.

        Raises:
            BackpressureError: If the queue is at capacity.
        """
        if len(self._queue) >= self.max_queue_length:
            self.backpressure_rejections += 1
            safe_metric(EMBEDDING_BACKPRESSURE.inc)
            raise BackpressureError(f"Embedding queue is full ({self.max_queue_length} items)")
        self._queue.append((key, text))
        self.requests += 1
        safe_metric(EMBEDDING_REQUESTS.inc)
        self._update_length_metric()
        self._ensure_worker()

    async def join(self) -> None:
        """Wait until the worker has drained the queue."""
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    async def shutdown(self) -> None:
        """Stop the worker. A batch in flight is returned to the queue and unpersisted vectors get one more write."""
        self._stopping = True
        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        if self.segment_log is not None and self._unpersisted:
            await self._persist([])
        self._stopping = False

    ##########################################
    ################ GETTER ##################
    ##########################################

    def __len__(self) -> int:
        return len(self._queue)

    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def get_stats(self) -> dict:
        return {
            "embeddingQueueLength": len(self._queue),
            "embeddingRequests": self.requests,
            "embeddingBatchesProcessed": self.batches_processed,
            "embeddingFailures": self.failures,
            "embeddingBackpressure": self.backpressure_rejections,
            "embeddingUnpersisted": len(self._unpersisted),
            "workerRunning": self.is_running(),
        }

    ##########################################
    ################ WORKER ##################
    ##########################################

    def _ensure_worker(self) -> None:
        if self.is_running() or self._stopping:
            return
        self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while self._queue and not self._stopping:
            batch = [self._queue.popleft() for _ in range(min(self.max_batch, len(self._queue)))]
            self._update_length_metric()
            try:
                vectors = await self._embed_batch(batch)
            except asyncio.CancelledError:
                self._requeue(batch)
                raise
            except Exception as e:
                self._requeue(batch)
                self.failures += 1
                safe_metric(EMBEDDING_FAILURES.inc)
                self.logging.warning(
                    "Embedding batch of %d failed, re-queued (%d waiting): %s", len(batch), len(self._queue), e
                )
                await self._sleep(self.failure_backoff_ms / 1000)
                continue

            await self._commit(batch, vectors)
            if self._queue:
                await self._sleep(self.worker_delay_ms / 1000)

    async def _embed_batch(self, batch: list[tuple[str, str]]) -> list[list[float]]:
        payload = {"model": self.model, "texts": [text for _, text in batch]}
        if isinstance(self.upstream, ResilientLLMClient):
            # a rejected batch must reach the upstream again on retry
            result = await self.upstream.do_embed(payload, {"cache": False})
        else:
            result = await self.upstream.do_embed(payload)
        vectors = self._extract_vectors(result)
        if len(vectors) != len(batch):
            raise ValueError(f"Upstream returned {len(vectors)} embeddings for a batch of {len(batch)}")
        return vectors

    async def _commit(self, batch: list[tuple[str, str]], vectors: list[list[float]]) -> None:
        records = [(key, vector) for (key, _), vector in zip(batch, vectors)]
        for key, vector in records:
            self.cache.set(key, vector)
        self.batches_processed += 1
        safe_metric(EMBEDDING_BATCHES.inc)

        if self.segment_log is not None:
            await self._persist(records)

    async def _persist(self, records: list[tuple[str, list[float]]]) -> bool:
        """Append records to the segment log, preceded by any left over from a failed append."""
        pending = self._unpersisted + records
        if not pending:
            return True
        try:
            await asyncio.to_thread(self.segment_log.append_batch, pending)
        except OSError as e:
            self._unpersisted = pending
            self.failures += 1
            safe_metric(EMBEDDING_FAILURES.inc)
            self.logging.error("Could not persist %d embeddings, kept for the next append: %s", len(pending), e)
            return False
        self._unpersisted = []
        return True

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _requeue(self, batch: list[tuple[str, str]]) -> None:
        self._queue.extendleft(reversed(batch))
        self._update_length_metric()

    def _update_length_metric(self) -> None:
        safe_metric(lambda: EMBEDDING_QUEUE_LENGTH.set(len(self._queue)))

    @staticmethod
    def _extract_vectors(result: Any) -> list:
        if isinstance(result, dict):
            result = result.get("embeddings", result.get("body", {}).get("embeddings"))
        if not isinstance(result, list):
            raise ValueError("Upstream embed response does not contain an embeddings list")
        return result
