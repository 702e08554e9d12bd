import asyncio
import hashlib
import json
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from shared.metrics.metrics import CACHE_DEDUP_HITS, CACHE_DEDUP_MISSES, safe_metric


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class _Entry:
    value: Any
    expires_at: float
    pending: bool = False


class LruTtlCache:
    """Bounded key/value cache with per-entry expiry and least-recently-used eviction.

    Entries live in an ordered mapping whose order is recency of use: reads and
    writes move a key to the back (O(1)), eviction pops from the front (O(1)).
    The cache is only touched from the event loop thread, and no method awaits
    between reading and mutating the mapping, so every operation is atomic with
    respect to the others.

    Args:
        max_size (int): Maximum number of resident entries.
        ttl_ms (float): Default time-to-live for ``set`` without an override.
        name (str): Label used for the dedup metrics.
        clock (Callable[[], float] | None): Millisecond clock, injectable for tests.
    """

    def __init__(self, max_size: int = 1000, ttl_ms: float = 60_000, name: str = "default", clock: Callable[[], float] | None = None):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = int(max_size)
        self.ttl_ms = ttl_ms
        self.name = name
        self._clock = clock or _monotonic_ms
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._hits = 0
        self._misses = 0

    ##########################################
    ################ CORE ####################
    ##########################################

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when absent, expired or still being computed."""
        entry = self._lookup(key)
        if entry is None or entry.pending:
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_ms: float | None = None, expires_at: float | None = None) -> None:
        """Insert or replace ``key`` and evict from the least-recently-used end down to ``max_size``.

        Args:
            key (str): Cache key.
            value (Any): Value to store.
            ttl_ms (float | None): Override of the default TTL.
            expires_at (float | None): Absolute expiry on the cache clock; ``math.inf`` never expires.
        """
        if expires_at is None:
            expires_at = self._clock() + (self.ttl_ms if ttl_ms is None else ttl_ms)
        self._store(key, _Entry(value=value, expires_at=expires_at))

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_compute(self, key: str, producer: Callable[[], Awaitable[Any]], ttl_ms: float | None = None) -> Any:
        """Return the cached value for ``key`` or compute it with at most one concurrent producer.

        The first caller stores a never-expiring placeholder for the in-flight
        computation; concurrent callers for the same key await that placeholder.
        On success the placeholder is replaced with the value under the normal
        TTL. On failure it is removed and the error reaches every waiter.

        Args:
            key (str): Cache key.
            producer (Callable[[], Awaitable[Any]]): Coroutine factory computing the value.
            ttl_ms (float | None): TTL for the computed value.

        Returns:
            Any: The cached or freshly computed value.
        """
        entry = self._lookup(key)
        if entry is not None:
            self._record_hit()
            if entry.pending:
                # shield: a cancelled waiter must not cancel the shared computation
                return await asyncio.shield(entry.value)
            return entry.value

        self._record_miss()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._store(key, _Entry(value=future, expires_at=math.inf, pending=True))
        try:
            value = await producer()
        except BaseException as e:
            current = self._entries.get(key)
            if current is not None and current.value is future:
                del self._entries[key]
            if isinstance(e, Exception):
                future.set_exception(e)
                # mark as retrieved so an unobserved failure does not warn at GC
                future.exception()
            else:
                future.cancel()
            raise

        current = self._entries.get(key)
        if current is None or current.value is future:
            self.set(key, value, ttl_ms=ttl_ms)
        future.set_result(value)
        return value

    ##########################################
    ################ GETTER ##################
    ##########################################

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._lookup(key, touch=False)
        return entry is not None and not entry.pending

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def get_dedup_stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hitRate": (self._hits / total) if total else 0.0,
            "size": len(self._entries),
        }

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _lookup(self, key: str, touch: bool = True) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at < self._clock():
            del self._entries[key]
            return None
        if touch:
            self._entries.move_to_end(key)
        return entry

    def _store(self, key: str, entry: _Entry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def _record_hit(self) -> None:
        self._hits += 1
        safe_metric(lambda: CACHE_DEDUP_HITS.labels(cache=self.name).inc())

    def _record_miss(self) -> None:
        self._misses += 1
        safe_metric(lambda: CACHE_DEDUP_MISSES.labels(cache=self.name).inc())


##########################################
############### KEY HELPERS ##############
##########################################

def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and compact separators.

    Raises:
        TypeError: For values JSON cannot represent.
        ValueError: For circular references.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def make_dedup_key(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def make_embed_key(model: str, text: str) -> str:
    return "embed:" + make_dedup_key({"model": model, "text": text})


def make_rerank_key(model: str, query: str, documents: list, top_n: int | None = None) -> str:
    return "rerank:" + make_dedup_key({"model": model, "query": query, "documents": documents, "top_n": top_n})


def make_vision_key(model: str, input_value: Any) -> str:
    return "vision:" + make_dedup_key({"model": model, "input": input_value})
