import asyncio
import random
import time
from typing import Any, Awaitable, Callable

from shared.clients.llm.ChatStream import ChatStream
from shared.clients.llm.LLMOperations import LLMOperations
from shared.helper.HelperConfig import HelperConfig
from shared.metrics.metrics import (
    UPSTREAM_REQUEST_DURATION,
    UPSTREAM_REQUEST_FAILURE,
    UPSTREAM_REQUEST_SUCCESS,
    safe_metric,
)
from shared.models.errors import NotImplementedFeatureError
from shared.resilience.CircuitBreaker import CircuitBreaker
from shared.resilience.LruTtlCache import LruTtlCache, make_dedup_key
from shared.resilience.retry import RetryOptions, retry

CallOptions = RetryOptions | dict | None

# payload fields that identify a conversation rather than the prompt itself
_SESSION_FIELDS = ("sessionId", "session_id", "conversation_id")
_SCALAR_TYPES = (str, int, float, bool, type(None))


class ResilientLLMClient(LLMOperations):
    """Decorator over an upstream client adding timeout, retry, circuit breaking and coalescing.

    Every operation runs as ``breaker.exec(retry(timed upstream call))``.
    Non-streaming calls are coalesced through an :class:`LruTtlCache`:
    concurrent identical calls share one upstream request and the result is
    kept for the per-model TTL.

    Each ``do_*`` method takes an optional trailing ``options`` (dict or
    :class:`RetryOptions`) overriding retry parameters for that call only;
    ``{"cache": False}`` bypasses the cache.

    Args:
        helper_config (HelperConfig): Configuration source.
        upstream (LLMOperations): The wrapped client.
        ttl_resolver (Callable[[str], float | None] | None): Cache TTL in ms for a model id.
        breaker (CircuitBreaker | None): Breaker instance; built from ``LLM_<ENGINE>_CB_*`` if omitted.
        retry_options (RetryOptions | None): Defaults; built from ``EXTERNAL_API_*`` if omitted.
        cache (LruTtlCache | None): Response cache (default 1000 entries, 2 minutes).
    """

    CACHEABLE_OPERATIONS = ("chat", "embed", "rerank", "vision")

    def __init__(
        self,
        helper_config: HelperConfig,
        upstream: LLMOperations,
        ttl_resolver: Callable[[str], float | None] | None = None,
        breaker: CircuitBreaker | None = None,
        retry_options: RetryOptions | None = None,
        cache: LruTtlCache | None = None,
        rng: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.logging = helper_config.get_logger()
        self.upstream = upstream
        self.engine = upstream.get_engine_name() if hasattr(upstream, "get_engine_name") else "upstream"
        prefix = f"LLM_{self.engine.upper()}"

        self.streaming_supported = helper_config.get_bool_val(f"{prefix}_STREAMING_SUPPORTED", default=False)
        self.breaker = breaker or CircuitBreaker(
            helper_config,
            name=self.engine,
            failure_threshold=int(helper_config.get_number_val(f"{prefix}_CB_FAILURES", default=2)),
            reset_timeout_ms=helper_config.get_number_val(f"{prefix}_CB_RESET_MS", default=10_000),
        )
        self.retry_options = retry_options or RetryOptions.from_config(helper_config)
        self.cache = cache or LruTtlCache(max_size=1000, ttl_ms=120_000, name="upstream")
        self._ttl_resolver = ttl_resolver
        self._rng = rng
        self._sleep = sleep

    ##########################################
    ############### OPERATIONS ###############
    ##########################################

    async def do_chat(self, payload: dict, options: CallOptions = None) -> dict | ChatStream:
        return await self._call("chat", payload, options)

    async def do_embed(self, payload: dict, options: CallOptions = None) -> list[list[float]]:
        return await self._call("embed", payload, options)

    async def do_rerank(self, payload: dict, options: CallOptions = None) -> list[dict]:
        return await self._call("rerank", payload, options)

    async def do_vision(self, payload: dict, options: CallOptions = None) -> Any:
        if not self.upstream.supports_vision():
            raise NotImplementedFeatureError("Vision API not implemented")
        return await self._call("vision", payload, options)

    async def do_list_models(self, options: CallOptions = None) -> list[dict]:
        return await self._call("models.list", None, options)

    def supports_vision(self) -> bool:
        return self.upstream.supports_vision()

    ##########################################
    ################ CORE ####################
    ##########################################

    async def _call(self, operation: str, payload: Any, options: CallOptions) -> Any:
        overrides = self._split_options(options)
        use_cache = overrides.pop("cache", True)
        retry_options = self.retry_options.merged(overrides)

        effective = self._effective_payload(operation, payload)
        model = self._model_of(effective)
        streaming = operation == "chat" and isinstance(effective, dict) and bool(effective.get("stream"))

        async def invoke() -> Any:
            return await self._invoke(operation, effective, model, retry_options)

        key = None
        if use_cache and not streaming and operation in self.CACHEABLE_OPERATIONS:
            key = self._cache_key(operation, model, payload)
        if key is None:
            return await invoke()
        return await self.cache.get_or_compute(key, invoke, ttl_ms=self._ttl_for(model))

    async def _invoke(self, operation: str, payload: Any, model: str, retry_options: RetryOptions) -> Any:
        method = self._resolve(operation)

        async def attempt() -> Any:
            return await method() if payload is None else await method(payload)

        async def guarded() -> Any:
            return await retry(attempt, retry_options, rng=self._rng, sleep=self._sleep)

        started = time.perf_counter()
        try:
            result = await self.breaker.exec(guarded)
        except Exception as e:
            safe_metric(lambda: UPSTREAM_REQUEST_FAILURE.labels(operation=operation, model=model).inc())
            self.logging.warning("Upstream %s (%s) failed: %s", operation, model, e)
            raise
        finally:
            elapsed = time.perf_counter() - started
            safe_metric(lambda: UPSTREAM_REQUEST_DURATION.labels(operation=operation, model=model).observe(elapsed))
        safe_metric(lambda: UPSTREAM_REQUEST_SUCCESS.labels(operation=operation, model=model).inc())
        return result

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _resolve(self, operation: str) -> Callable[..., Awaitable[Any]]:
        return {
            "chat": self.upstream.do_chat,
            "embed": self.upstream.do_embed,
            "rerank": self.upstream.do_rerank,
            "vision": self.upstream.do_vision,
            "models.list": self.upstream.do_list_models,
        }[operation]

    def _effective_payload(self, operation: str, payload: Any) -> Any:
        """Add ``stream: True`` to chat payloads when streaming is enabled; keep the original if copying fails."""
        if operation != "chat" or not self.streaming_supported:
            return payload
        try:
            return {**payload, "stream": True}
        except Exception as e:
            self.logging.warning("Could not copy chat payload to enable streaming, sending as is: %s", e)
            return payload

    def _cache_key(self, operation: str, model: str, payload: Any) -> str | None:
        """Stable key for a cacheable call, or None when the payload cannot be serialised.

        Chat keys use the scalar payload fields only (session ids excluded), so
        identical prompts from different sessions coalesce. Other operations
        key on the whole payload.
        """
        try:
            if operation == "chat":
                fields = {
                    k: v for k, v in payload.items()
                    if k not in _SESSION_FIELDS and isinstance(v, _SCALAR_TYPES)
                }
            else:
                fields = payload
            return f"{operation}:{model}:" + make_dedup_key({"operation": operation, "model": model, "payload": fields})
        except Exception as e:
            self.logging.debug("Skipping cache for %s: payload not serialisable (%s)", operation, e)
            return None

    def _ttl_for(self, model: str) -> float | None:
        if self._ttl_resolver is None:
            return None
        return self._ttl_resolver(model)

    @staticmethod
    def _model_of(payload: Any) -> str:
        try:
            return str(payload.get("model") or "unknown")
        except Exception:
            return "unknown"

    @staticmethod
    def _split_options(options: CallOptions) -> dict:
        if options is None:
            return {}
        if isinstance(options, RetryOptions):
            return options.model_dump(exclude_unset=True)
        return dict(options)

    def get_stats(self) -> dict:
        return {
            "engine": self.engine,
            "streamingSupported": self.streaming_supported,
            "breaker": self.breaker.get_status(),
            "cache": self.cache.get_dedup_stats(),
        }
