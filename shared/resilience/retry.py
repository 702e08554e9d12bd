import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict

from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import CircuitOpenError, GatewayError, NotImplementedFeatureError, UpstreamError, UpstreamTimeoutError

_logger = logging.getLogger(__name__)


class RetryOptions(BaseModel):
    """
    Parameters of one retried call.

    Attributes:
        max_attempts (int): Total attempts including the first one.
        base_delay_ms (float): Delay before the second attempt, doubled per further attempt.
        max_delay_ms (float): Upper bound of every delay.
        per_attempt_timeout_ms (float | None): Each attempt is abandoned after this long. None disables it.
        jitter (bool | Callable): True scales each delay by U(0.5, 1.5); a callable receives ``(exp_delay_ms, rng)``
            and returns the delay to use.
        retry_on (Callable | None): Predicate deciding whether an error is retryable.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = 3
    base_delay_ms: float = 200
    max_delay_ms: float = 2000
    per_attempt_timeout_ms: float | None = 3000
    jitter: bool | Callable[..., float] = True
    retry_on: Callable[[BaseException], bool] | None = None

    @classmethod
    def from_config(cls, helper_config: HelperConfig) -> "RetryOptions":
        return cls(
            max_attempts=int(helper_config.get_number_val("EXTERNAL_API_MAX_ATTEMPTS", default=3)),
            base_delay_ms=helper_config.get_number_val("EXTERNAL_API_BASE_DELAY_MS", default=200),
            max_delay_ms=helper_config.get_number_val("EXTERNAL_API_MAX_DELAY_MS", default=2000),
            per_attempt_timeout_ms=helper_config.get_number_val("EXTERNAL_API_TIMEOUT_MS", default=3000),
        )

    def merged(self, overrides: "RetryOptions | dict | None") -> "RetryOptions":
        """Return a copy with the given fields replaced (unknown keys are ignored)."""
        if overrides is None:
            return self
        if isinstance(overrides, RetryOptions):
            overrides = overrides.model_dump(exclude_unset=True)
        update = {k: v for k, v in overrides.items() if k in type(self).model_fields}
        return self.model_copy(update=update)


def default_retry_on(error: BaseException) -> bool:
    """Retry transient failures only: timeouts, transport errors, no status, or a 5xx status."""
    if isinstance(error, (CircuitOpenError, NotImplementedFeatureError)):
        return False
    if isinstance(error, (UpstreamTimeoutError, asyncio.TimeoutError, httpx.TransportError)):
        return True
    if isinstance(error, UpstreamError):
        return error.upstream_status is None or error.upstream_status >= 500
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    if isinstance(error, GatewayError):
        return error.status_code >= 500
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status, int):
        return status >= 500
    return True


def compute_delay(attempt: int, options: RetryOptions, rng: Callable[[], float] = random.random) -> float:
    """Delay in milliseconds to wait after failed attempt number ``attempt`` (1-based)."""
    exp = min(options.max_delay_ms, options.base_delay_ms * (2 ** (attempt - 1)))
    if callable(options.jitter):
        delay = options.jitter(exp, rng)
    elif options.jitter:
        delay = exp * (0.5 + rng())
    else:
        delay = exp
    return min(max(delay, 0), options.max_delay_ms)


async def _run_attempt(fn: Callable[[], Awaitable[Any]], timeout_ms: float | None) -> Any:
    if not timeout_ms or timeout_ms <= 0:
        return await fn()
    try:
        return await asyncio.wait_for(fn(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise UpstreamTimeoutError(f"Upstream call timed out after {timeout_ms} ms") from e


async def retry(
    fn: Callable[[], Awaitable[Any]],
    options: RetryOptions | dict | None = None,
    rng: Callable[[], float] = random.random,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Run ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

    Args:
        fn (Callable[[], Awaitable[Any]]): Coroutine factory; called once per attempt.
        options (RetryOptions | dict | None): Retry parameters; a dict overrides the defaults.
        rng (Callable[[], float]): Uniform [0, 1) source used for jitter.
        sleep (Callable[[float], Awaitable]): Sleep function taking seconds.

    Returns:
        Any: The first successful result.

    Raises:
        Exception: The last observed error, unchanged.
    """
    opts = RetryOptions().merged(options) if not isinstance(options, RetryOptions) else options
    attempts = max(1, int(opts.max_attempts))
    should_retry = opts.retry_on or default_retry_on

    for attempt in range(1, attempts + 1):
        try:
            return await _run_attempt(fn, opts.per_attempt_timeout_ms)
        except Exception as e:
            if attempt >= attempts or not should_retry(e):
                raise
            delay_ms = compute_delay(attempt, opts, rng)
            _logger.debug("Attempt %d/%d failed (%s), retrying in %.0f ms", attempt, attempts, e, delay_ms)
            await sleep(delay_ms / 1000)
