import time
from typing import Callable

from fastapi import Request

from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import RateLimitError


class FixedWindowRateLimiter:
    """Counts requests per client address in fixed windows of ``window_ms``."""

    def __init__(
        self,
        helper_config: HelperConfig,
        window_ms: float | None = None,
        max_requests: int | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.window_ms = window_ms or helper_config.get_number_val("RATE_LIMIT_WINDOW_MS", default=15 * 60 * 1000)
        self.max_requests = int(max_requests or helper_config.get_number_val("RATE_LIMIT_MAX_REQUESTS", default=100))
        self._clock = clock or (lambda: time.time() * 1000)
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, client_id: str) -> None:
        """Count one request for ``client_id``.

        Raises:
            RateLimitError: If the client is over its budget for the current window.
        """
        now = self._clock()
        started, count = self._windows.get(client_id, (now, 0))
        if now - started >= self.window_ms:
            started, count = now, 0
        count += 1
        self._windows[client_id] = (started, count)
        if count > self.max_requests:
            raise RateLimitError("Too many requests, please try again later.")
        if len(self._windows) > 10_000:
            self._drop_stale(now)

    def _drop_stale(self, now: float) -> None:
        stale = [cid for cid, (started, _) in self._windows.items() if now - started >= self.window_ms]
        for cid in stale:
            del self._windows[cid]


async def enforce_rate_limit(request: Request) -> None:
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    client_id = request.client.host if request.client else "unknown"
    limiter.hit(client_id)
