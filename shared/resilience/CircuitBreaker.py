import time
from typing import Any, Awaitable, Callable

from shared.helper.HelperConfig import HelperConfig
from shared.metrics.metrics import CIRCUIT_FAILURE, CIRCUIT_OPEN, CIRCUIT_RESET, CIRCUIT_STATE, safe_metric
from shared.models.errors import CircuitOpenError

CLOSED = "CLOSED"
OPEN = "OPEN"


class CircuitBreaker:
    """Two-state circuit breaker guarding one upstream.

    CLOSED runs every call. After ``failure_threshold`` consecutive failures the
    breaker opens for ``reset_timeout_ms``; calls in that window fail with
    :class:`CircuitOpenError` without running. Once the window has passed the
    next call runs as a probe: success closes the breaker, failure opens a new
    window.
    """

    def __init__(
        self,
        helper_config: HelperConfig,
        name: str = "upstream",
        failure_threshold: int | None = None,
        reset_timeout_ms: float | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.logging = helper_config.get_logger()
        self.name = name
        self.failure_threshold = int(failure_threshold if failure_threshold is not None else 2)
        self.reset_timeout_ms = reset_timeout_ms if reset_timeout_ms is not None else 10_000
        self._clock = clock or (lambda: time.monotonic() * 1000)

        self.state = CLOSED
        self.failure_count = 0
        self.next_attempt = 0.0
        self._set_state_metric()

    ##########################################
    ################ CORE ####################
    ##########################################

    async def exec(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` through the breaker.

        Raises:
            CircuitOpenError: While OPEN and the cooldown has not elapsed.
            Exception: Whatever ``fn`` raised.
        """
        if self.state == OPEN and self._clock() < self.next_attempt:
            raise CircuitOpenError()
        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _on_success(self) -> None:
        if self.failure_count or self.state == OPEN:
            if self.state == OPEN:
                self.logging.info("Circuit '%s' closed again", self.name, color="green")
            safe_metric(lambda: CIRCUIT_RESET.labels(name=self.name).inc())
        self.failure_count = 0
        self.state = CLOSED
        self._set_state_metric()

    def _on_failure(self) -> None:
        self.failure_count += 1
        safe_metric(lambda: CIRCUIT_FAILURE.labels(name=self.name).inc())
        if self.failure_count >= self.failure_threshold:
            self.state = OPEN
            self.next_attempt = self._clock() + self.reset_timeout_ms
            safe_metric(lambda: CIRCUIT_OPEN.labels(name=self.name).inc())
            self.logging.warning(
                "Circuit '%s' opened after %d consecutive failures (retry in %d ms)",
                self.name,
                self.failure_count,
                self.reset_timeout_ms,
            )
        self._set_state_metric()

    def _set_state_metric(self) -> None:
        safe_metric(lambda: CIRCUIT_STATE.labels(name=self.name).set(1 if self.state == OPEN else 0))

    def get_status(self) -> dict:
        return {"state": self.state, "failures": self.failure_count, "nextAttempt": self.next_attempt}
