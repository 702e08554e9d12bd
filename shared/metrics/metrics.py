"""Process-wide Prometheus metrics.

Every metric is created exactly once, at import of this module, on the
default ``prometheus_client`` registry. Components import the objects they
need and update them through :func:`safe_metric`, so a failing metric update
never breaks the request that triggered it.
"""

import logging
from typing import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

_logger = logging.getLogger(__name__)

################ UPSTREAM ##################
UPSTREAM_REQUEST_DURATION = Histogram(
    "upstream_request_duration_seconds",
    "Duration of upstream API calls in seconds",
    ["operation", "model"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
UPSTREAM_REQUEST_SUCCESS = Counter(
    "upstream_request_success_total",
    "Successful upstream API calls",
    ["operation", "model"],
)
UPSTREAM_REQUEST_FAILURE = Counter(
    "upstream_request_failure_total",
    "Failed upstream API calls (after retries)",
    ["operation", "model"],
)

################ CACHE ##################
CACHE_DEDUP_HITS = Counter(
    "cache_dedup_hits_total",
    "Calls served from the response cache or joined to an in-flight call",
    ["cache"],
)
CACHE_DEDUP_MISSES = Counter(
    "cache_dedup_misses_total",
    "Calls that had to run their producer",
    ["cache"],
)

################ CIRCUIT BREAKER ##################
CIRCUIT_OPEN = Counter("circuit_breaker_open_total", "Times a circuit opened", ["name"])
CIRCUIT_FAILURE = Counter("circuit_breaker_failure_total", "Failures counted by a circuit breaker", ["name"])
CIRCUIT_RESET = Counter("circuit_breaker_reset_total", "Times a circuit closed again after failures", ["name"])
CIRCUIT_STATE = Gauge("circuit_breaker_state", "Circuit state (0 = closed, 1 = open)", ["name"])

################ EMBEDDINGS ##################
EMBEDDING_QUEUE_LENGTH = Gauge("rag_embedding_queue_length", "Items waiting in the embedding queue")
EMBEDDING_REQUESTS = Counter("rag_embedding_requests_total", "Texts accepted by the embedding queue")
EMBEDDING_BATCHES = Counter("rag_embedding_batches_total", "Embedding batches sent upstream successfully")
EMBEDDING_FAILURES = Counter("rag_embedding_failures_total", "Embedding batches that failed and were re-queued")
EMBEDDING_BACKPRESSURE = Counter("rag_embedding_backpressure_total", "Enqueue attempts rejected because the queue was full")

################ HTTP ##################
HTTP_REQUESTS = Counter(
    "http_requests_total",
    "Inbound HTTP requests",
    ["method", "route", "status"],
)


def safe_metric(action: Callable[[], object]) -> None:
    """Run a metric update, logging and discarding any error it raises."""
    try:
        action()
    except Exception as e:
        _logger.debug("Metric update failed: %s", e)


def render_latest() -> tuple[bytes, str]:
    """Return the text exposition of the default registry and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
