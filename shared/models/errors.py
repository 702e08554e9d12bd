class GatewayError(Exception):
    """Base class for every error the gateway maps onto its JSON error envelope.

    Attributes:
        status_code (int): HTTP status returned to the caller.
        error_type (str): Value of ``error.type`` in the response body.
    """

    status_code: int = 500
    error_type: str = "internal_server_error"

    def __init__(self, message: str, status_code: int | None = None, error_type: str | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type

    def to_envelope(self) -> dict:
        return {"error": {"message": self.message, "type": self.error_type}}


class InvalidRequestError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class AuthenticationError(GatewayError):
    status_code = 401
    error_type = "authentication_error"


class NotFoundError(GatewayError):
    status_code = 404
    error_type = "not_found"


class PayloadTooLargeError(GatewayError):
    status_code = 413
    error_type = "payload_too_large"


class RateLimitError(GatewayError):
    status_code = 429
    error_type = "rate_limit_exceeded"


class BackpressureError(RateLimitError):
    """Raised when a bounded queue refuses a new item."""


class NotImplementedFeatureError(GatewayError):
    status_code = 501
    error_type = "not_implemented"


class CircuitOpenError(GatewayError):
    """Raised by a circuit breaker while it is OPEN. Never retried."""

    status_code = 500
    error_type = "internal_server_error"

    def __init__(self, message: str = "CircuitOpen"):
        super().__init__(message)


class UpstreamTimeoutError(GatewayError):
    """A single upstream attempt exceeded its per-attempt timeout."""

    status_code = 500
    error_type = "internal_server_error"


class UpstreamError(GatewayError):
    """The upstream answered with a non-success status.

    ``upstream_status`` keeps the raw status so the retry driver can decide
    whether the failure is transient (no status or >= 500).
    """

    _STATUS_MAP = {
        401: (401, "authentication_error"),
        404: (404, "not_found"),
        429: (429, "rate_limit_exceeded"),
    }

    def __init__(self, message: str, upstream_status: int | None = None):
        status_code, error_type = self._STATUS_MAP.get(upstream_status, (500, "internal_server_error"))
        if upstream_status is not None and 400 <= upstream_status < 500 and upstream_status not in self._STATUS_MAP:
            status_code, error_type = 400, "invalid_request_error"
        super().__init__(message, status_code=status_code, error_type=error_type)
        self.upstream_status = upstream_status
