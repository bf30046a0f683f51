"""Exception hierarchy for ServiceDesk Plus operations.

All failures raised by the client derive from ``ServiceDeskError``. Each
subclass carries only the context needed to render its message and to decide
whether the failing call may be retried.

Error text built from external sources must go through ``redact()`` before it
is logged or returned, so that the API key never leaks.
"""

import requests  # type: ignore[import-untyped]

REDACTED = "[REDACTED]"

# SDP response_status codes
SDP_SUCCESS = 2000
SDP_AUTH_FAILED = 4001
SDP_NOT_FOUND = 4005

SERVICE_UNAVAILABLE_DELAY = 0.5  # seconds
TIMEOUT_RETRY_DELAY = 0.1  # seconds


def redact(message: str, secret: str) -> str:
    """Replace every occurrence of ``secret`` in ``message`` with a placeholder.

    Args:
        message: Text that may contain the secret
        secret: The secret to strip (an empty secret leaves the text unchanged)

    Returns:
        The message with the secret replaced by ``[REDACTED]``
    """
    if not secret:
        return message
    return message.replace(secret, REDACTED)


class ServiceDeskError(Exception):
    """Base exception for ServiceDesk Plus operations."""

    @property
    def is_retryable(self) -> bool:
        """Whether the failure is transient and the call may be repeated."""
        return False

    @property
    def is_rate_limit(self) -> bool:
        """Whether the server asked us to back off."""
        return False

    @property
    def retry_after(self) -> float | None:
        """Suggested delay in seconds before retrying, if any."""
        return None

    def sanitized(self, secret: str) -> str:
        """Return the error message with ``secret`` redacted."""
        return redact(str(self), secret)


class ConfigurationError(ServiceDeskError):
    """Missing or invalid configuration."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"configuration error: {message}")

    @classmethod
    def missing_env(cls, name: str) -> "ConfigurationError":
        """Error for a required environment variable that is unset or blank."""
        return cls(f"missing required environment variable: {name}")


class TransportError(ServiceDeskError):
    """The HTTP request failed before a response was received."""

    def __init__(self, cause: requests.exceptions.RequestException) -> None:
        self.cause = cause
        super().__init__(f"HTTP request failed: {cause}")

    @property
    def is_retryable(self) -> bool:
        return isinstance(self.cause, requests.exceptions.Timeout | requests.exceptions.ConnectionError)


class TransportInitError(ServiceDeskError):
    """The HTTP session could not be set up."""

    def __init__(self, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"HTTP client error: {cause}")


class HTTPStatusError(ServiceDeskError):
    """Non-success HTTP status that has no more specific classification.

    Attributes:
        status: HTTP status code
        body: Redacted, length-capped response body
    """

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body}")

    @property
    def is_retryable(self) -> bool:
        return self.status == 429 or 500 <= self.status < 600

    @property
    def is_rate_limit(self) -> bool:
        return self.status == 429


class RequestTimeoutError(ServiceDeskError):
    """The request did not complete within the configured timeout."""

    def __init__(self, duration: float, operation: str) -> None:
        self.duration = duration
        self.operation = operation
        super().__init__(
            f"request timed out after {duration:g}s - the server may be slow or unreachable"
        )

    @property
    def is_retryable(self) -> bool:
        return True

    @property
    def retry_after(self) -> float | None:
        return TIMEOUT_RETRY_DELAY


class RateLimitedError(ServiceDeskError):
    """HTTP 429 from the server."""

    def __init__(self, retry_after: float | None = None) -> None:
        self._retry_after = retry_after
        super().__init__("rate limited by server - please wait before retrying")

    @property
    def is_retryable(self) -> bool:
        return True

    @property
    def is_rate_limit(self) -> bool:
        return True

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class ServiceUnavailableError(ServiceDeskError):
    """HTTP 502/503/504 from the server or a proxy in front of it."""

    def __init__(self, status: int) -> None:
        self.status = status
        super().__init__(f"service temporarily unavailable ({status}) - will retry automatically")

    @property
    def is_retryable(self) -> bool:
        return True

    @property
    def retry_after(self) -> float | None:
        return SERVICE_UNAVAILABLE_DELAY


class SdpApiError(ServiceDeskError):
    """SDP returned a failure ``response_status`` inside a 2xx response.

    Attributes:
        code: SDP status code (e.g. 4000, 4012)
        message: First message reported by SDP
        request_id: Request the error relates to, if known
    """

    def __init__(self, code: int, message: str, request_id: str | None = None) -> None:
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(f"SDP API error {code}: {message}")


class SerializationError(ServiceDeskError):
    """A body could not be encoded or decoded as the expected JSON."""

    def __init__(self, detail: object) -> None:
        self.detail = detail
        super().__init__(f"JSON serialization error: {detail}")


class NotFoundError(ServiceDeskError):
    """The requested resource does not exist."""

    def __init__(self, resource_id: str, resource: str = "request") -> None:
        self.resource_id = resource_id
        self.resource = resource
        super().__init__(f"{resource} not found: {resource_id}")


class AuthenticationError(ServiceDeskError):
    """The API key was rejected."""

    def __init__(self) -> None:
        super().__init__("authentication failed - check SDP_API_KEY")


class InputValidationError(ServiceDeskError):
    """Caller-supplied input was rejected before any network call."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"validation error: {message}")


class ConnectionTestError(ServiceDeskError):
    """The startup connectivity probe failed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"connection test failed: {message}")
