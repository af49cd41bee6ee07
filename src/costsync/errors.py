"""
Error taxonomy for the cost ingestion pipeline.

Every provider-specific failure is translated into one of these exceptions
before it leaves an adapter, so the resilience layer and the sync
orchestrator only ever reason about an ``ErrorKind``.
"""

import asyncio
from enum import Enum


class ErrorKind(Enum):
    """Failure kinds surfaced on a failed SyncOutcome."""

    AUTH_ERROR = "AuthError"
    RATE_LIMITED = "RateLimited"
    TIMEOUT = "Timeout"
    INVALID_REQUEST = "InvalidRequest"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    VALIDATION_FAILED = "ValidationFailed"
    INTERNAL_ERROR = "InternalError"


class CloudProviderError(Exception):
    """Base exception for cloud provider errors."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    retryable = False

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code


class AuthenticationError(CloudProviderError):
    """Credentials missing or rejected by the provider."""

    kind = ErrorKind.AUTH_ERROR


class ConfigurationError(AuthenticationError):
    """Credential bundle is incomplete for the provider."""

    pass


class RateLimitError(CloudProviderError):
    """Rate limiting errors."""

    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        provider: str | None = None,
    ):
        super().__init__(message, provider=provider, status_code=429)
        self.retry_after = retry_after


class ProviderTimeoutError(CloudProviderError):
    """The upstream call did not complete within the per-call timeout."""

    kind = ErrorKind.TIMEOUT
    retryable = True


class InvalidRequestError(CloudProviderError):
    """Malformed date range or request parameters."""

    kind = ErrorKind.INVALID_REQUEST


class UpstreamUnavailableError(CloudProviderError):
    """5xx responses and network-level failures."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    retryable = True


class CircuitOpenError(UpstreamUnavailableError):
    """Rejected by an open circuit breaker without calling the upstream."""

    retryable = False


class MalformedResponseError(CloudProviderError):
    """The provider answered, but the payload could not be interpreted."""

    kind = ErrorKind.VALIDATION_FAILED


class ValidationFailedError(CloudProviderError):
    """The normalizer rejected the whole response as unusable."""

    kind = ErrorKind.VALIDATION_FAILED


def error_for_status(
    status_code: int, message: str, provider: str | None = None, retry_after: float | None = None
) -> CloudProviderError:
    """Map an HTTP status code from a provider API to the error taxonomy."""
    if status_code in (401, 403):
        return AuthenticationError(message, provider=provider, status_code=status_code)
    if status_code == 429:
        return RateLimitError(message, retry_after=retry_after, provider=provider)
    if status_code in (408, 504):
        return ProviderTimeoutError(message, provider=provider, status_code=status_code)
    if status_code >= 500:
        return UpstreamUnavailableError(message, provider=provider, status_code=status_code)
    return InvalidRequestError(message, provider=provider, status_code=status_code)


def error_kind_for(exc: BaseException) -> ErrorKind:
    """Return the ErrorKind an arbitrary exception should be reported as."""
    if isinstance(exc, CloudProviderError):
        return exc.kind
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    return ErrorKind.INTERNAL_ERROR
