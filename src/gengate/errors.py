"""Error taxonomy shared by the gateway boundary and the provider layer.

Gateway errors carry a stable machine-readable ``code``, the HTTP status the
boundary answers with, and whether the caller may retry. Provider errors
never reach the caller directly: the dispatcher and relay absorb them and move
on to the next candidate.
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence


class ErrorCode(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_API_KEY = "invalid_api_key"
    TIER_NOT_PERMITTED = "tier_not_permitted"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    ALL_PROVIDERS_EXHAUSTED = "all_providers_exhausted"
    UPSTREAM_STREAM_FAILED = "upstream_stream_failed"
    INTERNAL_ERROR = "internal_error"


class GatewayError(Exception):
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    error_type: str = "server_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class InvalidRequest(GatewayError):
    code = ErrorCode.INVALID_REQUEST
    error_type = "invalid_request_error"
    status_code = 400


class Unauthorized(GatewayError):
    code = ErrorCode.INVALID_API_KEY
    error_type = "authentication_error"
    status_code = 401


class TierNotPermitted(GatewayError):
    code = ErrorCode.TIER_NOT_PERMITTED
    error_type = "permission_error"
    status_code = 403


class RateLimited(GatewayError):
    code = ErrorCode.RATE_LIMITED
    error_type = "rate_limit_error"
    status_code = 429
    retryable = True

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message, retry_after=retry_after)


class AllProvidersExhausted(GatewayError):
    code = ErrorCode.ALL_PROVIDERS_EXHAUSTED
    error_type = "provider_error"
    status_code = 503
    retryable = True

    def __init__(
        self,
        message: str = "all providers failed",
        *,
        failures: Sequence["AttemptFailure"] = (),
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message, retry_after=retry_after)
        self.failures = tuple(failures)

    @property
    def attempts(self) -> int:
        return len(self.failures)

    @property
    def last_provider(self) -> str | None:
        return self.failures[-1].provider if self.failures else None


class UpstreamMidStreamFailure(GatewayError):
    code = ErrorCode.UPSTREAM_STREAM_FAILED
    error_type = "provider_error"
    status_code = 502
    retryable = True


class AttemptFailure:
    __slots__ = ("provider", "model", "reason", "status")

    def __init__(self, provider: str, model: str, reason: str, status: int | None = None) -> None:
        self.provider = provider
        self.model = model
        self.reason = reason
        self.status = status

    def __repr__(self) -> str:
        return (
            f"AttemptFailure(provider={self.provider!r}, model={self.model!r}, "
            f"reason={self.reason!r}, status={self.status!r})"
        )


class ProviderError(RuntimeError):
    """Base error for a single upstream call."""

    def __init__(self, message: str, *, provider: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status


class ProviderHTTPError(ProviderError):
    """Upstream answered with a non-success status."""


class MalformedUpstreamResponse(ProviderError):
    """Upstream payload did not match the provider's response schema."""


class EmptyContent(ProviderError):
    """Upstream answered successfully but produced no usable content."""


class ProviderStreamError(ProviderError):
    """Upstream signalled an error inside an already-open stream."""
