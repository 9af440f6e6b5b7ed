"""
Error taxonomy for genbroker.

This module provides a hierarchical exception system with:
- Error codes for programmatic handling
- Retryable vs non-retryable classification
- Structured context for debugging
- Provider failure classification used for fallback decisions
- HTTP status mapping for the request boundary
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for the generation broker."""

    # Provider errors (1xxx)
    PROVIDER_ERROR = "ERR_1000"
    PROVIDER_RATE_LIMIT = "ERR_1001"
    PROVIDER_AUTHENTICATION = "ERR_1002"
    CONTENT_POLICY = "ERR_1003"
    PROVIDER_UNAVAILABLE = "ERR_1004"
    PROVIDER_TIMEOUT = "ERR_1005"
    INVALID_RESPONSE = "ERR_1006"
    GENERATION_FAILED = "ERR_1007"

    # Request errors (2xxx)
    VALIDATION_FAILED = "ERR_2000"
    RATE_LIMITED = "ERR_2001"
    CONCURRENCY_LIMITED = "ERR_2002"
    INSUFFICIENT_CREDITS = "ERR_2003"

    # Access errors (3xxx)
    SESSION_REQUIRED = "ERR_3000"
    UNAUTHORISED = "ERR_3001"
    NOT_FOUND = "ERR_3002"

    # Persistence / storage errors (4xxx)
    STORAGE_ERROR = "ERR_4000"
    LEDGER_ERROR = "ERR_4001"
    INVALID_TRANSITION = "ERR_4002"
    JOB_CONFLICT = "ERR_4003"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "ERR_9000"
    UNKNOWN_ERROR = "ERR_9999"


class FailureKind(str, Enum):
    """Classification of a provider failure, used to decide on fallback."""

    CONTENT_POLICY = "content_policy"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Structured context for error debugging."""

    job_id: str | None = None
    trace_id: str | None = None
    owner_key: str | None = None
    provider: str | None = None
    attempt: int = 1
    operation: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "trace_id": self.trace_id,
            "owner_key": self.owner_key,
            "provider": self.provider,
            "attempt": self.attempt,
            "operation": self.operation,
            **self.extra,
        }


class BrokerError(Exception):
    """
    Base exception for all generation broker errors.

    Attributes:
        code: Standardized error code for programmatic handling
        message: Human-readable error message
        retryable: Whether the operation can be retried
        http_status: Status code used at the request boundary
        context: Structured debugging context
        cause: Original exception that caused this error
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False
    http_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        http_status: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        if http_status is not None:
            self.http_status = http_status
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.context.job_id:
            parts.append(f"(job_id={self.context.job_id})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }


# =============================================================================
# Request Errors (surfaced verbatim, never retried by the broker)
# =============================================================================


class ValidationFailedError(BrokerError):
    """Request parameters failed validation. No job is created."""

    code = ErrorCode.VALIDATION_FAILED
    http_status = 400

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        errors: list[str] | None = None,
        **kwargs,
    ):
        self.errors = list(errors or [])
        if errors and message == "Validation failed":
            message = "; ".join(self.errors)
        super().__init__(message, **kwargs)


class RateLimitedError(BrokerError):
    """Requester exceeded its request window. Carries a retry-after hint."""

    code = ErrorCode.RATE_LIMITED
    http_status = 429

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        *,
        retry_after: int = 60,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ConcurrencyLimitedError(BrokerError):
    """Requester already has the maximum number of jobs in flight."""

    code = ErrorCode.CONCURRENCY_LIMITED
    http_status = 429

    def __init__(
        self,
        message: str = "Too many generations in progress",
        *,
        retry_after: int = 30,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class InsufficientCreditsError(BrokerError):
    """Account balance does not cover the generation."""

    code = ErrorCode.INSUFFICIENT_CREDITS
    http_status = 402

    def __init__(
        self,
        message: str = "Insufficient credits",
        *,
        balance: int = 0,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.balance = balance


# =============================================================================
# Access Errors
# =============================================================================


class SessionRequiredError(BrokerError):
    """No session or user identity was presented."""

    code = ErrorCode.SESSION_REQUIRED
    http_status = 401

    def __init__(self, message: str = "No session", **kwargs):
        super().__init__(message, **kwargs)


class UnauthorisedError(BrokerError):
    """The requester does not own the resource."""

    code = ErrorCode.UNAUTHORISED
    http_status = 403

    def __init__(self, message: str = "Unauthorized", **kwargs):
        super().__init__(message, **kwargs)


class NotFoundError(BrokerError):
    """The requested resource does not exist."""

    code = ErrorCode.NOT_FOUND
    http_status = 404

    def __init__(self, message: str = "Job not found", **kwargs):
        super().__init__(message, **kwargs)


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(BrokerError):
    """Base class for errors from generation providers."""

    code = ErrorCode.PROVIDER_ERROR
    retryable = False
    http_status = 502
    kind: FailureKind = FailureKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        provider_status: int | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.provider_status = provider_status


class ContentPolicyError(ProviderError):
    """The prompt or output was rejected by the provider's safety system."""

    code = ErrorCode.CONTENT_POLICY
    retryable = False
    http_status = 400
    kind = FailureKind.CONTENT_POLICY

    def __init__(
        self,
        message: str = "Your prompt was flagged by content policy. Please modify and try again.",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


class ProviderRateLimitError(ProviderError):
    """Provider throttled the request. Retryable after a delay."""

    code = ErrorCode.PROVIDER_RATE_LIMIT
    retryable = True
    http_status = 503
    kind = FailureKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "Provider rate limit exceeded",
        *,
        retry_after: float | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderTimeoutError(ProviderError):
    """Provider did not finish within the bounded wait. Retryable."""

    code = ErrorCode.PROVIDER_TIMEOUT
    retryable = True
    http_status = 504
    kind = FailureKind.TIMEOUT

    def __init__(
        self,
        message: str = "Generation timed out",
        *,
        timeout: float | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ProviderUnavailableError(ProviderError):
    """Provider is unreachable or not configured. Retryable."""

    code = ErrorCode.PROVIDER_UNAVAILABLE
    retryable = True
    http_status = 503
    kind = FailureKind.UNAVAILABLE

    def __init__(
        self,
        message: str = "Provider service unavailable",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


class ProviderAuthenticationError(ProviderError):
    """Provider rejected our credentials."""

    code = ErrorCode.PROVIDER_AUTHENTICATION
    retryable = False
    kind = FailureKind.UNKNOWN

    def __init__(
        self,
        message: str = "Provider authentication failed",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


class InvalidResponseError(ProviderError):
    """Provider returned an invalid or unexpected response."""

    code = ErrorCode.INVALID_RESPONSE
    retryable = True

    def __init__(
        self,
        message: str = "Invalid response from provider",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


class GenerationFailedError(BrokerError):
    """Every provider attempt failed; the job was refunded."""

    code = ErrorCode.GENERATION_FAILED
    http_status = 500

    def __init__(
        self,
        message: str = "Generation failed",
        *,
        kind: FailureKind = FailureKind.UNKNOWN,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.kind = kind


# =============================================================================
# Persistence Errors
# =============================================================================


class StorageError(BrokerError):
    """Blob storage failed to persist generated output."""

    code = ErrorCode.STORAGE_ERROR
    retryable = True


class LedgerError(BrokerError):
    """The credit store failed to apply a mutation."""

    code = ErrorCode.LEDGER_ERROR
    retryable = True


class InvalidTransitionError(BrokerError):
    """A job state change that the state machine does not allow."""

    code = ErrorCode.INVALID_TRANSITION


class JobConflictError(BrokerError):
    """A conditional job write found the row in a different status."""

    code = ErrorCode.JOB_CONFLICT

    def __init__(self, message: str, *, current_status: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_status = current_status


class InternalError(BrokerError):
    """Unexpected failure inside the broker."""

    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = "Internal server error", **kwargs):
        super().__init__(message, **kwargs)


# =============================================================================
# Classification Helpers
# =============================================================================


def error_from_status(
    status: int,
    message: str,
    *,
    error_code: str | None = None,
    provider: str | None = None,
    context: ErrorContext | None = None,
) -> ProviderError:
    """
    Create an appropriate ProviderError from a provider HTTP status code.

    Args:
        status: HTTP status code returned by the provider
        message: Error message from the provider
        error_code: Provider-specific error code (e.g. "content_policy_violation")
        provider: Provider name for context
        context: Additional error context

    Returns:
        Appropriate ProviderError subclass
    """
    ctx = context or ErrorContext(provider=provider)

    if error_code == "content_policy_violation" or "safety" in (error_code or ""):
        return ContentPolicyError(context=ctx, provider_status=status)

    error_map: dict[int, type[ProviderError]] = {
        401: ProviderAuthenticationError,
        403: ProviderAuthenticationError,
        408: ProviderTimeoutError,
        429: ProviderRateLimitError,
        500: InvalidResponseError,
        502: ProviderUnavailableError,
        503: ProviderUnavailableError,
        504: ProviderTimeoutError,
    }

    error_class = error_map.get(status)
    if error_class is None:
        return ProviderError(message, context=ctx, provider_status=status)
    return error_class(message, context=ctx, provider_status=status)


def classify_failure(error: BaseException) -> FailureKind:
    """
    Tag an arbitrary exception with a provider failure kind.

    Typed provider errors carry their own kind; bare timeouts and connection
    failures raised below the provider layer are mapped to the transient kinds.
    """
    if isinstance(error, ProviderError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return FailureKind.UNAVAILABLE
    return FailureKind.UNKNOWN


def should_fallback(kind: FailureKind) -> bool:
    """Content policy rejections would be rejected by any provider; everything else is worth a second try."""
    return kind is not FailureKind.CONTENT_POLICY


def is_retryable(error: Exception) -> bool:
    """
    Check if an error is retryable.

    Args:
        error: Exception to check

    Returns:
        True if the error is retryable
    """
    if isinstance(error, BrokerError):
        return error.retryable

    retryable_types = (
        asyncio.TimeoutError,
        ConnectionError,
        TimeoutError,
    )
    return isinstance(error, retryable_types)


__all__ = [
    # Base
    "ErrorCode",
    "ErrorContext",
    "FailureKind",
    "BrokerError",
    # Request errors
    "ValidationFailedError",
    "RateLimitedError",
    "ConcurrencyLimitedError",
    "InsufficientCreditsError",
    # Access errors
    "SessionRequiredError",
    "UnauthorisedError",
    "NotFoundError",
    # Provider errors
    "ProviderError",
    "ContentPolicyError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderAuthenticationError",
    "InvalidResponseError",
    "GenerationFailedError",
    # Persistence errors
    "StorageError",
    "LedgerError",
    "InvalidTransitionError",
    "JobConflictError",
    "InternalError",
    # Utilities
    "error_from_status",
    "classify_failure",
    "should_fallback",
    "is_retryable",
]
