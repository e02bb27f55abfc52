"""
Error taxonomy for outbound model calls.

Classifies transport failures into coarse kinds that drive retry
eligibility and downstream messaging. Translating a kind into user-facing
speech is left to the caller.
"""

import asyncio
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union


class ErrorKind(Enum):
    """Classified failure kinds."""
    AUTHENTICATION = "authentication_error"
    RATE_LIMIT = "rate_limit_error"
    TIMEOUT = "timeout_error"
    NETWORK = "network_error"
    SERVER = "server_error"
    VALIDATION = "validation_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_UNAVAILABLE = "model_unavailable"
    CONTENT_FILTER = "content_filter_error"
    UNKNOWN = "unknown_error"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMIT,
    ErrorKind.SERVER,
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK,
})

_STATUS_KINDS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.QUOTA_EXCEEDED,
    404: ErrorKind.MODEL_UNAVAILABLE,
    408: ErrorKind.TIMEOUT,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMIT,
}

# Provider error ``type``/``code`` values that sharpen a status classification
_PROVIDER_ERROR_KINDS = {
    "insufficient_quota": ErrorKind.QUOTA_EXCEEDED,
    "quota_exceeded": ErrorKind.QUOTA_EXCEEDED,
    "rate_limit_exceeded": ErrorKind.RATE_LIMIT,
    "model_not_found": ErrorKind.MODEL_UNAVAILABLE,
    "model_unavailable": ErrorKind.MODEL_UNAVAILABLE,
    "content_filter": ErrorKind.CONTENT_FILTER,
    "authentication_error": ErrorKind.AUTHENTICATION,
    "validation_error": ErrorKind.VALIDATION,
}


class LLMServiceError(Exception):
    """Raised when a model call fails with a classified kind.

    Carries the transport status code and the low-level cause, when known,
    for diagnostics.
    """
    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __repr__(self) -> str:
        return (
            f"LLMServiceError({str(self)!r}, kind={self.kind.name}, "
            f"status_code={self.status_code})"
        )


def classify_status(status_code: Optional[int]) -> ErrorKind:
    """Map an HTTP status code to an error kind."""
    if status_code is None:
        return ErrorKind.UNKNOWN
    if status_code in _STATUS_KINDS:
        return _STATUS_KINDS[status_code]
    if 500 <= status_code < 600:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


def refine_kind(kind: ErrorKind, provider_error_type: Optional[str]) -> ErrorKind:
    """Sharpen a status-based kind using the provider's error type string."""
    if not provider_error_type:
        return kind
    return _PROVIDER_ERROR_KINDS.get(provider_error_type.lower(), kind)


def classify_exception(error: BaseException) -> ErrorKind:
    """Classify a non-HTTP transport exception."""
    if isinstance(error, LLMServiceError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    # Local OS faults (missing files, permissions) stay UNKNOWN
    if isinstance(error, (ConnectionError, socket.gaierror, socket.herror)):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


@dataclass(frozen=True)
class Success:
    """Attempt produced usable content."""
    content: str
    tokens_used: Optional[int] = None
    raw: Any = None


@dataclass(frozen=True)
class RetryableFailure:
    """Attempt failed with a kind that may succeed on retry."""
    kind: ErrorKind
    error: Optional[LLMServiceError] = None


@dataclass(frozen=True)
class FatalFailure:
    """Final failure: non-retryable kind or retries exhausted."""
    kind: ErrorKind
    detail: str
    error: Optional[LLMServiceError] = None

    def to_error(self) -> LLMServiceError:
        if self.error is not None:
            return self.error
        return LLMServiceError(self.detail, self.kind)


RequestOutcome = Union[Success, RetryableFailure, FatalFailure]


def failure_for(error: LLMServiceError) -> Union[RetryableFailure, FatalFailure]:
    """Wrap a classified error in the matching outcome variant."""
    if error.retryable:
        return RetryableFailure(kind=error.kind, error=error)
    return FatalFailure(kind=error.kind, detail=str(error), error=error)
