"""Error classification for key-value store operations.

This module is the single point of translation between the backing store's
native error shapes (``StoreOperationError`` raised by the in-memory
backend, botocore ``ClientError`` raised through aioboto3, plain network
exceptions) and the rest of the system.  Everything above the storage
layer only ever sees :class:`StorageError`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Final


class ErrorCategory(StrEnum):
    """Actionable classification of a failed store operation."""

    __slots__ = ()

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    AUTHORIZATION = "authorization"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class ErrorDetails:
    category: ErrorCategory
    code: str
    http_status: int
    user_message: str
    technical_message: str
    retryable: bool
    context: dict[str, Any] = field(default_factory=dict)


class StoreOperationError(Exception):
    """Native error raised by a store backend.

    Shaped after the store's wire errors: an error *code* such as
    ``ValidationException`` plus an optional HTTP status.
    """

    def __init__(self, code: str, message: str = "", *, http_status: int | None = None) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.http_status = http_status


class StorageError(Exception):
    """Normalised error surfaced by every storage operation.

    ``str(error)`` is the technical message; callers that need to show
    something to an end user should use :attr:`user_message`.
    """

    def __init__(self, details: ErrorDetails, original: BaseException | None = None) -> None:
        super().__init__(details.technical_message)
        self.details = details
        self.original = original

    @property
    def category(self) -> ErrorCategory:
        return self.details.category

    @property
    def retryable(self) -> bool:
        return self.details.retryable

    @property
    def user_message(self) -> str:
        return self.details.user_message

    @property
    def technical_message(self) -> str:
        return self.details.technical_message

    @property
    def http_status(self) -> int:
        return self.details.http_status


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------

_GENERIC_RETRY_MESSAGE: Final[str] = "Service is temporarily busy. Please try again in a moment."
_GENERIC_SYSTEM_MESSAGE: Final[str] = "An unexpected error occurred. Please try again or contact support."

# code -> (category, http status, user message, technical message template)
_CODE_TABLE: Final[dict[str, tuple[ErrorCategory, int, str, str]]] = {
    "ProvisionedThroughputExceededException": (
        ErrorCategory.TRANSIENT, 429, _GENERIC_RETRY_MESSAGE, "Store provisioned throughput exceeded",
    ),
    "ThrottlingException": (
        ErrorCategory.TRANSIENT, 429, "Too many requests. Please try again in a moment.", "Store throttling exception",
    ),
    "RequestLimitExceeded": (
        ErrorCategory.TRANSIENT, 429, "Too many requests. Please try again in a moment.", "Store request limit exceeded",
    ),
    "ServiceUnavailable": (
        ErrorCategory.TRANSIENT, 503, "Service is temporarily unavailable. Please try again later.",
        "Store service unavailable",
    ),
    "InternalServerError": (
        ErrorCategory.TRANSIENT, 503, "Service is temporarily unavailable. Please try again later.",
        "Store internal server error",
    ),
    "RequestTimeout": (
        ErrorCategory.TRANSIENT, 503, "Request timed out. Please try again.", "Store request timeout",
    ),
    "TimeoutError": (
        ErrorCategory.TRANSIENT, 503, "Request timed out. Please try again.", "Store request timeout",
    ),
    "NetworkingError": (
        ErrorCategory.TRANSIENT, 503, "Network connection error. Please try again.", "Store networking error",
    ),
    "ConnectionError": (
        ErrorCategory.TRANSIENT, 503, "Network connection error. Please try again.", "Store networking error",
    ),
    "ResourceNotFoundException": (
        ErrorCategory.NOT_FOUND, 404, "The requested resource was not found.", "Store resource not found",
    ),
    "ConditionalCheckFailedException": (
        ErrorCategory.CONFLICT, 409, "The operation could not be completed due to a conflict.",
        "Store conditional check failed",
    ),
    "TransactionConflictException": (
        ErrorCategory.CONFLICT, 409, "The operation could not be completed due to a conflict.",
        "Store transaction conflict",
    ),
    "AccessDeniedException": (
        ErrorCategory.AUTHORIZATION, 403, "You do not have permission to perform this operation.",
        "Store access denied",
    ),
    "UnauthorizedException": (
        ErrorCategory.AUTHORIZATION, 403, "You do not have permission to perform this operation.",
        "Store access denied",
    ),
}

_TRANSIENT_PATTERNS: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"throttl",
        r"timeout",
        r"timed out",
        r"network",
        r"connection",
        r"service unavailable",
        r"throughput exceeded",
    )
)


def _native_shape(error: BaseException) -> tuple[str | None, str, int | None]:
    """Extract ``(code, message, http_status)`` from a native store error."""
    if isinstance(error, StoreOperationError):
        return error.code, error.message, error.http_status

    # botocore.exceptions.ClientError and friends
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        err = response.get("Error") or {}
        meta = response.get("ResponseMetadata") or {}
        code = err.get("Code")
        message = err.get("Message") or str(error)
        status = meta.get("HTTPStatusCode")
        return code, message, int(status) if status is not None else None

    if isinstance(error, TimeoutError):
        return "TimeoutError", str(error) or "timed out", None
    if isinstance(error, ConnectionError):
        return "ConnectionError", str(error) or "connection error", None

    return None, str(error) or type(error).__name__, None


class ErrorClassifier:
    """Turns raw store/service errors into :class:`ErrorDetails`."""

    @classmethod
    def classify(cls, error: BaseException, context: dict[str, Any] | None = None) -> ErrorDetails:
        ctx = dict(context or {})

        if isinstance(error, StorageError):
            return error.details

        code, message, http_status = _native_shape(error)

        if code is not None and code in _CODE_TABLE:
            category, status, user_message, technical = _CODE_TABLE[code]
            return ErrorDetails(
                category=category,
                code=code,
                http_status=status,
                user_message=user_message,
                technical_message=f"{technical}: {message}" if message and message != code else technical,
                retryable=category == ErrorCategory.TRANSIENT,
                context=ctx,
            )

        if code == "ValidationException" or isinstance(error, (ValueError, TypeError)):
            return ErrorDetails(
                category=ErrorCategory.VALIDATION,
                code=code or "ValidationError",
                http_status=400,
                user_message=message,
                technical_message=f"Store validation error: {message}",
                retryable=False,
                context=ctx,
            )

        if http_status is not None:
            details = cls._classify_status(code or "HttpError", message, http_status, ctx)
            if details is not None:
                return details

        if any(p.search(message) for p in _TRANSIENT_PATTERNS):
            return ErrorDetails(
                category=ErrorCategory.TRANSIENT,
                code=code or "TransientError",
                http_status=503,
                user_message=_GENERIC_RETRY_MESSAGE,
                technical_message=f"Transient store error: {message}",
                retryable=True,
                context=ctx,
            )

        return ErrorDetails(
            category=ErrorCategory.SYSTEM,
            code=code or type(error).__name__,
            http_status=500,
            user_message=_GENERIC_SYSTEM_MESSAGE,
            technical_message=f"Unknown store error: {message}",
            retryable=False,
            context=ctx,
        )

    @staticmethod
    def _classify_status(code: str, message: str, status: int, ctx: dict[str, Any]) -> ErrorDetails | None:
        if status == 429 or status in (502, 503, 504):
            return ErrorDetails(
                category=ErrorCategory.TRANSIENT,
                code=code,
                http_status=status,
                user_message=_GENERIC_RETRY_MESSAGE,
                technical_message=f"Store unavailable ({status}): {message}",
                retryable=True,
                context=ctx,
            )
        if status >= 500:
            return ErrorDetails(
                category=ErrorCategory.SYSTEM,
                code=code,
                http_status=status,
                user_message=_GENERIC_SYSTEM_MESSAGE,
                technical_message=f"Store server error: {message}",
                retryable=False,
                context=ctx,
            )
        if status == 404:
            return ErrorDetails(
                category=ErrorCategory.NOT_FOUND,
                code=code,
                http_status=404,
                user_message="The requested resource was not found.",
                technical_message=f"Store resource not found: {message}",
                retryable=False,
                context=ctx,
            )
        if status == 409:
            return ErrorDetails(
                category=ErrorCategory.CONFLICT,
                code=code,
                http_status=409,
                user_message="The operation could not be completed due to a conflict.",
                technical_message=f"Store conflict: {message}",
                retryable=False,
                context=ctx,
            )
        if 400 <= status < 500:
            return ErrorDetails(
                category=ErrorCategory.VALIDATION,
                code=code,
                http_status=status,
                user_message="Invalid request. Please check your input and try again.",
                technical_message=f"Store client error: {message}",
                retryable=False,
                context=ctx,
            )
        return None

    # -- Convenience helpers ---------------------------------------------------

    @classmethod
    def is_retryable(cls, error: BaseException) -> bool:
        return cls.classify(error).retryable

    @classmethod
    def user_message(cls, error: BaseException) -> str:
        return cls.classify(error).user_message

    @classmethod
    def technical_message(cls, error: BaseException) -> str:
        return cls.classify(error).technical_message

    @classmethod
    def to_storage_error(cls, error: BaseException, context: dict[str, Any] | None = None) -> StorageError:
        """Wrap *error* in a :class:`StorageError` (no-op if it already is one)."""
        if isinstance(error, StorageError):
            return error
        return StorageError(cls.classify(error, context), original=error)
