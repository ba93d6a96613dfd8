"""
Typed error taxonomy for Gemini calls.

Every failure that leaves the core is a ``GeminiError`` carrying an
``ErrorKind`` and a ``retryable`` flag, so callers never have to guess
from a freeform string. ``classify`` turns anything raised by the SDK,
httpx or our own code into one of these; it prefers structured status
codes and falls back to message substrings.
"""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Any

import httpx

from gemini_chat_core.config import LOGGER_NAME, is_development

logger = logging.getLogger(LOGGER_NAME)


class ErrorKind(str, Enum):
    """Error kinds surfaced to the transport layer."""

    SAFETY = "Safety"
    RATE_LIMIT = "RateLimit"
    QUOTA = "Quota"
    AUTH = "Auth"
    MODEL_UNAVAILABLE = "ModelUnavailable"
    VALIDATION = "Validation"
    NETWORK = "Network"
    TIMEOUT = "Timeout"
    RECITATION = "Recitation"
    TOKEN_LIMIT = "TokenLimit"
    GENERIC = "Generic"


# =============================================================================
# Exceptions
# =============================================================================


class GeminiError(Exception):
    """Base error for Gemini operations.

    Provides structured error information for programmatic handling.
    """

    kind: ErrorKind = ErrorKind.GENERIC
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self, *, include_detail: bool | None = None) -> dict[str, Any]:
        """Convert to a user-safe dictionary for JSON serialization.

        Raw messages and details are only included in development.
        """
        if include_detail is None:
            include_detail = is_development()
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "message": user_friendly_message(self),
            "retryable": self.retryable,
        }
        if include_detail:
            data["detail"] = self.message
            if self.status_code is not None:
                data["status_code"] = self.status_code
            if self.details:
                data["details"] = self.details
        return data


class GeminiSafetyError(GeminiError):
    kind = ErrorKind.SAFETY

    def __init__(
        self,
        message: str = "Content blocked by safety filters",
        *,
        category: str | None = None,
        probability: str | None = None,
        **kwargs: Any,
    ):
        self.category = category
        self.probability = probability
        super().__init__(message, **kwargs)


class GeminiRateLimitError(GeminiError):
    kind = ErrorKind.RATE_LIMIT
    default_retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after_ms: int | None = None,
        **kwargs: Any,
    ):
        self.retry_after_ms = retry_after_ms
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)


class GeminiQuotaError(GeminiError):
    kind = ErrorKind.QUOTA

    def __init__(self, message: str = "API quota exceeded", **kwargs: Any):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)


class GeminiAuthError(GeminiError):
    kind = ErrorKind.AUTH

    def __init__(self, message: str = "Authentication failed", **kwargs: Any):
        kwargs.setdefault("status_code", 401)
        super().__init__(message, **kwargs)


class GeminiModelUnavailableError(GeminiError):
    """Model overloaded, missing or down. Retryable unless the caller says otherwise."""

    kind = ErrorKind.MODEL_UNAVAILABLE
    default_retryable = True

    def __init__(self, message: str = "Model temporarily unavailable", **kwargs: Any):
        kwargs.setdefault("status_code", 503)
        super().__init__(message, **kwargs)


class GeminiValidationError(GeminiError):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any):
        self.field = field
        kwargs.setdefault("status_code", 400)
        super().__init__(message, **kwargs)

    def to_dict(self, *, include_detail: bool | None = None) -> dict[str, Any]:
        data = super().to_dict(include_detail=include_detail)
        if self.field:
            data["field"] = self.field
        return data


class GeminiNetworkError(GeminiError):
    kind = ErrorKind.NETWORK
    default_retryable = True

    def __init__(self, message: str = "Network error", **kwargs: Any):
        super().__init__(message, **kwargs)


class GeminiTimeoutError(GeminiError):
    kind = ErrorKind.TIMEOUT
    default_retryable = True

    def __init__(
        self,
        message: str = "Request timed out",
        *,
        timeout_ms: int | None = None,
        **kwargs: Any,
    ):
        self.timeout_ms = timeout_ms
        kwargs.setdefault("status_code", 504)
        super().__init__(message, **kwargs)


class GeminiRecitationError(GeminiError):
    kind = ErrorKind.RECITATION

    def __init__(self, message: str = "Response blocked due to recitation", **kwargs: Any):
        super().__init__(message, **kwargs)


class GeminiTokenLimitError(GeminiError):
    kind = ErrorKind.TOKEN_LIMIT

    def __init__(
        self,
        message: str = "Token limit exceeded",
        *,
        token_count: int | None = None,
        max_tokens: int | None = None,
        **kwargs: Any,
    ):
        self.token_count = token_count
        self.max_tokens = max_tokens
        super().__init__(message, **kwargs)


# =============================================================================
# Classification
# =============================================================================

# Substrings that make an otherwise unclassified failure worth retrying
RETRYABLE_PATTERNS: tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "socket hang up",
    "socket closed",
    "etimedout",
    "enotfound",
    "connection reset",
    "service unavailable",
    "deadline exceeded",
    "deadline_exceeded",
    "unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
    "500",
    "502",
    "503",
    "504",
)

_AUTH_STATUSES = {"UNAUTHENTICATED", "PERMISSION_DENIED"}
_UNAVAILABLE_STATUSES = {"UNAVAILABLE", "INTERNAL"}

_HARM_CATEGORY_RE = re.compile(r"HARM_CATEGORY_[A-Z_]+")
_PROBABILITY_RE = re.compile(r"\b(NEGLIGIBLE|LOW|MEDIUM|HIGH)\b")
_RETRY_AFTER_RE = re.compile(
    r"retry(?:[\s_-]?after|[\s_-]?delay|[\s_-]?in)[\"'\s:=]*(\d+(?:\.\d+)?)\s*(ms|s|sec|seconds)?",
    re.IGNORECASE,
)
_TOKEN_COUNT_RE = re.compile(r"(\d[\d,]*)\s*(?:input\s+)?tokens?", re.IGNORECASE)
_MAX_TOKENS_RE = re.compile(
    r"(?:maximum|max|limit)(?:\s+\w+){0,3}?\s*(?:of|is|:)?\s*(\d[\d,]*)", re.IGNORECASE
)


def _safe_message(error: object) -> str:
    try:
        message = getattr(error, "message", None)
        if isinstance(message, str) and message:
            return message
        return str(error)
    except Exception:
        return repr(type(error))


def _status_code(error: object) -> int | None:
    """Pull an HTTP-style status code off SDK or httpx errors."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("code", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool) and 100 <= value < 600:
            return value
    return None


def _status_name(error: object) -> str | None:
    value = getattr(error, "status", None)
    if isinstance(value, str):
        return value.upper()
    return None


def _to_int(raw: str) -> int | None:
    try:
        return int(raw.replace(",", ""))
    except ValueError:
        return None


def parse_retry_after_ms(message: str) -> int | None:
    """Extract a retry hint such as ``retry after 30s`` in milliseconds."""
    match = _RETRY_AFTER_RE.search(message)
    if not match:
        return None
    value = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    return int(value if unit == "ms" else value * 1000)


def _safety_error(message: str, **kwargs: Any) -> GeminiSafetyError:
    category = _HARM_CATEGORY_RE.search(message)
    probability = _PROBABILITY_RE.search(message)
    return GeminiSafetyError(
        message,
        category=category.group(0) if category else None,
        probability=probability.group(1) if probability else None,
        **kwargs,
    )


def _token_limit_error(message: str, **kwargs: Any) -> GeminiTokenLimitError:
    count = _TOKEN_COUNT_RE.search(message)
    maximum = _MAX_TOKENS_RE.search(message)
    return GeminiTokenLimitError(
        message,
        token_count=_to_int(count.group(1)) if count else None,
        max_tokens=_to_int(maximum.group(1)) if maximum else None,
        **kwargs,
    )


def _classify_by_message(message: str, status_code: int | None) -> GeminiError:
    """Substring heuristic in fixed priority order."""
    lower = message.lower()
    kwargs: dict[str, Any] = {}
    if status_code is not None:
        kwargs["status_code"] = status_code

    if "safety" in lower or ("blocked" in lower and "harm" in lower):
        return _safety_error(message, **kwargs)
    if "rate limit" in lower or "rate_limit" in lower or "429" in lower or "too many requests" in lower:
        return GeminiRateLimitError(message, retry_after_ms=parse_retry_after_ms(message), **kwargs)
    if "quota" in lower:
        return GeminiQuotaError(message, **kwargs)
    if "api key" in lower or "api_key" in lower or "unauthorized" in lower or "401" in lower:
        return GeminiAuthError(message, **kwargs)
    if "timeout" in lower or "timed out" in lower or "504" in lower:
        return GeminiTimeoutError(message, **kwargs)
    if "recitation" in lower:
        return GeminiRecitationError(message, **kwargs)
    if "network" in lower or "econnreset" in lower or "econnrefused" in lower:
        return GeminiNetworkError(message, **kwargs)
    if "token" in lower and "limit" in lower:
        return _token_limit_error(message, **kwargs)
    return GeminiError(message, **kwargs)


def _classify_structured(error: object, message: str) -> GeminiError | None:
    """Map exception types and status codes; None when they say nothing useful."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return GeminiTimeoutError(message or "Request timed out")
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return GeminiNetworkError(message or "Network error")

    code = _status_code(error)
    status = _status_name(error)
    lower = message.lower()

    if code in (401, 403) or status in _AUTH_STATUSES:
        return GeminiAuthError(message, status_code=code)
    if code == 429 or status == "RESOURCE_EXHAUSTED":
        if "quota" in lower:
            return GeminiQuotaError(message, status_code=code)
        return GeminiRateLimitError(
            message, retry_after_ms=parse_retry_after_ms(message), status_code=code
        )
    if code in (408, 504) or status == "DEADLINE_EXCEEDED":
        return GeminiTimeoutError(message, status_code=code)
    if code in (500, 502, 503) or status in _UNAVAILABLE_STATUSES:
        return GeminiModelUnavailableError(message, status_code=code)
    if code == 404 or status == "NOT_FOUND":
        return GeminiModelUnavailableError(message, status_code=code, retryable=False)
    if code == 400 or status in ("INVALID_ARGUMENT", "FAILED_PRECONDITION"):
        typed = _classify_by_message(message, code)
        if typed.kind is ErrorKind.GENERIC:
            return GeminiValidationError(message, status_code=code)
        return typed
    return None


def classify(error: object) -> GeminiError:
    """Turn any raised value into a typed ``GeminiError``.

    Already-typed errors are returned unchanged. Never raises.
    """
    if isinstance(error, GeminiError):
        return error
    message = _safe_message(error)
    try:
        typed = _classify_structured(error, message)
        if typed is None:
            typed = _classify_by_message(message, _status_code(error))
    except Exception:
        logger.exception("⚠️ Error classification failed")
        typed = GeminiError(message)
    if isinstance(error, BaseException):
        typed.__cause__ = error
    return typed


def is_retryable(error: object) -> bool:
    """Retryability for typed and untyped errors alike."""
    if isinstance(error, GeminiError):
        return error.retryable
    typed = classify(error)
    if typed.kind is not ErrorKind.GENERIC:
        return typed.retryable
    message = _safe_message(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


_FRIENDLY_MESSAGES = {
    ErrorKind.SAFETY: (
        "I can't process that request due to safety guidelines. "
        "Please try rephrasing your question."
    ),
    ErrorKind.RATE_LIMIT: (
        "The service is experiencing high demand. Please wait a moment and try again."
    ),
    ErrorKind.QUOTA: "API usage limits have been reached. Please try again later.",
    ErrorKind.AUTH: "There was an authentication issue. Please check your API configuration.",
    ErrorKind.MODEL_UNAVAILABLE: (
        "The model is temporarily unavailable. Please try again in a moment."
    ),
    ErrorKind.VALIDATION: "The request was invalid. Please check your input and try again.",
    ErrorKind.NETWORK: "A network error occurred. Please check your connection and try again.",
    ErrorKind.TIMEOUT: "The request took too long to complete. Please try again.",
    ErrorKind.RECITATION: (
        "Unable to generate a response for this query. Please try a different approach."
    ),
    ErrorKind.TOKEN_LIMIT: "The content is too long. Please try with a shorter message.",
    ErrorKind.GENERIC: "Something went wrong. Please try again.",
}


def user_friendly_message(error: object) -> str:
    """User-safe sentence for an error, keyed on its kind."""
    return _FRIENDLY_MESSAGES[classify(error).kind]
