"""Exception types, error classification and message sanitization."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

import httpx

from .schemas.narration import ErrorPayload

logger = logging.getLogger(__name__)


class NarrationError(Exception):
    """Base class for errors raised inside the narration pipeline."""


class ValidationFailure(NarrationError):
    """Raised when a request payload fails boundary validation."""


class ProviderError(NarrationError):
    """Wrap transport or API failures when talking to an AI provider."""

    def __init__(self, provider: str, status_code: int, detail: Any):
        super().__init__(f"{provider}: {detail}")
        self.provider = provider
        self.status_code = status_code
        self.detail = detail


class ProviderUnavailableError(NarrationError):
    """Raised when no configured provider can serve a request."""


class UnsupportedOperationError(NarrationError):
    """Raised when a provider is asked for a capability it lacks."""


class ChunkValidationError(NarrationError):
    """Raised when chunked text would break the synthesis input contract."""


class CircuitOpenError(NarrationError):
    """Raised by a circuit breaker that is refusing calls."""

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            f"Circuit breaker {name} is open; retry in {max(0.0, retry_in):.1f}s"
        )
        self.name = name
        self.retry_in = retry_in


class OperationTimeoutError(NarrationError, TimeoutError):
    """Raised when a guarded operation exceeds its deadline."""

    def __init__(self, operation: str, timeout: float, attempt: int):
        super().__init__(
            f"{operation} timeout after {timeout:g}s (attempt {attempt})"
        )
        self.operation = operation
        self.timeout = timeout
        self.attempt = attempt


class ErrorType(str, Enum):
    INSUFFICIENT_QUOTA = "insufficient_quota"
    MODEL_OVERLOADED = "model_overloaded"
    INVALID_REQUEST = "invalid_request_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    FETCH_ERROR = "fetch_error"
    TIMEOUT = "timeout"
    VALIDATION_ERROR = "validation_error"
    AUTHENTICATION_ERROR = "authentication_error"
    AUTHORIZATION_ERROR = "authorization_error"
    INTERNAL_SERVER_ERROR = "internal_server_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


@dataclass(frozen=True)
class ErrorDescriptor:
    message: str
    code: str
    retryable: bool
    status_code: int


ERROR_DESCRIPTORS: dict[ErrorType, ErrorDescriptor] = {
    ErrorType.INSUFFICIENT_QUOTA: ErrorDescriptor(
        "Service temporarily unavailable due to high demand. Please try again later.",
        "SERVICE_QUOTA_EXCEEDED",
        True,
        503,
    ),
    ErrorType.MODEL_OVERLOADED: ErrorDescriptor(
        "AI service is currently busy. Please try again in a moment.",
        "SERVICE_OVERLOADED",
        True,
        503,
    ),
    ErrorType.INVALID_REQUEST: ErrorDescriptor(
        "Invalid request format. Please check your input and try again.",
        "INVALID_REQUEST",
        False,
        400,
    ),
    ErrorType.RATE_LIMIT_EXCEEDED: ErrorDescriptor(
        "Too many requests. Please wait before trying again.",
        "RATE_LIMIT_EXCEEDED",
        True,
        429,
    ),
    ErrorType.FETCH_ERROR: ErrorDescriptor(
        "Network error occurred. Please check your connection and try again.",
        "NETWORK_ERROR",
        True,
        502,
    ),
    ErrorType.TIMEOUT: ErrorDescriptor(
        "Request timed out. Please try again.",
        "TIMEOUT_ERROR",
        True,
        504,
    ),
    ErrorType.VALIDATION_ERROR: ErrorDescriptor(
        "Invalid input provided. Please check your request and try again.",
        "VALIDATION_ERROR",
        False,
        400,
    ),
    ErrorType.AUTHENTICATION_ERROR: ErrorDescriptor(
        "Authentication failed. Please sign in again.",
        "AUTH_ERROR",
        False,
        401,
    ),
    ErrorType.AUTHORIZATION_ERROR: ErrorDescriptor(
        "Access denied. You do not have permission to perform this action.",
        "ACCESS_DENIED",
        False,
        403,
    ),
    ErrorType.INTERNAL_SERVER_ERROR: ErrorDescriptor(
        "An internal error occurred. Please try again later.",
        "INTERNAL_ERROR",
        True,
        500,
    ),
    ErrorType.SERVICE_UNAVAILABLE: ErrorDescriptor(
        "Service temporarily unavailable. Please try again later.",
        "SERVICE_UNAVAILABLE",
        True,
        503,
    ),
}

# Order matters: credential URLs must be caught before the generic token rule
# eats the password part, and JWTs before the generic token rule.
_SENSITIVE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\b(?:postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|https?)://[^\s:/@]+:[^\s@]+@\S+", re.I),
        "[REDACTED_URL]",
    ),
    (re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+", re.I), "Bearer [REDACTED]"),
    (re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"), "[REDACTED_JWT]"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{8,}"), "[REDACTED_KEY]"),
    (re.compile(r"\bAIza[0-9A-Za-z_-]{20,}"), "[REDACTED_KEY]"),
    (re.compile(r"\b[A-Za-z0-9_-]{32,}\b"), "[REDACTED_TOKEN]"),
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[REDACTED_EMAIL]"),
    (
        re.compile(r"\b(?:10\.\d{1,3}|192\.168|172\.(?:1[6-9]|2\d|3[01]))\.\d{1,3}\.\d{1,3}\b"),
        "[REDACTED_IP]",
    ),
    (re.compile(r"(?:/home/|/Users/|/root/)[^\s\"':]+"), "[REDACTED_PATH]"),
    (re.compile(r"[A-Za-z]:\\Users\\[^\s\"']+"), "[REDACTED_PATH]"),
    (
        re.compile(r"\b(password|passwd|secret|api[_-]?key|key|token)\s*[=:]\s*[^\s&,;]+", re.I),
        r"\1=[REDACTED]",
    ),
)

_SENSITIVE_KEYS = ("password", "token", "secret", "key", "authorization", "cookie")

_STACK_LINE = re.compile(r'^\s*(?:File ".*", line \d+|at\s+\S+\s+\(.*\))', re.M)


def sanitize_message(text: str) -> str:
    """Redact credentials and internal details from ``text``."""

    if not text:
        return text
    sanitized = text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def strip_stack_trace(text: str) -> str:
    """Drop traceback frames, keeping only the message lines."""

    lines = [
        line
        for line in text.splitlines()
        if not _STACK_LINE.match(line) and line.strip() != "Traceback (most recent call last):"
    ]
    return "\n".join(lines)


def sanitize_mapping(data: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively redact sensitive keys and values of a context mapping."""

    cleaned: dict[str, Any] = {}
    for key, value in data.items():
        lowered = str(key).lower()
        if any(marker in lowered for marker in _SENSITIVE_KEYS):
            cleaned[key] = "[REDACTED]"
        elif isinstance(value, Mapping):
            cleaned[key] = sanitize_mapping(value)
        elif isinstance(value, str):
            cleaned[key] = sanitize_message(value)
        elif isinstance(value, (list, tuple)):
            cleaned[key] = [
                sanitize_mapping(item)
                if isinstance(item, Mapping)
                else sanitize_message(item)
                if isinstance(item, str)
                else item
                for item in value
            ]
        else:
            cleaned[key] = value
    return cleaned


_KEYWORDS: tuple[tuple[tuple[str, ...], ErrorType], ...] = (
    (("insufficient_quota", "quota"), ErrorType.INSUFFICIENT_QUOTA),
    (("model_overloaded", "overloaded"), ErrorType.MODEL_OVERLOADED),
    (("rate_limit", "rate limit", "too many requests"), ErrorType.RATE_LIMIT_EXCEEDED),
    (("invalid_request_error", "invalid request"), ErrorType.INVALID_REQUEST),
    (("timeout", "timed out"), ErrorType.TIMEOUT),
    (("fetch", "network", "connection"), ErrorType.FETCH_ERROR),
    (("validation",), ErrorType.VALIDATION_ERROR),
    (("authentication", "unauthorized", "invalid api key"), ErrorType.AUTHENTICATION_ERROR),
    (("authorization", "forbidden", "permission"), ErrorType.AUTHORIZATION_ERROR),
    (("service_unavailable", "unavailable", "circuit breaker"), ErrorType.SERVICE_UNAVAILABLE),
)

_STATUS_TYPES: dict[int, ErrorType] = {
    400: ErrorType.INVALID_REQUEST,
    401: ErrorType.AUTHENTICATION_ERROR,
    403: ErrorType.AUTHORIZATION_ERROR,
    408: ErrorType.TIMEOUT,
    429: ErrorType.RATE_LIMIT_EXCEEDED,
    503: ErrorType.SERVICE_UNAVAILABLE,
    504: ErrorType.TIMEOUT,
}


def classify_error(exc: BaseException) -> ErrorType:
    """Map an exception onto the fixed error taxonomy."""

    if isinstance(exc, (OperationTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorType.TIMEOUT
    if isinstance(exc, (ValidationFailure, ChunkValidationError)):
        return ErrorType.VALIDATION_ERROR
    if isinstance(exc, (CircuitOpenError, ProviderUnavailableError)):
        return ErrorType.SERVICE_UNAVAILABLE
    if isinstance(exc, httpx.TransportError):
        return ErrorType.FETCH_ERROR

    message = str(exc).lower()
    for keywords, error_type in _KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return error_type

    if isinstance(exc, ProviderError):
        mapped = _STATUS_TYPES.get(exc.status_code)
        if mapped is not None:
            return mapped
        if exc.status_code >= 500:
            return ErrorType.SERVICE_UNAVAILABLE
    return ErrorType.INTERNAL_SERVER_ERROR


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ErrorReporter:
    """Build sanitized client-facing error payloads and keep error statistics."""

    def __init__(self, *, include_stack: bool = False) -> None:
        self._include_stack = include_stack
        self._lock = threading.Lock()
        self._counts: dict[str, int] = {}
        self._last_seen: dict[str, float] = {}

    def create_error_response(
        self,
        exc: BaseException,
        *,
        context: str = "",
        request_id: Optional[str] = None,
        user_id: Optional[str] = None,
        error_type: Optional[ErrorType] = None,
    ) -> dict[str, Any]:
        """Log ``exc`` at full (sanitized) fidelity and return a safe payload."""

        resolved = error_type or classify_error(exc)
        descriptor = ERROR_DESCRIPTORS[resolved]
        self._track(resolved)

        log_message = sanitize_message(f"{type(exc).__name__}: {exc}")
        logger.error(
            "Error in %s [%s] request=%s user=%s: %s",
            context or "request",
            resolved.value,
            request_id or "-",
            "present" if user_id else "-",
            log_message,
            exc_info=exc if self._include_stack else None,
        )

        return ErrorPayload(
            error=descriptor.message,
            error_type=resolved.value,
            error_code=descriptor.code,
            retryable=descriptor.retryable,
            timestamp=_timestamp(),
            request_id=request_id,
        ).model_dump(by_alias=True)

    def status_code_for(self, exc: BaseException) -> int:
        return ERROR_DESCRIPTORS[classify_error(exc)].status_code

    def _track(self, error_type: ErrorType) -> None:
        with self._lock:
            self._counts[error_type.value] = self._counts.get(error_type.value, 0) + 1
            self._last_seen[error_type.value] = time.time()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "totalErrors": sum(self._counts.values()),
                "errorsByType": dict(self._counts),
                "lastErrorTimes": {
                    key: datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
                    for key, value in self._last_seen.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._last_seen.clear()


__all__ = [
    "ChunkValidationError",
    "CircuitOpenError",
    "ERROR_DESCRIPTORS",
    "ErrorDescriptor",
    "ErrorReporter",
    "ErrorType",
    "NarrationError",
    "OperationTimeoutError",
    "ProviderError",
    "ProviderUnavailableError",
    "UnsupportedOperationError",
    "ValidationFailure",
    "classify_error",
    "sanitize_mapping",
    "sanitize_message",
    "strip_stack_trace",
]
