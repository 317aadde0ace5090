"""Logging configuration with redaction, request context and statistics."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import sanitize_mapping, sanitize_message, strip_stack_trace

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s %(request_id)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

security_logger = logging.getLogger("narrator.security")


class SanitizingFilter(logging.Filter):
    """Redact secrets from every record and attach the current request id."""

    def __init__(self, *, trim_stack: bool = False) -> None:
        super().__init__()
        self._trim_stack = trim_stack

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = sanitize_message(message)
        record.args = None
        if self._trim_stack and record.exc_info:
            record.exc_text = strip_stack_trace(
                logging.Formatter().formatException(record.exc_info)
            )
            record.exc_info = None
        request_id = request_id_var.get()
        record.request_id = f"[{request_id}]" if request_id else ""
        record.user_present = user_id_var.get() is not None
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, used outside development."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            payload["requestId"] = request_id
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            payload["context"] = sanitize_mapping(context)
        if record.exc_text:
            payload["error"] = record.exc_text
        return json.dumps(payload, ensure_ascii=False, default=str)


class LogStatsHandler(logging.Handler):
    """Keep per-level counts and a bounded buffer of recent sanitized records."""

    def __init__(self, capacity: int = 1000) -> None:
        super().__init__(level=logging.DEBUG)
        self._buffer: deque[dict[str, Any]] = deque(maxlen=capacity)
        self._counts: dict[str, int] = {}
        self._stats_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        entry = {
            "timestamp": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "requestId": request_id_var.get(),
        }
        with self._stats_lock:
            self._buffer.append(entry)
            self._counts[record.levelname] = self._counts.get(record.levelname, 0) + 1

    def stats(self) -> dict[str, Any]:
        with self._stats_lock:
            return {
                "totalLogs": sum(self._counts.values()),
                "bufferedLogs": len(self._buffer),
                "logsByLevel": dict(self._counts),
            }

    def recent(self, limit: int = 50, level: Optional[str] = None) -> list[dict[str, Any]]:
        with self._stats_lock:
            entries = list(self._buffer)
        if level:
            entries = [entry for entry in entries if entry["level"] == level.upper()]
        return entries[-limit:]

    def clear(self) -> None:
        with self._stats_lock:
            self._buffer.clear()
            self._counts.clear()


_stats_handler = LogStatsHandler()


def get_log_stats_handler() -> LogStatsHandler:
    return _stats_handler


def configure_logging(
    level: str = "INFO",
    *,
    log_file: Optional[Path] = None,
    json_output: bool = False,
) -> None:
    """Configure root logging for the service."""

    log_level = getattr(logging, level.upper(), logging.INFO)
    redactor = SanitizingFilter(trim_stack=json_output)

    formatter: logging.Formatter
    if json_output:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)

    handlers: list[logging.Handler] = []

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    # Always add console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)
    handlers.append(_stats_handler)

    for handler in handlers:
        handler.addFilter(redactor)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("narrator").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # httpx logs full request URLs, including query-string keys, at INFO
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)


@contextmanager
def request_context(request_id: str, user_id: Optional[str] = None) -> Iterator[None]:
    """Bind ``request_id``/``user_id`` to every record logged inside the block."""

    request_token = request_id_var.set(request_id)
    user_token = user_id_var.set(user_id)
    try:
        yield
    finally:
        request_id_var.reset(request_token)
        user_id_var.reset(user_token)


@contextmanager
def request_timer(
    operation: str, logger: Optional[logging.Logger] = None
) -> Iterator[dict[str, float]]:
    """Log how long the wrapped block took; the yielded dict gets ``duration_ms``."""

    target = logger or logging.getLogger("narrator")
    timing: dict[str, float] = {}
    started = time.perf_counter()
    try:
        yield timing
    finally:
        timing["duration_ms"] = (time.perf_counter() - started) * 1000
        target.info("%s completed in %.0fms", operation, timing["duration_ms"])


def log_security_event(event: str, **details: Any) -> None:
    """Record a security-relevant event (rate limit hit, rejected payload)."""

    context = sanitize_mapping(details)
    security_logger.warning(
        "Security event: %s %s",
        event,
        json.dumps(context, ensure_ascii=False, default=str),
        extra={"context": context},
    )


__all__ = [
    "JsonFormatter",
    "LogStatsHandler",
    "SanitizingFilter",
    "configure_logging",
    "get_log_stats_handler",
    "log_security_event",
    "request_context",
    "request_id_var",
    "request_timer",
    "user_id_var",
]
