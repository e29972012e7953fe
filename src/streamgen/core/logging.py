"""Structured logging with correlation IDs for pipeline runs.

A pipeline run (one generation plus its item fan-out) shares a correlation ID
through a ContextVar so log lines from concurrent workers can be grouped.
Extra fields passed to the structured logger are sanitized before they are
emitted so provider credentials never reach the log stream.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from streamgen.core.config import get_settings
from streamgen.core.security_config import is_sensitive_key


# Correlation ID shared across async tasks spawned from the same run
_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

logger = logging.getLogger(__name__)


def get_correlation_id() -> str:
    """Get or create a correlation ID for the current run."""
    correlation_id: str | None = _correlation_id_var.get()
    if correlation_id is None or correlation_id == "":
        new_id = str(uuid.uuid4())
        _correlation_id_var.set(new_id)
        return new_id
    return correlation_id


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID for the current context."""
    _correlation_id_var.set(correlation_id)


class StructuredLogger:
    """Structured logger that includes correlation IDs and sanitized data."""

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)

    def _log_with_context(
        self,
        level: int,
        message: str,
        extra_data: dict[str, Any] | None = None,
        exc_info: bool = False,
    ) -> None:
        correlation_id = get_correlation_id()
        sanitized_data = self._sanitize_data(extra_data or {})

        log_data = {
            "correlation_id": correlation_id,
            "message": message,
            **sanitized_data,
        }

        if get_settings().ENVIRONMENT == "production":
            # JsonFormatter merges `extra` into the emitted object
            self.logger.log(
                level,
                message,
                extra={"structured_data": log_data},
                exc_info=exc_info,
            )
        else:
            self.logger.log(
                level,
                f"[{correlation_id}] {message}",
                extra={"structured_data": log_data},
                exc_info=exc_info,
            )

    def _sanitize_data(self, data: dict[str, Any]) -> dict[str, Any]:
        """Remove or mask sensitive data from log entries."""
        if not isinstance(data, dict) or not data:
            return {}

        header_redaction = self._redact_header_like(data)
        if header_redaction is not None:
            return header_redaction

        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            if is_sensitive_key(key):
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = self._sanitize_value(value)
        return sanitized

    def _sanitize_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return self._sanitize_data(value)
        if isinstance(value, (list, tuple)):
            return [self._sanitize_value(item) for item in value]
        return value

    def _redact_header_like(self, data: dict[str, Any]) -> dict[str, Any] | None:
        """Redact `{"name": ..., "value": ...}` pairs whose name is sensitive.

        Returns None when `data` is not header-like or its name is harmless.
        """
        if "value" not in data or not ("name" in data or "key" in data):
            return None

        header_name = data.get("name") or data.get("key")
        if not isinstance(header_name, str) or not is_sensitive_key(header_name):
            return None

        redacted: dict[str, Any] = {}
        for sub_k, sub_v in data.items():
            if sub_k.lower() in {"value", "val", "v"}:
                redacted[sub_k] = "[REDACTED]"
            elif isinstance(sub_v, dict):
                redacted[sub_k] = self._sanitize_data(sub_v)
            else:
                redacted[sub_k] = "[REDACTED]" if is_sensitive_key(sub_k) else sub_v
        return redacted

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log_with_context(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log_with_context(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log_with_context(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log_with_context(logging.ERROR, message, kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log at ERROR level with the active traceback attached."""
        self._log_with_context(logging.ERROR, message, kwargs, exc_info=True)


structured_logger = StructuredLogger("streamgen")


def _resolve_level(level_name: str | None, environment: str) -> int:
    if level_name:
        level = logging.getLevelName(level_name.upper())
        if isinstance(level, int):
            return level
        logger.warning("Unknown LOG_LEVEL %r; falling back to defaults", level_name)
    return logging.DEBUG if environment == "development" else logging.INFO


def setup_logging() -> None:
    """Configure root logging once: JSON in production, plain text elsewhere."""
    settings = get_settings()
    log_level = _resolve_level(settings.LOG_LEVEL, settings.ENVIRONMENT)
    root_logger = logging.getLogger()

    # Idempotent: host applications may already own the root handlers
    if root_logger.handlers:
        return

    formatter: logging.Formatter
    if settings.ENVIRONMENT == "production":
        formatter = JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(log_level)

    root_logger.setLevel(log_level)
    root_logger.addHandler(handler)

    if settings.ENVIRONMENT == "production":
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
