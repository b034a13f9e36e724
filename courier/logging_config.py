"""Logging setup for the Courier gateway.

Records are written one JSON object per line. Structured fields travel in
`extra={"context": {...}}`; credential-like keys in that context are masked
before they reach the output.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "courier"
REDACTED = "***"
SENSITIVE_KEYS = frozenset({"apikey", "api_key", "x-api-key", "x_api_key", "admin_token", "x-admin-token", "token"})

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def redact(value: Any) -> Any:
    """Mask credential values in nested dicts/lists."""
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS and item else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = redact(context)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for local runs: `LEVEL logger: message key=value ...`."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname:<7} {record.name}: {record.getMessage()}"
        context = getattr(record, "context", None)
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in redact(context).items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(TextFormatter() if fmt == "text" else JSONFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{SERVICE_NAME}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Binds fields (worker index, job id) into every record's context.

    Per-call fields from `extra={"context": ...}` win over bound ones.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        call_context = extra.get("context") or {}
        if self.extra or call_context:
            extra["context"] = {**self.extra, **call_context}
            kwargs["extra"] = extra
        return msg, kwargs
