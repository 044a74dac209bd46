"""JSON logging configuration for Byfrost API."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class JSONFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Install the JSON handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"byfrost.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Bind a fixed context (tenant, correlation id) to every record.

    Per-call context, passed as ``context=...`` or ``extra={"context": ...}``,
    is merged over the bound one.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra") or {}
        context = {
            **(self.extra or {}),
            **(extra.get("context") or {}),
            **(kwargs.pop("context", None) or {}),
        }
        if context:
            kwargs["extra"] = {**extra, "context": context}
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> LoggerAdapter:
    return LoggerAdapter(get_logger(name), {k: v for k, v in context.items() if v is not None})
