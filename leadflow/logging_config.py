"""Structured JSON logging.

Every record is one JSON object on stdout. Structured fields go under
``context``: pass ``extra={"context": {...}}`` to a plain logger, or use
``bind_logger`` to carry tenant/lead/template ids through a whole turn.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # default=str: contexts carry datetimes and enums
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in list(root.handlers):
        root.removeHandler(existing)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(JSONFormatter())
    root.addHandler(stream)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"leadflow.{name}")


class ContextLogger(logging.LoggerAdapter):
    """Adapter whose calls accept ``context=`` on top of the bound fields."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        call_context: Optional[dict[str, Any]] = kwargs.pop("context", None)
        merged = {**self.extra, **(call_context or {})}
        if merged:
            kwargs["extra"] = {**kwargs.get("extra", {}), "context": merged}
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **context})


def bind_logger(name: str, **context: Any) -> ContextLogger:
    return ContextLogger(get_logger(name), context)
