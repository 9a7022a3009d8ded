"""
Structured JSON logging for the AI Teacher service.

Every record is one JSON object. Records emitted while an HTTP request is being
served carry its request_id; teaching-cycle records add user_id, action and
session_id through `log_with_context`.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from aiteacher.shared.config import settings

SERVICE_NAME = "aiteacher"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# LogRecord attributes that are not user-supplied context
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}
_CONTEXT_FIELDS = ("request_id", "user_id", "session_id", "action")

# Chatty third-party loggers
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "uvicorn.access")


class RequestContextFilter(logging.Filter):
    """Stamps the current request id onto records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            request_id = request_id_var.get()
            if request_id:
                record.request_id = request_id
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter: fixed envelope, context fields, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in entry:
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(log_level: Optional[str] = None, log_file: Optional[Path] = None) -> logging.Logger:
    """
    Configure the root logger with JSON output to stdout and, if set, a file.

    Safe to call again: previous handlers are replaced.
    """
    log_level = (log_level or settings.log_level).upper()
    log_file = log_file or settings.log_file

    formatter = StructuredFormatter()
    context_filter = RequestContextFilter()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    session_id: Optional[str] = None,
    **fields,
):
    """Log `message` with teaching-cycle context; None-valued fields are dropped."""
    extra = {k: v for k, v in fields.items() if v is not None}
    if user_id:
        extra["user_id"] = user_id
    if action:
        extra["action"] = action
    if session_id:
        extra["session_id"] = session_id
    logger.log(level, message, extra=extra)


setup_logging()
