"""
Storymap logging.

Log records carry the ids a build is traced by (request, project, run,
assignment, card). Services pass them with ``extra=``; the API binds the
request id for the whole request through ``log_context``. JSON output masks
secret-looking keys and strips credentials from any URL in a string value,
since clone URLs carry the GitHub token while git runs.
"""

import json
import logging
import os
import re
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

TRACE_FIELDS = ("request_id", "project_id", "run_id", "assignment_id", "card_id")

TEXT_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(message)s "
    "req=%(request_id)s project=%(project_id)s run=%(run_id)s "
    "assignment=%(assignment_id)s card=%(card_id)s"
)

# Standard exit codes for CLIs
EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2

_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"asctime", "message"}

_SECRET_MARKERS = ("token", "secret", "password", "api_key", "authorization", "credential")
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/\s@]+@", re.IGNORECASE)
MASK = "[REDACTED]"

_context: ContextVar[Dict[str, Any]] = ContextVar("storymap_log_context", default={})


def strip_url_credentials(text: str) -> str:
    """``https://tok@github.com/u/r`` becomes ``https://github.com/u/r`` wherever it appears."""
    return _URL_CREDENTIALS.sub(r"\g<scheme>", text)


def scrub(key: str, value: Any) -> Any:
    if any(marker in key.lower() for marker in _SECRET_MARKERS):
        return MASK
    if isinstance(value, str):
        return strip_url_credentials(value)
    if isinstance(value, dict):
        return {k: scrub(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [scrub(key, v) for v in value]
    return value


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` to every record logged inside the block."""
    merged = {**_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


class RequestIdFilter(logging.Filter):
    """Copy the bound log context onto records and default missing trace fields to ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if key not in _RECORD_ATTRS and not hasattr(record, key):
                setattr(record, key, value)
        for key in TRACE_FIELDS:
            if not hasattr(record, key):
                setattr(record, key, "-")
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: level, logger, event name, trace fields and extras."""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in data:
                data[key] = value
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps({k: scrub(k, v) for k, v in data.items()}, default=str)


def setup_logging(level: Optional[str] = None, json_output: bool = False) -> logging.Logger:
    """
    Install a single stderr handler on the root logger.

    ``level`` falls back to STORYMAP_LOG_LEVEL, then INFO.
    """
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    resolved = (level or os.environ.get("STORYMAP_LOG_LEVEL") or "INFO").upper()
    root.setLevel(getattr(logging, resolved, logging.INFO))
    return logging.getLogger("storymap")


def get_logger(name: str = "storymap") -> logging.Logger:
    return logging.getLogger(name)


def log_extra(**fields: Any) -> Dict[str, Any]:
    """
    ``extra=`` mapping without None values, so unset trace fields keep the filter default.

    Example:
        logger.info("run_created", extra=log_extra(project_id=pid, run_id=run.id))
    """
    return {k: v for k, v in fields.items() if v is not None}
