"""
Logging configuration for Miner Watch.

Supports two formats:
- ``text`` (default): human-readable log lines
- ``json``: one JSON object per line, including any structured fields
  passed through ``extra={"event": ..., ...}``

Settings via env vars:
- ``LOG_LEVEL``: DEBUG / INFO / WARNING / ERROR (default: INFO)
- ``LOG_FORMAT``: text / json (default: text)
"""

from __future__ import annotations

import json as json_mod
import logging
import sys
import uuid
from contextvars import ContextVar

from config import LOG_FORMAT, LOG_LEVEL

# Context var to hold a per-request correlation ID
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "request_id"}


def structured_fields(record: logging.LogRecord) -> dict:
    """Return the ``extra=`` fields attached to *record*."""
    return {
        k: v for k, v in vars(record).items()
        if k not in _RESERVED_ATTRS and not k.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": request_id_ctx.get("-"),
        }
        entry.update(structured_fields(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json_mod.dumps(entry, default=str)


def setup_logging() -> None:
    """Configure the root logger based on env settings."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if LOG_FORMAT == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s (%(request_id)s) %(message)s",
                defaults={"request_id": "-"},
            )
        )

    # request_id must exist on the record for both formats
    handler.addFilter(_RequestIdFilter())

    root.addHandler(handler)


class _RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get("-")  # type: ignore[attr-defined]
        return True


def generate_request_id() -> str:
    """Create a short unique request ID."""
    return uuid.uuid4().hex[:12]
