"""Logging for the collector and the aggregation pipeline.

Everything logs under the ``loadlens`` hierarchy. Collector flushes log at
INFO (DEBUG when the collector is silent); aggregation logs one summary line
per run plus the first few parse errors. Set ``LOADLENS_LOG_FORMAT=json`` when
the logs of a CI load test are shipped somewhere that wants one object per line.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import orjson

from .exceptions import LoadlensError

LOG_LEVEL_ENV = "LOADLENS_LOG_LEVEL"
LOG_FORMAT_ENV = "LOADLENS_LOG_FORMAT"  # "json" | "text" (default)

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Child of the ``loadlens`` logger; the first call attaches the stderr handler."""
    logger = logging.getLogger("loadlens" if name == "loadlens" else f"loadlens.{name}")
    _ensure_handler()
    return logger


def _ensure_handler() -> None:
    root = logging.getLogger("loadlens")
    if root.handlers:
        return
    level_name = (os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    handler = logging.StreamHandler(sys.stderr)
    if (os.environ.get(LOG_FORMAT_ENV) or "text").lower() == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line. A logged LoadlensError contributes its context dict."""

    def format(self, record: logging.LogRecord) -> str:
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
            error = record.exc_info[1]
            if isinstance(error, LoadlensError) and error.context:
                obj["context"] = {k: str(v) for k, v in error.context.items()}
        return orjson.dumps(obj).decode("utf-8")
