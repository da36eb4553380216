"""Errors raised by the collector, the aggregation pipeline and the config loaders.

Recording never raises: the collector hands validation and resource-limit
errors to ``on_error``. Flush failures and fatal aggregation problems are
raised. The CLI maps any LoadlensError to exit code 1.
"""

from __future__ import annotations

from typing import Any


class LoadlensError(Exception):
    """Base for every loadlens failure.

    ``context`` carries what was being processed (output path, buffer cap,
    source file) and ends up in the message and in JSON logs.
    ``original_error`` is the OS or parse error underneath, if any.
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        text = self.message
        if self.context:
            text += " [" + ", ".join(f"{k}={v!r}" for k, v in self.context.items()) + "]"
        if self.original_error is not None:
            text += f" (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return text

    def with_context(self, **kwargs: Any) -> "LoadlensError":
        self.context.update(kwargs)
        return self


class LoadlensConfigError(LoadlensError):
    """Raised when configuration is invalid or file cannot be loaded.

    Common causes:
    - Config file not found or invalid YAML
    - Output path escaping the working directory
    - Invalid field values (e.g., buffer_size < 1)
    """


class LoadlensValidationError(LoadlensError):
    """Raised (or reported) when a metric event or CSV row is malformed.

    Recording is fail-soft: the collector hands this to its error callback
    instead of raising it to the caller.
    """


class LoadlensWriteError(LoadlensError):
    """Raised when persisting a batch of metrics fails.

    The failed batch is not re-buffered; callers needing durability retry
    at a higher layer.
    """


class LoadlensResourceLimitError(LoadlensError):
    """Raised (or reported) when a buffer or memory cap cannot be honoured.

    Common causes:
    - Forced flush at the collector's hard buffer cap failed
    """


class LoadlensAggregationError(LoadlensError):
    """Raised when an aggregation run cannot produce any result.

    Common causes:
    - No input file yielded a single valid record
    """
