"""Buffered asyncio metric collector persisting to a JMeter-compatible CSV log.

Concurrency model (single event loop):
- record_metric appends to an in-memory list; it suspends only when a flush runs
- flush swaps the buffer for an empty one before any I/O, so records arriving
  during a write land in the next batch
- at most one persist is in flight: the task handle lives in a single slot and
  concurrent flush() callers await that same task
- blocking file operations run through asyncio.to_thread
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import signal
import time
from pathlib import Path

from tdigest import TDigest

from .config import MAX_BUFFER_SIZE, migrate_legacy_config, validate_collector_config
from .exceptions import (
    LoadlensError,
    LoadlensResourceLimitError,
    LoadlensValidationError,
    LoadlensWriteError,
)
from .logging_config import get_logger
from .models import (
    CollectorConfig,
    CollectorStats,
    CsvSchema,
    LegacyCollectorConfig,
    MetricEvent,
    PersistedRecord,
)
from .parser import (
    format_number,
    parse_float_safe,
    parse_int_safe,
    quote_field,
    sanitize_string,
    serialize_record,
)

logger = get_logger("collector")

JMETER_HEADER = "timestamp,elapsed,label,responseCode,success,bytes,sentBytes,grpThreads,allThreads,Filename"
COMPACT_HEADER = "timestamp,responseTime,endpoint,statusCode,success,method,testName"
# Length of the truncated hex digest kept as the integrity hash
INTEGRITY_HASH_LENGTH = 16
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def header_for(schema: CsvSchema) -> str:
    return JMETER_HEADER if schema is CsvSchema.JMETER else COMPACT_HEADER


def to_record(event: MetricEvent) -> PersistedRecord:
    """Project a normalized event onto the durable row shape."""
    return PersistedRecord(
        timestamp=event.timestamp or 0,
        elapsed=event.response_time,
        label=event.endpoint,
        response_code=event.status_code,
        success=bool(event.success),
        bytes=event.bytes,
        sent_bytes=event.sent_bytes,
        grp_threads=event.grp_threads,
        all_threads=event.all_threads,
        filename=event.test_name or "",
    )


def format_row(event: MetricEvent, schema: CsvSchema) -> str:
    """Serialize one normalized event as a CSV row for the given schema."""
    if schema is CsvSchema.JMETER:
        return serialize_record(to_record(event))
    return ",".join((
        format_number(event.timestamp or 0),
        format_number(event.response_time),
        quote_field(event.endpoint),
        str(event.status_code),
        "true" if event.success else "false",
        quote_field(event.method),
        quote_field(event.test_name or ""),
    ))


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_event(event: MetricEvent) -> None:
    rt = event.response_time
    if not _is_number(rt) or not math.isfinite(rt) or rt < 0:
        raise LoadlensValidationError(f"Invalid response time: {rt!r}", context={"endpoint": event.endpoint})
    code = event.status_code
    if not isinstance(code, int) or isinstance(code, bool) or not 100 <= code <= 599:
        raise LoadlensValidationError(f"Invalid status code: {code!r}", context={"endpoint": event.endpoint})


class MetricCollector:
    """
    Collects MetricEvents in memory and appends them to a CSV log in batches.

    Lifecycle is owned by the caller: use ``async with`` or call start()/close().
    Shutdown signal handlers are only installed through install_shutdown_handlers().
    """

    __slots__ = (
        "_config", "_output_path", "_schema", "_buffer", "_pending_flush", "_flush_task",
        "_closed", "_total_collected", "_total_flushed", "_flush_count", "_error_count",
        "_start_time", "_last_flush_time", "_integrity_hash", "_digest", "_signal_loop",
    )

    def __init__(self, config: CollectorConfig) -> None:
        validate_collector_config(config)
        if config.buffer_size > MAX_BUFFER_SIZE:
            logger.warning("Buffer size %d clamped to %d", config.buffer_size, MAX_BUFFER_SIZE)
            config.buffer_size = MAX_BUFFER_SIZE
        self._config = config
        self._output_path = Path(config.output_path)
        self._schema = config.schema
        self._buffer: list[MetricEvent] = []
        # Single slot: the one persist task in flight, if any
        self._pending_flush: asyncio.Task[int] | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._closed = False
        self._total_collected = 0
        self._total_flushed = 0
        self._flush_count = 0
        self._error_count = 0
        self._start_time = time.time()
        self._last_flush_time: float | None = None
        self._integrity_hash = ""
        self._digest = TDigest()
        self._signal_loop: asyncio.AbstractEventLoop | None = None

    @property
    def output_path(self) -> Path:
        return self._output_path

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "MetricCollector":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def start(self) -> None:
        """Start the periodic flush task on the running loop. No-op if disabled or started."""
        if self._closed or self._flush_task is not None or self._config.flush_interval_ms <= 0:
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._periodic_flush())

    async def _periodic_flush(self) -> None:
        interval = self._config.flush_interval_ms / 1000.0
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                await self.flush()
            except LoadlensWriteError as e:
                # Already counted and handed to on_error by flush()
                logger.debug("Periodic flush failed: %s", e)

    async def record_metric(self, event: MetricEvent) -> None:
        """Validate, normalize and buffer one event. Never raises for bad input."""
        if self._closed:
            logger.warning("Cannot record metric: collector has been closed")
            return
        try:
            _validate_event(event)
        except LoadlensValidationError as e:
            self._report_error(e)
            logger.warning("Rejected metric: %s", e)
            return

        self.start()

        if len(self._buffer) >= self._config.max_buffered:
            logger.warning(
                "Maximum buffered metrics reached (%d), forcing flush", self._config.max_buffered
            )
            try:
                # A flush already in flight may leave the buffer full; loop until it drains
                while len(self._buffer) >= self._config.max_buffered:
                    await self.flush()
            except LoadlensWriteError as e:
                self._report_error(
                    LoadlensResourceLimitError(
                        "Forced flush at buffer cap failed; metric dropped",
                        context={"max_buffered": self._config.max_buffered},
                        original_error=e,
                    ),
                    counted=False,
                )
                return

        normalized = self._normalize(event)
        self._update_integrity_hash(normalized)
        self._buffer.append(normalized)
        self._total_collected += 1
        self._digest.update(normalized.response_time)

        if len(self._buffer) >= self._config.buffer_size:
            try:
                await self.flush()
            except LoadlensWriteError as e:
                logger.debug("Threshold flush failed: %s", e)

    def _normalize(self, event: MetricEvent) -> MetricEvent:
        status = event.status_code
        return MetricEvent(
            endpoint=sanitize_string(event.endpoint or "unknown"),
            response_time=parse_float_safe(event.response_time),
            status_code=status,
            method=sanitize_string(event.method or "GET"),
            timestamp=event.timestamp if event.timestamp else int(time.time() * 1000),
            success=event.success if event.success is not None else status < 400,
            test_name=sanitize_string(event.test_name or self._config.test_name or "default"),
            bytes=parse_int_safe(event.bytes),
            sent_bytes=parse_int_safe(event.sent_bytes),
            grp_threads=max(1, parse_int_safe(event.grp_threads)),
            all_threads=max(1, parse_int_safe(event.all_threads)),
            custom_fields=dict(event.custom_fields),
        )

    def _update_integrity_hash(self, event: MetricEvent) -> None:
        payload = f"{event.timestamp}:{format_number(event.response_time)}:{event.status_code}"
        digest = hashlib.sha256((self._integrity_hash + payload).encode("utf-8")).hexdigest()
        self._integrity_hash = digest[:INTEGRITY_HASH_LENGTH]

    def _report_error(self, error: LoadlensError, counted: bool = True) -> None:
        if counted:
            self._error_count += 1
        callback = self._config.on_error
        if callback is None:
            return
        try:
            callback(error)
        except Exception:
            logger.exception("on_error callback raised")

    async def flush(self) -> int:
        """Persist buffered metrics. Returns the number of rows written.

        If a persist is already in flight, waits for it and returns its result
        instead of starting a second write.
        """
        pending = self._pending_flush
        if pending is not None:
            return await asyncio.shield(pending)
        if not self._buffer:
            return 0
        batch, self._buffer = self._buffer, []
        task = asyncio.get_running_loop().create_task(self._run_flush(batch))
        self._pending_flush = task
        return await asyncio.shield(task)

    async def _run_flush(self, batch: list[MetricEvent]) -> int:
        try:
            return await self._persist(batch)
        finally:
            self._pending_flush = None

    async def _persist(self, batch: list[MetricEvent]) -> int:
        path = self._output_path
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            exists = await asyncio.to_thread(path.exists)
            lines = [format_row(e, self._schema) for e in batch]
            if not exists:
                lines.insert(0, header_for(self._schema))
            await asyncio.to_thread(self._append, path, "\n".join(lines) + "\n")
        except OSError as e:
            error = LoadlensWriteError(
                f"Failed to write {len(batch)} metrics",
                context={"path": str(path)},
                original_error=e,
            )
            logger.error("Flush failed: %s", error)
            self._report_error(error)
            raise error from e

        count = len(batch)
        self._total_flushed += count
        self._flush_count += 1
        self._last_flush_time = time.time()
        log = logger.debug if self._config.silent else logger.info
        log("Flushed %d metrics to %s (total: %d)", count, path, self._total_flushed)
        if self._config.on_flush is not None:
            try:
                self._config.on_flush(count)
            except Exception:
                logger.exception("on_flush callback raised")
        return count

    @staticmethod
    def _append(path: Path, content: str) -> None:
        with path.open("a", encoding="utf-8", newline="") as f:
            f.write(content)

    def install_shutdown_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        """Close this collector on SIGINT/SIGTERM. Caller-owned; removed again by close().

        Returns False where the loop does not support signal handlers (e.g. Windows).
        """
        if self._closed or self._signal_loop is not None:
            return self._signal_loop is not None
        loop = loop or asyncio.get_running_loop()
        try:
            for sig in SHUTDOWN_SIGNALS:
                loop.add_signal_handler(sig, self._on_shutdown_signal)
        except (NotImplementedError, RuntimeError) as e:
            logger.debug("Signal handlers unavailable: %s", e)
            return False
        self._signal_loop = loop
        return True

    def _on_shutdown_signal(self) -> None:
        logger.info("Shutdown signal received, flushing metrics to %s", self._output_path)
        if self._signal_loop is not None:
            self._signal_loop.create_task(self.close())

    def _remove_shutdown_handlers(self) -> None:
        loop, self._signal_loop = self._signal_loop, None
        if loop is None:
            return
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    async def close(self) -> None:
        """Stop the timer, detach shutdown handlers and drain the buffer. Idempotent."""
        if self._closed:
            return
        self._closed = True
        task, self._flush_task = self._flush_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._remove_shutdown_handlers()
        # Drain: a persist may be in flight while new records wait in the buffer
        while self._pending_flush is not None or self._buffer:
            await self.flush()

    dispose = close

    def get_stats(self) -> CollectorStats:
        has_samples = self._total_collected > 0
        return CollectorStats(
            total_collected=self._total_collected,
            total_flushed=self._total_flushed,
            buffered=len(self._buffer),
            flush_count=self._flush_count,
            error_count=self._error_count,
            is_active=not self._closed,
            start_time=self._start_time,
            last_flush_time=self._last_flush_time,
            integrity_hash=self._integrity_hash,
            live_p50_ms=_digest_percentile(self._digest, 50) if has_samples else 0.0,
            live_p95_ms=_digest_percentile(self._digest, 95) if has_samples else 0.0,
            live_p99_ms=_digest_percentile(self._digest, 99) if has_samples else 0.0,
        )


def _digest_percentile(digest: TDigest, p: float) -> float:
    """Get percentile from T-Digest. Returns 0.0 if empty."""
    try:
        return digest.percentile(p) or 0.0
    except (ValueError, IndexError):
        return 0.0


def create_collector(config: CollectorConfig | LegacyCollectorConfig) -> MetricCollector:
    """Build a collector from either configuration variant."""
    if isinstance(config, LegacyCollectorConfig):
        config = migrate_legacy_config(config)
    return MetricCollector(config)
