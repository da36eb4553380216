"""Aggregation pipeline: stream JMeter-compatible logs into report statistics.

Files are read off-loop in batches of YIELD_EVERY_LINES lines, so a long
aggregation never starves other tasks on the loop. Records
are capped by a memory budget; past it, ingestion stops with a warning.
"""

from __future__ import annotations

import asyncio
import itertools
import math
import time
from collections.abc import Iterator
from pathlib import Path
from typing import TextIO

from .comparison import BuildComparisonStore, apply_deltas, default_snapshot_path
from .config import validate_aggregation_config, validate_output_path
from .exceptions import LoadlensAggregationError, LoadlensError, LoadlensWriteError
from .export import write_ci_summary, write_junit_xml, write_report_data, write_trend_data
from .logging_config import get_logger
from .models import (
    AggregationConfig,
    AggregationResult,
    ApdexData,
    EndpointStats,
    ErrorInfo,
    Percentiles,
    PersistedRecord,
    ProcessingStats,
    Summary,
    TimeSeriesPoint,
)
from .parser import parse_line
from .statistics import apdex, mean, percentile, stddev

logger = get_logger("pipeline")

# Estimated in-memory footprint of one parsed record
BYTES_PER_RECORD = 256
LARGE_FILE_BYTES = 500 * 1024 * 1024
YIELD_EVERY_LINES = 256
HEADER_PREFIX = "timestamp,"
# Target number of time-series buckets across the run
TIME_SERIES_BUCKETS = 100
MAX_KEPT_DIAGNOSTICS = 100
MAX_LOGGED_ERRORS = 10

HTTP_STATUS_TEXT = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}


def status_text(code: int) -> str:
    return HTTP_STATUS_TEXT.get(code, f"HTTP {code}")


def max_records_for(max_memory_usage_mb: float) -> int:
    """Record budget for a memory budget in MiB (at least one record)."""
    return max(1, int(max_memory_usage_mb * 1024 * 1024) // BYTES_PER_RECORD)


class EndpointGroups:
    """Records grouped by label, in first-seen label order.

    Groups live in a flat list; the dict only maps a label to its index.
    """

    __slots__ = ("_labels", "_records", "_index")

    def __init__(self) -> None:
        self._labels: list[str] = []
        self._records: list[list[PersistedRecord]] = []
        self._index: dict[str, int] = {}

    def add(self, record: PersistedRecord) -> None:
        idx = self._index.get(record.label)
        if idx is None:
            idx = len(self._labels)
            self._index[record.label] = idx
            self._labels.append(record.label)
            self._records.append([])
        self._records[idx].append(record)

    def get(self, label: str) -> list[PersistedRecord] | None:
        idx = self._index.get(label)
        return None if idx is None else self._records[idx]

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self) -> Iterator[tuple[str, list[PersistedRecord]]]:
        return iter(zip(self._labels, self._records))


class _Ingestion:
    """Mutable state shared across all source files of one run."""

    __slots__ = ("records", "warnings", "stats", "diagnostics", "max_records", "now_ms")

    def __init__(self, max_records: int) -> None:
        self.records: list[PersistedRecord] = []
        self.warnings: list[str] = []
        self.stats = ProcessingStats()
        self.diagnostics: list[str] = []
        self.max_records = max_records
        self.now_ms = int(time.time() * 1000)

    def note_error(self, message: str) -> None:
        self.stats.parse_errors += 1
        if len(self.diagnostics) < MAX_KEPT_DIAGNOSTICS:
            self.diagnostics.append(message)
        if self.stats.parse_errors <= MAX_LOGGED_ERRORS:
            logger.debug("Parse error: %s", message)


def _read_batch(f: TextIO) -> list[str]:
    return list(itertools.islice(f, YIELD_EVERY_LINES))


async def _ingest_file(path: Path, ingestion: _Ingestion, skip_validation: bool) -> None:
    try:
        size = (await asyncio.to_thread(path.stat)).st_size
        if size > LARGE_FILE_BYTES:
            ingestion.warnings.append(f"Large file detected: {path} ({size / 1024 / 1024:.1f}MB)")
        accepted = 0
        line_number = 0
        f = await asyncio.to_thread(path.open, "r", encoding="utf-8", errors="replace", newline="")
        try:
            while True:
                batch = await asyncio.to_thread(_read_batch, f)
                if not batch:
                    break
                for line in batch:
                    line_number += 1
                    line = line.rstrip("\r\n")
                    if line_number == 1 and line.lstrip("\ufeff").startswith(HEADER_PREFIX):
                        continue
                    if not line.strip():
                        continue
                    if len(ingestion.records) >= ingestion.max_records:
                        ingestion.stats.truncated = True
                        ingestion.warnings.append(
                            f"Memory limit reached. Processed {len(ingestion.records)} records, "
                            "truncating remaining data."
                        )
                        logger.warning("Record budget of %d reached; truncating input", ingestion.max_records)
                        return
                    result = parse_line(line, line_number, now_ms=ingestion.now_ms)
                    for error in result.errors:
                        ingestion.note_error(f"{path.name}: {error}")
                    if not skip_validation:
                        ingestion.stats.parse_warnings += len(result.warnings)
                    if result.record is None:
                        ingestion.stats.records_skipped += 1
                        continue
                    ingestion.records.append(result.record)
                    accepted += 1
        finally:
            await asyncio.to_thread(f.close)
    except OSError as e:
        logger.warning("Could not process CSV file %s: %s", path, e)
        ingestion.warnings.append(f"Could not process CSV file {path}: {e}")
        return
    if accepted == 0:
        ingestion.warnings.append(f"No valid records found in {path}")


async def load_records(config: AggregationConfig) -> _Ingestion:
    """Stream every source into one record list, honouring the record budget."""
    ingestion = _Ingestion(max_records_for(config.max_memory_usage_mb))
    for source in config.sources:
        if ingestion.stats.truncated:
            break
        logger.debug("Reading %s", source)
        await _ingest_file(source, ingestion, config.skip_validation)
    ingestion.stats.records_processed = len(ingestion.records)
    if ingestion.stats.parse_errors:
        ingestion.warnings.append(f"{ingestion.stats.parse_errors} parsing errors encountered")
    if ingestion.stats.parse_warnings and not config.skip_validation:
        ingestion.warnings.append(f"{ingestion.stats.parse_warnings} parsing warnings")
    return ingestion


def _endpoint_stats(
    label: str,
    records: list[PersistedRecord],
    duration_seconds: float,
    apdex_threshold_ms: float,
    include_apdex: bool,
) -> tuple[EndpointStats, ApdexData]:
    times = sorted(r.elapsed for r in records)
    n = len(times)
    avg = mean(times)
    failures = sum(1 for r in records if not r.success)
    total_bytes = sum(r.bytes for r in records)
    apdex_data = apdex(times, apdex_threshold_ms, label)
    stats = EndpointStats(
        label=label,
        samples=n,
        average=avg,
        median=percentile(times, 50, presorted=True),
        p90=percentile(times, 90, presorted=True),
        p95=percentile(times, 95, presorted=True),
        p99=percentile(times, 99, presorted=True),
        min=times[0],
        max=times[-1],
        std_dev=stddev(times, avg),
        error_rate=failures / n,
        throughput=n / max(duration_seconds, 1),
        received_kb=total_bytes / 1024,
        avg_bytes=total_bytes / n,
        apdex_score=apdex_data.score if include_apdex else None,
    )
    return stats, apdex_data


def _time_series(records: list[PersistedRecord], start: int, duration_seconds: float) -> list[TimeSeriesPoint]:
    """Fixed-width buckets; only non-empty buckets are emitted."""
    interval_seconds = max(math.floor(duration_seconds / TIME_SERIES_BUCKETS), 1)
    interval_ms = interval_seconds * 1000
    # bucket index -> [elapsed sum, count, failures, peak threads]
    buckets: dict[int, list[float]] = {}
    for r in records:
        idx = (r.timestamp - start) // interval_ms
        bucket = buckets.get(idx)
        if bucket is None:
            buckets[idx] = [r.elapsed, 1, 0 if r.success else 1, r.all_threads]
            continue
        bucket[0] += r.elapsed
        bucket[1] += 1
        if not r.success:
            bucket[2] += 1
        if r.all_threads > bucket[3]:
            bucket[3] = r.all_threads
    points = []
    for idx in sorted(buckets):
        total, count, failures, threads = buckets[idx]
        points.append(
            TimeSeriesPoint(
                timestamp=start + idx * interval_ms,
                response_time=total / count,
                throughput=count / interval_seconds,
                error_rate=failures / count,
                active_threads=int(threads),
            )
        )
    return points


def _error_summary(records: list[PersistedRecord]) -> list[ErrorInfo]:
    counts: dict[int, int] = {}
    for r in records:
        if not r.success:
            counts[r.response_code] = counts.get(r.response_code, 0) + 1
    total = len(records)
    # sorted() is stable, so ties keep first-seen order
    ordered = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [
        ErrorInfo(
            response_code=code,
            count=count,
            percentage=count / total * 100,
            message=status_text(code),
        )
        for code, count in ordered
    ]


def compute_result(records: list[PersistedRecord], config: AggregationConfig) -> AggregationResult:
    """Derive summary, per-endpoint stats, time series and error summary from parsed records."""
    if not records:
        raise LoadlensAggregationError("No valid records to aggregate")
    start = min(r.timestamp for r in records)
    end = max(r.timestamp for r in records)
    duration_seconds = (end - start) / 1000

    groups = EndpointGroups()
    for r in records:
        groups.add(r)

    endpoint_stats: list[EndpointStats] = []
    apdex_data: list[ApdexData] = []
    for label, group in groups:
        stats, apdex_entry = _endpoint_stats(
            label, group, duration_seconds, config.apdex_threshold_ms, config.include_apdex
        )
        endpoint_stats.append(stats)
        apdex_data.append(apdex_entry)

    all_times = sorted(r.elapsed for r in records)
    failures = sum(1 for r in records if not r.success)
    total = len(records)
    summary = Summary(
        total_requests=total,
        average_response_time=mean(all_times),
        error_rate=failures / total,
        throughput=total / max(duration_seconds, 1),
        failed_requests=failures,
        test_duration_seconds=duration_seconds,
        start_timestamp=start,
        end_timestamp=end,
    )
    if config.include_percentiles:
        summary.percentiles = Percentiles(
            p50=percentile(all_times, 50, presorted=True),
            p90=percentile(all_times, 90, presorted=True),
            p95=percentile(all_times, 95, presorted=True),
            p99=percentile(all_times, 99, presorted=True),
        )
    if config.include_apdex:
        summary.apdex_score = apdex(all_times, config.apdex_threshold_ms, "Overall").score

    return AggregationResult(
        summary=summary,
        endpoint_stats=endpoint_stats,
        time_series=_time_series(records, start, duration_seconds),
        error_summary=_error_summary(records),
        apdex_data=apdex_data if config.include_apdex else [],
    )


async def aggregate(config: AggregationConfig) -> AggregationResult:
    """Read all sources and compute statistics. No files are written.

    Raises:
        LoadlensConfigError: If the configuration is invalid
        LoadlensAggregationError: If no valid record was found across all sources
    """
    validate_aggregation_config(config)
    started = time.perf_counter()
    ingestion = await load_records(config)
    if not ingestion.records:
        raise LoadlensAggregationError(
            "No valid records found in any source",
            context={
                "sources": [str(s) for s in config.sources],
                "parse_errors": ingestion.stats.parse_errors,
                "warnings": ingestion.warnings,
            },
        )
    result = compute_result(ingestion.records, config)
    ingestion.stats.processing_time_ms = (time.perf_counter() - started) * 1000
    result.warnings = ingestion.warnings
    result.stats = ingestion.stats
    result.parse_errors = ingestion.diagnostics
    logger.info(
        "Aggregated %d records across %d endpoints (%d skipped) in %.0f ms",
        ingestion.stats.records_processed,
        len(result.endpoint_stats),
        ingestion.stats.records_skipped,
        ingestion.stats.processing_time_ms,
    )
    return result


async def run_aggregation(config: AggregationConfig) -> AggregationResult:
    """Full run: validate output dir, aggregate, compare with the previous build, write artifacts.

    The output directory must resolve inside the working directory; this is
    checked before any file is opened.
    """
    output_dir = validate_output_path(config.output_dir)
    validate_aggregation_config(config)
    try:
        await asyncio.to_thread(output_dir.mkdir, parents=True, exist_ok=True)
    except OSError as e:
        raise LoadlensWriteError(
            "Cannot create output directory",
            context={"path": str(output_dir)},
            original_error=e,
        ) from e

    result = await aggregate(config)

    store: BuildComparisonStore | None = None
    if config.compare_to_previous:
        store = BuildComparisonStore(
            default_snapshot_path(output_dir),
            read_path=config.comparison_snapshot_path,
            build_number=config.build_number,
        )
        result.previous_snapshot = await store.load_previous()
        result.endpoint_stats = apply_deltas(result.endpoint_stats, result.previous_snapshot)
        if result.previous_snapshot is not None:
            logger.info("Comparing against build %s", result.previous_snapshot.build_number)

    try:
        result.artifacts["report_data"] = await asyncio.to_thread(
            write_report_data, output_dir / "report-data.json", result
        )
        if config.ci_artifacts:
            result.artifacts["ci_summary"] = await asyncio.to_thread(write_ci_summary, output_dir, result.summary)
        if config.junit_xml:
            result.artifacts["junit"] = await asyncio.to_thread(
                write_junit_xml,
                output_dir / "performance-results.xml",
                result.endpoint_stats,
                config.thresholds,
            )
    except OSError as e:
        raise LoadlensWriteError(
            "Failed to write report artifacts",
            context={"output_dir": str(output_dir)},
            original_error=e,
        ) from e

    build_number = config.build_number or "1"
    if store is not None:
        try:
            result.snapshot = await store.save(result.endpoint_stats, result.summary, result.previous_snapshot)
            result.artifacts["snapshot"] = store.snapshot_path
            build_number = result.snapshot.build_number
        except LoadlensError as e:
            logger.warning("Could not save build comparison data: %s", e)
            result.warnings.append(f"Could not save build comparison data: {e}")
            build_number = store.resolve_build_number(result.previous_snapshot)

    if config.ci_artifacts:
        try:
            result.artifacts["ci_trend"] = await asyncio.to_thread(
                write_trend_data, output_dir, result.summary, result.previous_snapshot, build_number
            )
        except OSError as e:
            raise LoadlensWriteError(
                "Failed to write trend data",
                context={"output_dir": str(output_dir)},
                original_error=e,
            ) from e
    return result
