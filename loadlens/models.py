"""Data models for loadlens.

Optimized for large logs and hot recording paths:
- __slots__ on per-event / per-row classes to reduce memory and improve access speed
- Derived statistics as slotted dataclasses, recomputed wholesale each run
- Enums for schema and trend labels
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable


class CsvSchema(str, Enum):
    """Column layout of the persisted log."""

    JMETER = "jmeter"  # 10-column JMeter-compatible layout
    COMPACT = "compact"  # 7-column alternative layout


class PerformanceTrend(str, Enum):
    """Build-over-build classification of an endpoint's average response time."""

    IMPROVED = "improved"
    DEGRADED = "degraded"
    STABLE = "stable"


class MetricEvent:
    """A single measurement handed to the collector at the point of measurement.

    Transient: normalized into a CSV row on flush, never persisted as-is.
    """

    __slots__ = (
        "endpoint", "method", "response_time", "status_code", "timestamp", "success",
        "test_name", "bytes", "sent_bytes", "grp_threads", "all_threads", "custom_fields",
    )

    def __init__(
        self,
        endpoint: str = "unknown",
        response_time: float = 0.0,
        status_code: int = 200,
        method: str = "GET",
        timestamp: int | None = None,
        success: bool | None = None,
        test_name: str | None = None,
        bytes: int = 0,
        sent_bytes: int = 0,
        grp_threads: int = 1,
        all_threads: int = 1,
        custom_fields: dict[str, Any] | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.response_time = response_time
        self.status_code = status_code
        self.method = method
        self.timestamp = timestamp
        self.success = success
        self.test_name = test_name
        self.bytes = bytes
        self.sent_bytes = sent_bytes
        self.grp_threads = grp_threads
        self.all_threads = all_threads
        self.custom_fields = custom_fields if custom_fields is not None else {}

    def __repr__(self) -> str:
        return (
            f"MetricEvent(endpoint={self.endpoint!r}, status={self.status_code}, "
            f"time_ms={self.response_time!r})"
        )


class PersistedRecord:
    """One durable row of the JMeter-compatible log. Never mutated after parse.

    This is the most allocated object during aggregation; keep it slotted.
    """

    __slots__ = (
        "timestamp", "elapsed", "label", "response_code", "success",
        "bytes", "sent_bytes", "grp_threads", "all_threads", "filename",
    )

    def __init__(
        self,
        timestamp: int,
        elapsed: float,
        label: str,
        response_code: int,
        success: bool,
        bytes: int = 0,
        sent_bytes: int = 0,
        grp_threads: int = 1,
        all_threads: int = 1,
        filename: str = "",
    ) -> None:
        self.timestamp = timestamp
        self.elapsed = elapsed
        self.label = label
        self.response_code = response_code
        self.success = success
        self.bytes = bytes
        self.sent_bytes = sent_bytes
        self.grp_threads = grp_threads
        self.all_threads = all_threads
        self.filename = filename

    def as_tuple(self) -> tuple[Any, ...]:
        return tuple(getattr(self, name) for name in self.__slots__)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PersistedRecord):
            return NotImplemented
        return self.as_tuple() == other.as_tuple()

    def __repr__(self) -> str:
        return (
            f"PersistedRecord(label={self.label!r}, code={self.response_code}, "
            f"elapsed={self.elapsed!r}, success={self.success})"
        )


@dataclass(slots=True)
class ParseResult:
    """Outcome of parsing one raw log line."""

    record: PersistedRecord | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ApdexData:
    label: str
    score: float
    samples: int
    satisfied: int
    tolerating: int
    frustrated: int


@dataclass(slots=True)
class EndpointStats:
    """Per-label statistics. Derived; only persisted inside a BuildSnapshot."""

    label: str
    samples: int
    average: float
    median: float
    p90: float
    p95: float
    p99: float
    min: float
    max: float
    std_dev: float
    error_rate: float  # 0..1
    throughput: float  # requests per second
    received_kb: float
    avg_bytes: float
    apdex_score: float | None = None
    # Build comparison (absent on baseline runs and for new endpoints)
    previous_average: float | None = None
    average_delta: float | None = None
    performance_trend: PerformanceTrend | None = None


@dataclass(slots=True)
class TimeSeriesPoint:
    """One non-empty fixed-width bucket of the run."""

    timestamp: int  # bucket start, epoch ms
    response_time: float
    throughput: float
    error_rate: float
    active_threads: int


@dataclass(slots=True)
class ErrorInfo:
    response_code: int
    count: int
    percentage: float  # 0..100 of all records
    message: str


@dataclass(slots=True)
class Percentiles:
    p50: float
    p90: float
    p95: float
    p99: float


@dataclass(slots=True)
class Summary:
    total_requests: int
    average_response_time: float
    error_rate: float
    throughput: float
    failed_requests: int = 0
    test_duration_seconds: float = 0.0
    start_timestamp: int = 0
    end_timestamp: int = 0
    percentiles: Percentiles | None = None
    apdex_score: float | None = None


@dataclass(slots=True)
class SnapshotEndpoint:
    average: float
    samples: int
    error_rate: float
    throughput: float


@dataclass(slots=True)
class SnapshotSummary:
    total_requests: int
    average_response_time: float
    error_rate: float
    throughput: float


@dataclass(slots=True)
class BuildSnapshot:
    """Persisted summary of one aggregation run; baseline for the next run."""

    build_number: str
    timestamp: int
    endpoints: dict[str, SnapshotEndpoint]
    summary: SnapshotSummary


@dataclass(slots=True)
class CollectorConfig:
    """Collector configuration.

    schema_compatible=True writes the 10-column JMeter layout; False writes
    the compact layout.
    """

    output_path: str | Path
    test_name: str = "default"
    buffer_size: int = 1000
    flush_interval_ms: float = 5000
    silent: bool = False
    schema_compatible: bool = True
    on_flush: Callable[[int], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    max_buffered: int = 100_000

    @property
    def schema(self) -> CsvSchema:
        return CsvSchema.JMETER if self.schema_compatible else CsvSchema.COMPACT


@dataclass(slots=True)
class LegacyCollectorConfig:
    """Pre-schema collector configuration. Convert with config.migrate_legacy_config."""

    output_path: str | Path
    test_name: str = "default"
    buffer_size: int = 1000
    flush_interval_ms: float = 5000
    silent: bool = False
    on_flush: Callable[[int], None] | None = None
    on_error: Callable[[Exception], None] | None = None


@dataclass(slots=True)
class CollectorStats:
    total_collected: int
    total_flushed: int
    buffered: int
    flush_count: int
    error_count: int
    is_active: bool
    start_time: float
    last_flush_time: float | None
    integrity_hash: str
    # Approximate (T-Digest) quantiles over every accepted response time
    live_p50_ms: float = 0.0
    live_p95_ms: float = 0.0
    live_p99_ms: float = 0.0


@dataclass(slots=True)
class PerformanceThresholds:
    """JUnit export thresholds."""

    warning_ms: float = 300.0
    error_ms: float = 1000.0
    error_rate: float = 0.05  # 0..1


@dataclass(slots=True)
class AggregationConfig:
    sources: list[Path]
    output_dir: Path = Path("./loadlens-report")
    max_memory_usage_mb: float = 512
    skip_validation: bool = False
    apdex_threshold_ms: float = 500
    include_percentiles: bool = True
    include_apdex: bool = True
    compare_to_previous: bool = True
    comparison_snapshot_path: Path | None = None
    build_number: str | None = None
    ci_artifacts: bool = True
    junit_xml: bool = True
    thresholds: PerformanceThresholds = field(default_factory=PerformanceThresholds)

    def __post_init__(self) -> None:
        if isinstance(self.sources, (str, Path)):
            self.sources = [self.sources]
        self.sources = [Path(s) for s in self.sources]
        self.output_dir = Path(self.output_dir)
        if self.comparison_snapshot_path is not None:
            self.comparison_snapshot_path = Path(self.comparison_snapshot_path)


@dataclass(slots=True)
class ProcessingStats:
    records_processed: int = 0
    records_skipped: int = 0
    parse_errors: int = 0
    parse_warnings: int = 0
    processing_time_ms: float = 0.0
    truncated: bool = False


@dataclass(slots=True)
class AggregationResult:
    """Everything a report renderer consumes, plus run diagnostics."""

    summary: Summary
    endpoint_stats: list[EndpointStats]
    time_series: list[TimeSeriesPoint]
    error_summary: list[ErrorInfo]
    apdex_data: list[ApdexData]
    warnings: list[str] = field(default_factory=list)
    stats: ProcessingStats = field(default_factory=ProcessingStats)
    # First diagnostics kept for display; counts live in stats
    parse_errors: list[str] = field(default_factory=list)
    previous_snapshot: BuildSnapshot | None = None
    snapshot: BuildSnapshot | None = None
    artifacts: dict[str, Path] = field(default_factory=dict)

    def to_report_payload(self) -> dict[str, Any]:
        from .export import build_report_payload

        return build_report_payload(self)
