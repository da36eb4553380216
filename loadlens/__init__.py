"""
loadlens - performance metrics collection and JMeter-compatible log aggregation.

Buffered in-process metric recording to CSV, streaming aggregation into
percentiles, APDEX and error summaries, and build-over-build comparison.
"""

__version__ = "1.0.0"

from .collector import MetricCollector, create_collector
from .comparison import BuildComparisonStore, apply_deltas, classify_trend
from .config import (
    load_aggregation_config,
    load_collector_config,
    migrate_legacy_config,
    validate_output_path,
)
from .exceptions import (
    LoadlensAggregationError,
    LoadlensConfigError,
    LoadlensError,
    LoadlensResourceLimitError,
    LoadlensValidationError,
    LoadlensWriteError,
)
from .models import (
    AggregationConfig,
    AggregationResult,
    CollectorConfig,
    LegacyCollectorConfig,
    MetricEvent,
    PerformanceTrend,
)
from .parser import parse_line
from .pipeline import aggregate, run_aggregation
from .statistics import apdex, percentile, stddev

__all__ = [
    "__version__",
    "AggregationConfig",
    "AggregationResult",
    "BuildComparisonStore",
    "CollectorConfig",
    "LegacyCollectorConfig",
    "LoadlensAggregationError",
    "LoadlensConfigError",
    "LoadlensError",
    "LoadlensResourceLimitError",
    "LoadlensValidationError",
    "LoadlensWriteError",
    "MetricCollector",
    "MetricEvent",
    "PerformanceTrend",
    "aggregate",
    "apdex",
    "apply_deltas",
    "classify_trend",
    "create_collector",
    "load_aggregation_config",
    "load_collector_config",
    "migrate_legacy_config",
    "parse_line",
    "percentile",
    "run_aggregation",
    "stddev",
    "validate_output_path",
]
