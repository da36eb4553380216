"""YAML configuration loading and validation for collectors and aggregation runs."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .exceptions import LoadlensConfigError
from .logging_config import get_logger
from .models import AggregationConfig, CollectorConfig, LegacyCollectorConfig, PerformanceThresholds

logger = get_logger("config")

MAX_BUFFER_SIZE = 10_000


def validate_collector_config(c: CollectorConfig) -> None:
    """Validate CollectorConfig bounds. Raises LoadlensConfigError if invalid."""
    if not str(c.output_path or "").strip():
        raise LoadlensConfigError("output_path is required")
    if c.buffer_size < 1:
        raise LoadlensConfigError("buffer_size must be >= 1", context={"buffer_size": c.buffer_size})
    if c.flush_interval_ms < 0:
        raise LoadlensConfigError("flush_interval_ms must be >= 0")
    if c.max_buffered < 1:
        raise LoadlensConfigError("max_buffered must be >= 1")


def validate_aggregation_config(c: AggregationConfig) -> None:
    """Validate AggregationConfig bounds. Raises LoadlensConfigError if invalid."""
    if not c.sources:
        raise LoadlensConfigError("at least one source log is required")
    if c.max_memory_usage_mb <= 0:
        raise LoadlensConfigError("max_memory_usage_mb must be > 0")
    if c.apdex_threshold_ms <= 0:
        raise LoadlensConfigError("apdex_threshold_ms must be > 0")
    t = c.thresholds
    if t.warning_ms <= 0 or t.error_ms <= 0:
        raise LoadlensConfigError("performance thresholds must be > 0")
    if not 0 <= t.error_rate <= 1:
        raise LoadlensConfigError("error_rate threshold must be between 0 and 1")


def validate_output_path(output_path: str | Path, base_dir: str | Path | None = None) -> Path:
    """Resolve output_path and ensure it stays inside base_dir (default: working directory).

    Raises LoadlensConfigError before any I/O is attempted.
    """
    if output_path is None or not str(output_path).strip():
        raise LoadlensConfigError("Invalid output path")
    base = Path(base_dir if base_dir is not None else Path.cwd()).resolve()
    resolved = Path(output_path)
    if not resolved.is_absolute():
        resolved = base / resolved
    resolved = resolved.resolve()
    if not resolved.is_relative_to(base):
        raise LoadlensConfigError(
            "Output path must be within the working directory",
            context={"path": str(output_path), "base": str(base)},
        )
    return resolved


def migrate_legacy_config(legacy: LegacyCollectorConfig) -> CollectorConfig:
    """Map the pre-schema collector configuration onto CollectorConfig (JMeter layout)."""
    return CollectorConfig(
        output_path=legacy.output_path,
        test_name=legacy.test_name,
        buffer_size=legacy.buffer_size,
        flush_interval_ms=legacy.flush_interval_ms,
        silent=legacy.silent,
        schema_compatible=True,
        on_flush=legacy.on_flush,
        on_error=legacy.on_error,
    )


def _read_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise LoadlensConfigError(f"Config file not found: {path}", context={"path": str(path)})
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML config file")
        raise LoadlensConfigError(
            f"Invalid YAML syntax in config file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    except OSError as e:
        logger.exception("Failed to read config file")
        raise LoadlensConfigError(
            f"Cannot read config file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    if not isinstance(raw, dict):
        raise LoadlensConfigError(
            "Config must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__},
        )
    return raw


def _pick(raw: dict[str, Any], snake: str, camel: str, default: Any) -> Any:
    """Read a key in snake_case, falling back to the documented camelCase spelling."""
    if snake in raw:
        return raw[snake]
    return raw.get(camel, default)


def load_collector_config(path: str | Path) -> CollectorConfig:
    """Load collector configuration from a YAML file.

    Raises:
        LoadlensConfigError: If file not found, invalid YAML, or validation fails
    """
    raw = _read_yaml(path)
    try:
        config = CollectorConfig(
            output_path=str(_pick(raw, "output_path", "outputPath", "") or ""),
            test_name=str(_pick(raw, "test_name", "testName", "default")),
            buffer_size=int(_pick(raw, "buffer_size", "bufferSize", 1000)),
            flush_interval_ms=float(_pick(raw, "flush_interval_ms", "flushIntervalMs", 5000)),
            silent=bool(raw.get("silent", False)),
            schema_compatible=bool(_pick(raw, "schema_compatible", "schemaCompatible", True)),
        )
    except (TypeError, ValueError) as e:
        raise LoadlensConfigError(
            f"Invalid config value: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    validate_collector_config(config)
    logger.debug("Loaded collector config: output=%s, buffer_size=%s", config.output_path, config.buffer_size)
    return config


def load_aggregation_config(path: str | Path) -> AggregationConfig:
    """Load aggregation configuration from a YAML file.

    Raises:
        LoadlensConfigError: If file not found, invalid YAML, or validation fails
    """
    raw = _read_yaml(path)
    sources = raw.get("sources") or raw.get("csv") or []
    if isinstance(sources, str):
        sources = [sources]
    thresholds_raw = _pick(raw, "performance_thresholds", "performanceThresholds", None) or {}
    try:
        snapshot_path = _pick(raw, "comparison_snapshot_path", "comparisonSnapshotPath", None)
        build_number = _pick(raw, "build_number", "buildNumber", None)
        config = AggregationConfig(
            sources=[Path(str(s)) for s in sources],
            output_dir=Path(str(_pick(raw, "output_dir", "outputDir", "./loadlens-report"))),
            max_memory_usage_mb=float(_pick(raw, "max_memory_usage_mb", "maxMemoryUsageMB", 512)),
            skip_validation=bool(_pick(raw, "skip_validation", "skipValidation", False)),
            apdex_threshold_ms=float(_pick(raw, "apdex_threshold_ms", "apdexThresholdMs", 500)),
            include_percentiles=bool(_pick(raw, "include_percentiles", "includePercentiles", True)),
            include_apdex=bool(_pick(raw, "include_apdex", "includeApdex", True)),
            compare_to_previous=bool(_pick(raw, "compare_to_previous", "compareToPrevious", True)),
            comparison_snapshot_path=Path(str(snapshot_path)) if snapshot_path else None,
            build_number=str(build_number) if build_number is not None else None,
            ci_artifacts=bool(_pick(raw, "ci_artifacts", "ciArtifacts", True)),
            junit_xml=bool(_pick(raw, "junit_xml", "junitXml", True)),
            thresholds=PerformanceThresholds(
                warning_ms=float(_pick(thresholds_raw, "warning_ms", "warningThreshold", 300)),
                error_ms=float(_pick(thresholds_raw, "error_ms", "errorThreshold", 1000)),
                error_rate=float(_pick(thresholds_raw, "error_rate", "errorRateThreshold", 0.05)),
            ),
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise LoadlensConfigError(
            f"Invalid config value: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    validate_aggregation_config(config)
    logger.debug("Loaded aggregation config: sources=%d, output=%s", len(config.sources), config.output_dir)
    return config
