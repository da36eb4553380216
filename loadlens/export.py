"""Machine-readable run artifacts: report-data JSON, Jenkins widget JSON, JUnit XML."""

from __future__ import annotations

import re
import time
import xml.etree.ElementTree as ET
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from xml.dom import minidom

import orjson

from .logging_config import get_logger
from .models import (
    AggregationResult,
    BuildSnapshot,
    EndpointStats,
    PerformanceThresholds,
    Summary,
)
from .parser import parse_int_safe

logger = get_logger("export")

REPORT_DATA_FILENAME = "report-data.json"
JUNIT_FILENAME = "performance-results.xml"
WIDGETS_DIR = Path("allure-report") / "widgets"

# Characters outside the XML 1.0 Char production
_INVALID_XML_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SNAKE_RE = re.compile(r"_([a-z0-9])")


def _camel(name: str) -> str:
    return _SNAKE_RE.sub(lambda m: m.group(1).upper(), name)


def _camelize(value: Any) -> Any:
    if isinstance(value, dict):
        return {_camel(k): _camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_camelize(v) for v in value]
    return value


def _write_json(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
    return path


def build_report_payload(result: AggregationResult) -> dict[str, Any]:
    """Renderer contract: summary, endpointStats, timeSeriesData, errorSummary, apdexData."""
    return {
        "summary": _camelize(asdict(result.summary)),
        "endpointStats": [_camelize(asdict(s)) for s in result.endpoint_stats],
        "timeSeriesData": [_camelize(asdict(p)) for p in result.time_series],
        "errorSummary": [_camelize(asdict(e)) for e in result.error_summary],
        "apdexData": [_camelize(asdict(a)) for a in result.apdex_data],
        "warnings": list(result.warnings),
    }


def write_report_data(path: str | Path, result: AggregationResult) -> Path:
    out = _write_json(Path(path), build_report_payload(result))
    logger.debug("Wrote report data to %s", out)
    return out


def build_ci_summary(summary: Summary) -> dict[str, Any]:
    """Allure-style summary widget with a performance section for trend plugins."""
    failed = summary.failed_requests
    payload: dict[str, Any] = {
        "statistic": {
            "failed": failed,
            "broken": 0,
            "skipped": 0,
            "passed": summary.total_requests - failed,
            "unknown": 0,
            "total": summary.total_requests,
        },
        "time": {
            "start": summary.start_timestamp,
            "stop": summary.end_timestamp,
            "duration": round(summary.test_duration_seconds * 1000),
        },
        "performance": {
            "averageResponseTime": summary.average_response_time,
            "throughput": summary.throughput,
            "errorRate": summary.error_rate,
            "percentiles": (
                asdict(summary.percentiles)
                if summary.percentiles is not None
                else {"p50": 0, "p90": 0, "p95": 0, "p99": 0}
            ),
            "apdexScore": summary.apdex_score,
        },
    }
    return payload


def write_ci_summary(output_dir: str | Path, summary: Summary) -> Path:
    out = _write_json(Path(output_dir) / WIDGETS_DIR / "summary.json", build_ci_summary(summary))
    logger.info("Generated CI summary at %s", out)
    return out


def build_trend_data(
    summary: Summary,
    previous: BuildSnapshot | None,
    build_number: str,
) -> dict[str, Any]:
    """Two-point build trend (previous first when present) plus the latest build."""
    current_number = parse_int_safe(build_number) or 1
    latest = {
        "buildNumber": current_number,
        "timestamp": int(time.time() * 1000),
        "averageResponseTime": summary.average_response_time,
        "errorRate": summary.error_rate * 100,
        "throughput": summary.throughput,
        "totalRequests": summary.total_requests,
    }
    builds = [latest]
    if previous is not None:
        builds.insert(0, {
            "buildNumber": parse_int_safe(previous.build_number) or max(current_number - 1, 1),
            "timestamp": previous.timestamp,
            "averageResponseTime": previous.summary.average_response_time,
            "errorRate": previous.summary.error_rate * 100,
            "throughput": previous.summary.throughput,
            "totalRequests": previous.summary.total_requests,
        })
    return {"builds": builds, "latest": latest}


def write_trend_data(
    output_dir: str | Path,
    summary: Summary,
    previous: BuildSnapshot | None,
    build_number: str,
) -> Path:
    out = _write_json(
        Path(output_dir) / WIDGETS_DIR / "trend.json",
        build_trend_data(summary, previous, build_number),
    )
    logger.debug("Wrote trend data to %s", out)
    return out


def strip_invalid_xml(text: str) -> str:
    return _INVALID_XML_RE.sub("", text)


def split_label(label: str) -> tuple[str, str]:
    """Split "METHOD /path" into (METHOD, /path). Labels without a space go under UNKNOWN."""
    method, sep, path = label.partition(" ")
    if not sep or not method:
        return "UNKNOWN", label
    return method, path


def _pct(rate: float) -> str:
    return f"{rate * 100:.1f}%"


def evaluate_endpoint(stat: EndpointStats, thresholds: PerformanceThresholds) -> tuple[str, str] | None:
    """(message, details) for the first breached threshold, or None when healthy.

    Checked in order: error threshold, error rate, warning threshold.
    """
    if stat.average > thresholds.error_ms:
        message = (
            f"Average response time ({stat.average:.0f}ms) exceeded error threshold "
            f"of {thresholds.error_ms:g}ms."
        )
        metric, value, limit = "Average Response Time", f"{stat.average:.0f}ms", f"{thresholds.error_ms:g}ms"
    elif stat.error_rate > thresholds.error_rate:
        message = (
            f"Error rate ({_pct(stat.error_rate)}) exceeded threshold of {_pct(thresholds.error_rate)}."
        )
        metric, value, limit = "Error Rate", _pct(stat.error_rate), _pct(thresholds.error_rate)
    elif stat.average > thresholds.warning_ms:
        message = (
            f"Average response time ({stat.average:.0f}ms) exceeded warning threshold "
            f"of {thresholds.warning_ms:g}ms."
        )
        metric, value, limit = "Average Response Time", f"{stat.average:.0f}ms", f"{thresholds.warning_ms:g}ms"
    else:
        return None
    lines = [
        f"Endpoint: {stat.label}",
        f"Metric: {metric}",
        f"Value: {value}",
        f"Threshold: {limit}",
        f"Average Response Time: {stat.average:.0f}ms",
        f"Error Rate: {_pct(stat.error_rate)}",
        f"Samples: {stat.samples}",
    ]
    if stat.performance_trend is not None and stat.average_delta is not None:
        lines.append(
            f"Trend: {stat.performance_trend.value} ({stat.average_delta:+.0f}ms vs previous build)"
        )
    return message, "\n".join(lines)


def write_junit_xml(
    path: str | Path,
    endpoint_stats: list[EndpointStats],
    thresholds: PerformanceThresholds | None = None,
) -> Path:
    """Write JUnit XML for CI: one testsuite per HTTP method, one testcase per endpoint.

    Endpoints breaching a threshold become failed testcases.
    """
    thresholds = thresholds or PerformanceThresholds()
    by_method: dict[str, list[EndpointStats]] = {}
    for stat in endpoint_stats:
        by_method.setdefault(split_label(stat.label)[0], []).append(stat)

    root = ET.Element("testsuites", name="Performance Tests")
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    total_failures = 0
    total_time = 0.0
    for method, stats in by_method.items():
        suite = ET.SubElement(
            root,
            "testsuite",
            name=strip_invalid_xml(f"{method} Endpoints"),
            tests=str(len(stats)),
            timestamp=timestamp,
        )
        suite_failures = 0
        suite_time = 0.0
        for stat in stats:
            seconds = stat.average / 1000
            suite_time += seconds
            testcase = ET.SubElement(
                suite,
                "testcase",
                classname=strip_invalid_xml(method),
                name=strip_invalid_xml(split_label(stat.label)[1]),
                time=f"{seconds:.3f}",
            )
            verdict = evaluate_endpoint(stat, thresholds)
            if verdict is None:
                continue
            message, details = verdict
            suite_failures += 1
            failure = ET.SubElement(
                testcase, "failure", message=strip_invalid_xml(message), type="PerformanceWarning"
            )
            failure.text = strip_invalid_xml(details)
        suite.set("failures", str(suite_failures))
        suite.set("time", f"{suite_time:.3f}")
        total_failures += suite_failures
        total_time += suite_time

    root.set("tests", str(len(endpoint_stats)))
    root.set("failures", str(total_failures))
    root.set("time", f"{total_time:.3f}")

    xml_str = minidom.parseString(ET.tostring(root, encoding="unicode", method="xml")).toprettyxml(indent="  ")
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(xml_str, encoding="utf-8")
    logger.info("Generated JUnit XML with %d failure(s) at %s", total_failures, out)
    return out
