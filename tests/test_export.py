"""Tests for report-data JSON, CI widget JSON and JUnit XML exports."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path

import orjson

from loadlens.export import (
    build_ci_summary,
    build_report_payload,
    build_trend_data,
    evaluate_endpoint,
    split_label,
    strip_invalid_xml,
    write_ci_summary,
    write_junit_xml,
)
from loadlens.models import (
    AggregationResult,
    BuildSnapshot,
    EndpointStats,
    ErrorInfo,
    Percentiles,
    PerformanceThresholds,
    PerformanceTrend,
    SnapshotSummary,
    Summary,
)


def _stat(label: str, average: float, error_rate: float = 0.0, **kwargs) -> EndpointStats:
    return EndpointStats(
        label=label, samples=20, average=average, median=average, p90=average, p95=average,
        p99=average, min=average, max=average, std_dev=0, error_rate=error_rate, throughput=1,
        received_kb=0, avg_bytes=0, **kwargs,
    )


def _summary() -> Summary:
    return Summary(
        total_requests=100,
        average_response_time=120.5,
        error_rate=0.04,
        throughput=12.5,
        failed_requests=4,
        test_duration_seconds=8.0,
        start_timestamp=1_700_000_000_000,
        end_timestamp=1_700_000_008_000,
        percentiles=Percentiles(p50=100, p90=200, p95=250, p99=400),
        apdex_score=0.93,
    )


def test_report_payload_contract() -> None:
    result = AggregationResult(
        summary=_summary(),
        endpoint_stats=[_stat("GET /a", 100, performance_trend=PerformanceTrend.STABLE, average_delta=1.0)],
        time_series=[],
        error_summary=[ErrorInfo(response_code=500, count=4, percentage=4.0, message="Internal Server Error")],
        apdex_data=[],
    )
    payload = result.to_report_payload()
    assert set(payload) == {"summary", "endpointStats", "timeSeriesData", "errorSummary", "apdexData", "warnings"}
    assert payload["summary"]["totalRequests"] == 100
    assert payload["summary"]["percentiles"]["p95"] == 250
    assert payload["endpointStats"][0]["performanceTrend"] == PerformanceTrend.STABLE
    assert payload["errorSummary"][0]["responseCode"] == 500
    # serializable as-is
    decoded = orjson.loads(orjson.dumps(build_report_payload(result)))
    assert decoded["endpointStats"][0]["performanceTrend"] == "stable"


def test_ci_summary_shape(tmp_path: Path) -> None:
    summary = build_ci_summary(_summary())
    assert summary["statistic"] == {"failed": 4, "broken": 0, "skipped": 0, "passed": 96, "unknown": 0, "total": 100}
    assert summary["time"] == {"start": 1_700_000_000_000, "stop": 1_700_000_008_000, "duration": 8000}
    assert summary["performance"]["percentiles"]["p99"] == 400
    path = write_ci_summary(tmp_path, _summary())
    assert path == tmp_path / "allure-report" / "widgets" / "summary.json"
    assert orjson.loads(path.read_bytes())["performance"]["apdexScore"] == 0.93


def test_ci_summary_without_percentiles() -> None:
    s = _summary()
    s.percentiles = None
    assert build_ci_summary(s)["performance"]["percentiles"] == {"p50": 0, "p90": 0, "p95": 0, "p99": 0}


def test_trend_data_previous_first() -> None:
    previous = BuildSnapshot(
        build_number="4",
        timestamp=1,
        endpoints={},
        summary=SnapshotSummary(total_requests=50, average_response_time=100, error_rate=0.02, throughput=5),
    )
    trend = build_trend_data(_summary(), previous, "5")
    assert [b["buildNumber"] for b in trend["builds"]] == [4, 5]
    assert trend["latest"]["errorRate"] == 4.0
    assert trend["builds"][0]["errorRate"] == 2.0
    assert build_trend_data(_summary(), None, "abc")["latest"]["buildNumber"] == 1


def test_evaluate_endpoint_threshold_order() -> None:
    t = PerformanceThresholds()
    assert evaluate_endpoint(_stat("GET /ok", 100), t) is None
    message, _ = evaluate_endpoint(_stat("GET /slow", 1500, error_rate=0.5), t)
    assert "error threshold of 1000ms" in message
    message, _ = evaluate_endpoint(_stat("GET /err", 100, error_rate=0.1), t)
    assert message.startswith("Error rate (10.0%)")
    message, details = evaluate_endpoint(
        _stat("GET /warn", 400, performance_trend=PerformanceTrend.DEGRADED, average_delta=80.0), t
    )
    assert "warning threshold of 300ms" in message
    assert "Trend: degraded (+80ms vs previous build)" in details


def test_junit_groups_by_method(tmp_path: Path) -> None:
    stats = [
        _stat("GET /users", 100),
        _stat("POST /users", 1200),
        _stat("GET /orders", 350),
        _stat("/health", 5),
    ]
    path = write_junit_xml(tmp_path / "performance-results.xml", stats)
    root = ET.parse(path).getroot()
    assert root.tag == "testsuites"
    assert root.get("tests") == "4"
    assert root.get("failures") == "2"
    suites = {s.get("name"): s for s in root.findall("testsuite")}
    assert set(suites) == {"GET Endpoints", "POST Endpoints", "UNKNOWN Endpoints"}
    get_cases = suites["GET Endpoints"].findall("testcase")
    assert [c.get("name") for c in get_cases] == ["/users", "/orders"]
    assert get_cases[0].find("failure") is None
    assert get_cases[1].find("failure").get("type") == "PerformanceWarning"
    assert suites["GET Endpoints"].get("failures") == "1"


def test_junit_strips_control_characters(tmp_path: Path) -> None:
    path = write_junit_xml(tmp_path / "j.xml", [_stat("GET /bad\x01name", 2000)])
    text = path.read_text(encoding="utf-8")
    assert "\x01" not in text
    assert ET.parse(path).getroot().find("testsuite/testcase").get("name") == "/badname"


def test_split_label_and_strip() -> None:
    assert split_label("DELETE /a b") == ("DELETE", "/a b")
    assert split_label("/a") == ("UNKNOWN", "/a")
    assert strip_invalid_xml("a\x00b\tc\x1f") == "ab\tc"
