"""Tests for the aggregation pipeline: ingestion, statistics and full report runs."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import orjson
import pytest

from loadlens.comparison import SNAPSHOT_FILENAME, BuildComparisonStore
from loadlens.exceptions import LoadlensAggregationError, LoadlensConfigError, LoadlensWriteError
from loadlens.models import AggregationConfig, PerformanceTrend
from loadlens.pipeline import (
    YIELD_EVERY_LINES,
    EndpointGroups,
    aggregate,
    max_records_for,
    run_aggregation,
    status_text,
)

BASE_TS = int(time.time() * 1000) - 60_000


def jmeter_row(
    label: str = "/api/users",
    elapsed: float = 100,
    code: int = 200,
    success: bool | None = None,
    timestamp: int | None = None,
    bytes_: int = 1024,
    threads: int = 1,
) -> str:
    """One JMeter-compatible CSV row. success defaults to code < 400."""
    ok = code < 400 if success is None else success
    ts = timestamp if timestamp is not None else BASE_TS
    return f'{ts},{elapsed},"{label}",{code},{"true" if ok else "false"},{bytes_},256,{threads},{threads},"Test"'


@pytest.fixture(autouse=True)
def _no_ci_build_number(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BUILD_NUMBER", raising=False)
    monkeypatch.delenv("GITHUB_RUN_NUMBER", raising=False)


def _scenario_rows() -> list[str]:
    return [
        jmeter_row("/a", 100, timestamp=BASE_TS),
        jmeter_row("/a", 200, timestamp=BASE_TS + 1000),
        jmeter_row("/a", 300, code=500, timestamp=BASE_TS + 2000),
        jmeter_row("/a", 400, timestamp=BASE_TS + 3000),
    ]


def test_endpoint_scenario_error_rate_and_nearest_rank_median(write_log) -> None:
    log = write_log(_scenario_rows())
    result = asyncio.run(aggregate(AggregationConfig(sources=[log])))
    assert len(result.endpoint_stats) == 1
    a = result.endpoint_stats[0]
    assert a.label == "/a"
    assert a.samples == 4
    assert a.error_rate == 0.25
    assert a.median == 200
    assert a.average == 250
    assert a.min == 100 and a.max == 400
    assert a.p99 == 400
    assert result.summary.total_requests == 4
    assert result.summary.failed_requests == 1
    assert result.warnings == []


def test_summary_percentiles_apdex_and_throughput(write_log) -> None:
    rows = [jmeter_row("/x", 100 * (i + 1), timestamp=BASE_TS + i * 1000) for i in range(10)]
    result = asyncio.run(aggregate(AggregationConfig(sources=[write_log(rows)], apdex_threshold_ms=500)))
    s = result.summary
    assert s.test_duration_seconds == 9
    assert s.throughput == pytest.approx(10 / 9)
    assert s.percentiles.p50 == 500
    assert s.percentiles.p90 == 900
    # 5 satisfied (<=500), 5 tolerating (<=2000)
    assert s.apdex_score == 0.75
    assert result.apdex_data[0].label == "/x"


def test_percentiles_and_apdex_can_be_disabled(write_log) -> None:
    config = AggregationConfig(
        sources=[write_log(_scenario_rows())], include_percentiles=False, include_apdex=False
    )
    result = asyncio.run(aggregate(config))
    assert result.summary.percentiles is None
    assert result.summary.apdex_score is None
    assert result.apdex_data == []
    assert result.endpoint_stats[0].apdex_score is None


def test_endpoints_keep_first_seen_order(write_log) -> None:
    rows = [
        jmeter_row("/z", 1, timestamp=BASE_TS),
        jmeter_row("/a", 1, timestamp=BASE_TS),
        jmeter_row("/z", 1, timestamp=BASE_TS),
        jmeter_row("/m", 1, timestamp=BASE_TS),
    ]
    result = asyncio.run(aggregate(AggregationConfig(sources=[write_log(rows)])))
    assert [s.label for s in result.endpoint_stats] == ["/z", "/a", "/m"]


def test_error_summary_counts_failures_sorted(write_log) -> None:
    rows = [
        jmeter_row("/a", 1, code=404, timestamp=BASE_TS),
        jmeter_row("/a", 1, code=500, timestamp=BASE_TS),
        jmeter_row("/a", 1, code=500, timestamp=BASE_TS),
        jmeter_row("/a", 1, code=418, timestamp=BASE_TS),
        # a 404 reported as success is not an error
        jmeter_row("/a", 1, code=404, success=True, timestamp=BASE_TS),
        jmeter_row("/a", 1, timestamp=BASE_TS),
        jmeter_row("/a", 1, timestamp=BASE_TS),
        jmeter_row("/a", 1, timestamp=BASE_TS),
    ]
    result = asyncio.run(aggregate(AggregationConfig(sources=[write_log(rows)])))
    codes = [(e.response_code, e.count, e.message) for e in result.error_summary]
    assert codes == [(500, 2, "Internal Server Error"), (404, 1, "Not Found"), (418, 1, "HTTP 418")]
    assert result.error_summary[0].percentage == 25


def test_time_series_only_non_empty_buckets(write_log) -> None:
    rows = [
        jmeter_row("/a", 100, timestamp=BASE_TS),
        jmeter_row("/a", 300, code=500, timestamp=BASE_TS + 500),
        jmeter_row("/a", 50, timestamp=BASE_TS + 5000, threads=4),
    ]
    result = asyncio.run(aggregate(AggregationConfig(sources=[write_log(rows)])))
    points = result.time_series
    assert [p.timestamp for p in points] == [BASE_TS, BASE_TS + 5000]
    assert points[0].response_time == 200
    assert points[0].error_rate == 0.5
    assert points[0].throughput == 2
    assert points[1].active_threads == 4


def test_memory_budget_truncates(write_log) -> None:
    rows = [jmeter_row("/a", i, timestamp=BASE_TS) for i in range(10)]
    # 0.001 MiB / 256 bytes per record -> 4 records
    assert max_records_for(0.001) == 4
    config = AggregationConfig(sources=[write_log(rows), write_log(rows, name="b.csv")], max_memory_usage_mb=0.001)
    result = asyncio.run(aggregate(config))
    assert result.stats.truncated is True
    assert result.stats.records_processed == 4
    assert result.summary.total_requests == 4
    assert "Memory limit reached. Processed 4 records, truncating remaining data." in result.warnings


def test_bad_file_becomes_warning(write_log, tmp_path: Path) -> None:
    good = write_log(_scenario_rows())
    junk = write_log(["not,a,valid,row"], name="junk.csv")
    missing = tmp_path / "missing.csv"
    result = asyncio.run(aggregate(AggregationConfig(sources=[good, junk, missing])))
    assert result.summary.total_requests == 4
    assert f"No valid records found in {junk}" in result.warnings
    assert any(w.startswith(f"Could not process CSV file {missing}") for w in result.warnings)
    assert "1 parsing errors encountered" in result.warnings
    assert result.stats.records_skipped == 1
    assert "Insufficient fields" in result.parse_errors[0]


def test_parse_warnings_summarized_unless_skipped(write_log) -> None:
    rows = _scenario_rows() + [jmeter_row("=cmd|calc", 10, timestamp=BASE_TS)]
    log = write_log(rows)
    result = asyncio.run(aggregate(AggregationConfig(sources=[log])))
    assert "1 parsing warnings" in result.warnings
    assert result.stats.parse_warnings == 1
    skipped = asyncio.run(aggregate(AggregationConfig(sources=[log], skip_validation=True)))
    assert skipped.stats.parse_warnings == 0
    assert not any("parsing warnings" in w for w in skipped.warnings)
    assert skipped.summary.total_requests == 5


def test_no_valid_records_is_fatal(write_log, tmp_path: Path) -> None:
    junk = write_log(["garbage"])
    with pytest.raises(LoadlensAggregationError):
        asyncio.run(aggregate(AggregationConfig(sources=[junk, tmp_path / "nope.csv"])))


def test_headerless_log_and_crlf(tmp_path: Path) -> None:
    log = tmp_path / "raw.csv"
    log.write_bytes(("\r\n".join(_scenario_rows()) + "\r\n").encode("utf-8"))
    result = asyncio.run(aggregate(AggregationConfig(sources=[log])))
    assert result.summary.total_requests == 4
    assert result.stats.parse_errors == 0


def test_reads_across_line_batches(write_log) -> None:
    n = YIELD_EVERY_LINES * 2 + 17
    rows = [jmeter_row("/a", 100, timestamp=BASE_TS + i) for i in range(n)]
    rows.append("garbage")
    result = asyncio.run(aggregate(AggregationConfig(sources=[write_log(rows)])))
    assert result.summary.total_requests == n
    # header is line 1, so the trailing bad row is line n + 2
    assert result.parse_errors == [f"results.csv: Line {n + 2}: Insufficient fields: 1 < 10"]


def test_endpoint_groups_arena() -> None:
    from loadlens.models import PersistedRecord

    groups = EndpointGroups()
    for label in ("/b", "/a", "/b"):
        groups.add(PersistedRecord(1, 1.0, label, 200, True))
    assert len(groups) == 2
    assert [label for label, _ in groups] == ["/b", "/a"]
    assert len(groups.get("/b")) == 2
    assert groups.get("/missing") is None


def test_status_text_fallback() -> None:
    assert status_text(503) == "Service Unavailable"
    assert status_text(599) == "HTTP 599"


def test_run_aggregation_writes_artifacts(write_log, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    log = write_log(_scenario_rows())
    result = asyncio.run(run_aggregation(AggregationConfig(sources=[log], output_dir=Path("report"))))
    out = tmp_path / "report"
    assert (out / "report-data.json").exists()
    assert (out / "allure-report" / "widgets" / "summary.json").exists()
    assert (out / "allure-report" / "widgets" / "trend.json").exists()
    assert (out / "performance-results.xml").exists()
    assert (out / SNAPSHOT_FILENAME).exists()
    assert result.previous_snapshot is None
    assert result.snapshot.build_number == "1"
    assert result.endpoint_stats[0].performance_trend is None

    payload = orjson.loads((out / "report-data.json").read_bytes())
    assert set(payload) >= {"summary", "endpointStats", "timeSeriesData", "errorSummary", "apdexData"}
    assert payload["endpointStats"][0]["errorRate"] == 0.25


def test_run_aggregation_compares_with_previous_build(
    write_log, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    first = write_log([jmeter_row("/a", 200, timestamp=BASE_TS), jmeter_row("/b", 200, timestamp=BASE_TS)])
    asyncio.run(run_aggregation(AggregationConfig(sources=[first], output_dir=Path("report"))))

    second = write_log(
        [
            jmeter_row("/a", 230, timestamp=BASE_TS),
            jmeter_row("/b", 170, timestamp=BASE_TS),
            jmeter_row("/new", 50, timestamp=BASE_TS),
        ],
        name="second.csv",
    )
    result = asyncio.run(run_aggregation(AggregationConfig(sources=[second], output_dir=Path("report"))))
    by_label = {s.label: s for s in result.endpoint_stats}
    assert by_label["/a"].performance_trend is PerformanceTrend.DEGRADED
    assert by_label["/a"].average_delta == 30
    assert by_label["/b"].performance_trend is PerformanceTrend.IMPROVED
    assert by_label["/new"].performance_trend is None
    assert result.previous_snapshot.build_number == "1"
    assert result.snapshot.build_number == "2"

    trend = orjson.loads((tmp_path / "report" / "allure-report" / "widgets" / "trend.json").read_bytes())
    assert [b["buildNumber"] for b in trend["builds"]] == [1, 2]


def test_run_aggregation_rejects_output_outside_cwd(
    write_log, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    log = write_log(_scenario_rows())
    with pytest.raises(LoadlensConfigError):
        asyncio.run(run_aggregation(AggregationConfig(sources=[log], output_dir=Path("../escape"))))
    assert not (tmp_path / "escape").exists()


def test_snapshot_save_failure_is_a_warning(
    write_log, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    async def fail(self, snapshot):
        raise LoadlensWriteError("Failed to save build snapshot")

    monkeypatch.setattr(BuildComparisonStore, "write_snapshot", fail)
    log = write_log(_scenario_rows())
    result = asyncio.run(run_aggregation(AggregationConfig(sources=[log], output_dir=Path("report"))))
    assert result.snapshot is None
    assert any("Could not save build comparison data" in w for w in result.warnings)
    assert (tmp_path / "report" / "allure-report" / "widgets" / "trend.json").exists()


def test_run_aggregation_optional_artifacts_off(
    write_log, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    config = AggregationConfig(
        sources=[write_log(_scenario_rows())],
        output_dir=Path("report"),
        compare_to_previous=False,
        ci_artifacts=False,
        junit_xml=False,
    )
    result = asyncio.run(run_aggregation(config))
    out = tmp_path / "report"
    assert (out / "report-data.json").exists()
    assert not (out / "allure-report").exists()
    assert not (out / "performance-results.xml").exists()
    assert not (out / SNAPSHOT_FILENAME).exists()
    assert set(result.artifacts) == {"report_data"}
