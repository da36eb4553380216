"""Build-over-build comparison: previous snapshot lookup, trend deltas, snapshot persistence.

The snapshot file is the only state crossing process invocations. Reads are
best-effort; the read-then-write is not atomic across processes (single
writer per output directory).
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import replace
from pathlib import Path
from typing import Any

import orjson

from .exceptions import LoadlensWriteError
from .logging_config import get_logger
from .models import (
    BuildSnapshot,
    EndpointStats,
    PerformanceTrend,
    SnapshotEndpoint,
    SnapshotSummary,
    Summary,
)
from .parser import parse_int_safe

logger = get_logger("comparison")

SNAPSHOT_FILENAME = ".build-comparison.json"
# |delta| within this percentage of the previous average counts as stable
STABLE_BAND_PCT = 5
BUILD_NUMBER_ENV_VARS = ("BUILD_NUMBER", "GITHUB_RUN_NUMBER")


def default_snapshot_path(output_dir: str | Path) -> Path:
    return Path(output_dir) / SNAPSHOT_FILENAME


def classify_trend(current: float, previous: float) -> tuple[float, PerformanceTrend]:
    """Return (delta, trend) for an endpoint's current vs previous average.

    A previous average of 0 has no relative band: a current average of 0 is
    stable, anything slower is degraded.
    """
    delta = current - previous
    if previous <= 0:
        return delta, (PerformanceTrend.STABLE if delta <= 0 else PerformanceTrend.DEGRADED)
    band = previous * STABLE_BAND_PCT / 100
    if abs(delta) <= band:
        return delta, PerformanceTrend.STABLE
    if delta < 0:
        return delta, PerformanceTrend.IMPROVED
    return delta, PerformanceTrend.DEGRADED


def apply_deltas(stats: list[EndpointStats], previous: BuildSnapshot | None) -> list[EndpointStats]:
    """Annotate stats with previous average, delta and trend. Unmatched labels stay unannotated."""
    if previous is None:
        return list(stats)
    annotated: list[EndpointStats] = []
    for stat in stats:
        prev = previous.endpoints.get(stat.label)
        if prev is None:
            annotated.append(stat)
            continue
        delta, trend = classify_trend(stat.average, prev.average)
        annotated.append(
            replace(stat, previous_average=prev.average, average_delta=delta, performance_trend=trend)
        )
    return annotated


def snapshot_to_dict(snapshot: BuildSnapshot) -> dict[str, Any]:
    return {
        "buildNumber": snapshot.build_number,
        "timestamp": snapshot.timestamp,
        "endpoints": {
            label: {
                "average": ep.average,
                "samples": ep.samples,
                "errorRate": ep.error_rate,
                "throughput": ep.throughput,
            }
            for label, ep in snapshot.endpoints.items()
        },
        "summary": {
            "totalRequests": snapshot.summary.total_requests,
            "averageResponseTime": snapshot.summary.average_response_time,
            "errorRate": snapshot.summary.error_rate,
            "throughput": snapshot.summary.throughput,
        },
    }


def _number(raw: dict[str, Any], key: str, default: float | None = None) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {type(value).__name__}")
    return value


def snapshot_from_dict(raw: Any) -> BuildSnapshot:
    """Build a snapshot from decoded JSON. Raises ValueError on any shape mismatch."""
    if not isinstance(raw, dict) or not isinstance(raw.get("endpoints"), dict):
        raise ValueError("snapshot must be an object with an 'endpoints' object")
    endpoints: dict[str, SnapshotEndpoint] = {}
    for label, ep in raw["endpoints"].items():
        if not isinstance(ep, dict):
            raise ValueError(f"endpoint entry {label!r} must be an object")
        average = _number(ep, "average")
        if average < 0:
            raise ValueError(f"endpoint {label!r} has a negative average")
        endpoints[str(label)] = SnapshotEndpoint(
            average=average,
            samples=int(_number(ep, "samples", 0)),
            error_rate=_number(ep, "errorRate", 0),
            throughput=_number(ep, "throughput", 0),
        )
    summary_raw = raw.get("summary") or {}
    if not isinstance(summary_raw, dict):
        raise ValueError("summary must be an object")
    build_number = raw.get("buildNumber")
    return BuildSnapshot(
        build_number=str(build_number) if build_number is not None else "",
        timestamp=int(_number(raw, "timestamp", 0)),
        endpoints=endpoints,
        summary=SnapshotSummary(
            total_requests=int(_number(summary_raw, "totalRequests", 0)),
            average_response_time=_number(summary_raw, "averageResponseTime", 0),
            error_rate=_number(summary_raw, "errorRate", 0),
            throughput=_number(summary_raw, "throughput", 0),
        ),
    )


class BuildComparisonStore:
    """Reads the previous run's snapshot and writes the current one.

    read_path defaults to snapshot_path; the current snapshot is always written
    to snapshot_path (an unconditional overwrite).
    """

    __slots__ = ("_snapshot_path", "_read_path", "_build_number")

    def __init__(
        self,
        snapshot_path: str | Path,
        read_path: str | Path | None = None,
        build_number: str | None = None,
    ) -> None:
        self._snapshot_path = Path(snapshot_path)
        self._read_path = Path(read_path) if read_path is not None else self._snapshot_path
        self._build_number = build_number

    @property
    def snapshot_path(self) -> Path:
        return self._snapshot_path

    async def load_previous(self) -> BuildSnapshot | None:
        """Previous snapshot, or None when missing or unusable. Never raises."""
        return await asyncio.to_thread(self._read_previous)

    def _read_previous(self) -> BuildSnapshot | None:
        path = self._read_path
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            logger.debug("No previous build snapshot at %s", path)
            return None
        except OSError as e:
            logger.warning("Cannot read build snapshot %s: %s", path, e)
            return None
        try:
            return snapshot_from_dict(orjson.loads(data))
        except (orjson.JSONDecodeError, ValueError, TypeError) as e:
            logger.warning("Ignoring corrupt build snapshot %s: %s", path, e)
            return None

    def resolve_build_number(self, previous: BuildSnapshot | None) -> str:
        if self._build_number:
            return self._build_number
        for var in BUILD_NUMBER_ENV_VARS:
            value = os.environ.get(var)
            if value:
                return value
        if previous is not None and previous.build_number:
            return str(parse_int_safe(previous.build_number) + 1)
        return "1"

    def build_snapshot(
        self,
        stats: list[EndpointStats],
        summary: Summary,
        previous: BuildSnapshot | None,
    ) -> BuildSnapshot:
        return BuildSnapshot(
            build_number=self.resolve_build_number(previous),
            timestamp=int(time.time() * 1000),
            endpoints={
                s.label: SnapshotEndpoint(
                    average=s.average,
                    samples=s.samples,
                    error_rate=s.error_rate,
                    throughput=s.throughput,
                )
                for s in stats
            },
            summary=SnapshotSummary(
                total_requests=summary.total_requests,
                average_response_time=summary.average_response_time,
                error_rate=summary.error_rate,
                throughput=summary.throughput,
            ),
        )

    async def save(
        self,
        stats: list[EndpointStats],
        summary: Summary,
        previous: BuildSnapshot | None,
    ) -> BuildSnapshot:
        """Build the current snapshot and overwrite the snapshot file with it.

        Raises LoadlensWriteError on filesystem failure.
        """
        snapshot = self.build_snapshot(stats, summary, previous)
        await self.write_snapshot(snapshot)
        return snapshot

    async def write_snapshot(self, snapshot: BuildSnapshot) -> Path:
        payload = orjson.dumps(snapshot_to_dict(snapshot), option=orjson.OPT_INDENT_2)
        path = self._snapshot_path
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, payload)
        except OSError as e:
            raise LoadlensWriteError(
                "Failed to save build snapshot",
                context={"path": str(path)},
                original_error=e,
            ) from e
        logger.info("Saved build comparison data to %s (build %s)", path, snapshot.build_number)
        return path
