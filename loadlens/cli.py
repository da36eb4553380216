"""CLI entry point for loadlens: aggregate JMeter-compatible logs into a report run.

Thin surface over run_aggregation; all heavy lifting lives in the pipeline.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Coroutine

# Faster event loop when available
_HAS_UVLOOP = False
try:
    import uvloop
    _HAS_UVLOOP = True
except ImportError:
    pass

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import load_aggregation_config, validate_aggregation_config
from .exceptions import LoadlensError
from .logging_config import get_logger
from .models import AggregationConfig, AggregationResult, PerformanceTrend
from .pipeline import run_aggregation

logger = get_logger("cli")

DEFAULT_OUTPUT_DIR = "./loadlens-report"

_TREND_STYLE = {
    PerformanceTrend.IMPROVED: "[green]improved[/green]",
    PerformanceTrend.DEGRADED: "[red]degraded[/red]",
    PerformanceTrend.STABLE: "[dim]stable[/dim]",
}


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    if _HAS_UVLOOP:
        return uvloop.run(coro)
    return asyncio.run(coro)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loadlens",
        description="Aggregate JMeter-compatible performance logs into statistics, "
        "build-over-build comparisons and CI artifacts.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"loadlens {__version__}",
    )
    sub = parser.add_subparsers(dest="command")
    report = sub.add_parser("report", help="Aggregate one or more CSV logs into a report run")
    report.add_argument("sources", nargs="*", metavar="CSV", help="Log files to aggregate")
    report.add_argument(
        "-f",
        "--config",
        default=None,
        help="Path to YAML aggregation config (CLI flags override its values)",
    )
    report.add_argument("-o", "--output", default=None, help=f"Output directory (default: {DEFAULT_OUTPUT_DIR})")
    report.add_argument("--apdex-threshold", type=float, default=None, metavar="MS", dest="apdex_threshold_ms")
    report.add_argument("--max-memory-mb", type=float, default=None, metavar="MB", dest="max_memory_usage_mb")
    report.add_argument("--skip-validation", action="store_true", default=None, help="Skip per-row warning collection")
    report.add_argument("--no-compare", action="store_true", help="Disable build-over-build comparison")
    report.add_argument("--build-number", default=None, metavar="N", help="Build number for the snapshot")
    report.add_argument("--no-ci-artifacts", action="store_true", help="Do not write allure-report widget JSON")
    report.add_argument("--no-junit", action="store_true", help="Do not write JUnit XML")
    return parser


def _build_config(args: argparse.Namespace) -> AggregationConfig:
    """Config from -f (if given) with CLI overrides applied on top."""
    if args.config:
        config = load_aggregation_config(Path(args.config))
        if args.sources:
            config.sources = [Path(s) for s in args.sources]
    else:
        config = AggregationConfig(sources=[Path(s) for s in args.sources])
    if args.output is not None:
        config.output_dir = Path(args.output)
    elif not args.config:
        config.output_dir = Path(DEFAULT_OUTPUT_DIR)
    if args.apdex_threshold_ms is not None:
        config.apdex_threshold_ms = args.apdex_threshold_ms
    if args.max_memory_usage_mb is not None:
        config.max_memory_usage_mb = args.max_memory_usage_mb
    if args.skip_validation:
        config.skip_validation = True
    if args.no_compare:
        config.compare_to_previous = False
    if args.build_number is not None:
        config.build_number = args.build_number
    if args.no_ci_artifacts:
        config.ci_artifacts = False
    if args.no_junit:
        config.junit_xml = False
    validate_aggregation_config(config)
    return config


def _print_summary(console: Console, result: AggregationResult) -> None:
    s = result.summary
    console.print(
        f"[bold]{s.total_requests}[/bold] requests, avg [bold]{s.average_response_time:.1f}[/bold] ms, "
        f"error rate [bold]{s.error_rate * 100:.2f}%[/bold], "
        f"throughput [bold]{s.throughput:.2f}[/bold] req/s"
    )
    table = Table(title="Endpoints")
    table.add_column("Endpoint")
    table.add_column("Samples", justify="right")
    table.add_column("Avg (ms)", justify="right")
    table.add_column("P95 (ms)", justify="right")
    table.add_column("Error %", justify="right")
    table.add_column("APDEX", justify="right")
    table.add_column("Trend")
    for stat in result.endpoint_stats:
        trend = ""
        if stat.performance_trend is not None and stat.average_delta is not None:
            trend = f"{_TREND_STYLE[stat.performance_trend]} ({stat.average_delta:+.0f} ms)"
        table.add_row(
            escape(stat.label),
            str(stat.samples),
            f"{stat.average:.1f}",
            f"{stat.p95:.1f}",
            f"{stat.error_rate * 100:.2f}",
            f"{stat.apdex_score:.2f}" if stat.apdex_score is not None else "-",
            trend,
        )
    console.print(table)
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
    for name, path in result.artifacts.items():
        console.print(f"[dim]{name}:[/dim] {escape(str(path))}")


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    def handle_error(e: BaseException) -> int:
        if isinstance(e, LoadlensError):
            print(f"Error: {e}", file=sys.stderr)
            return 1
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return 1

    if args.command != "report":
        parser.print_help(sys.stderr)
        return 1
    if not args.sources and not args.config:
        print("Error: at least one CSV log (or -f/--config) is required", file=sys.stderr)
        return 1

    try:
        config = _build_config(args)
        result = _run_async(run_aggregation(config))
        _print_summary(Console(), result)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        return handle_error(e)
    return 0


if __name__ == "__main__":
    sys.exit(main())
