"""Pytest fixtures for loadlens tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from loadlens.collector import JMETER_HEADER


@pytest.fixture
def write_log(tmp_path: Path) -> Callable[..., Path]:
    """Write rows to a CSV log under tmp_path, with the JMeter header by default."""

    def _write(rows: list[str], name: str = "results.csv", header: bool = True) -> Path:
        path = tmp_path / name
        lines = ([JMETER_HEADER] if header else []) + rows
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def collector_yaml(tmp_path: Path) -> Path:
    """Minimal collector config using the documented camelCase keys."""
    path = tmp_path / "collector.yaml"
    path.write_text(
        """
outputPath: metrics/results.csv
testName: checkout
bufferSize: 50
flushIntervalMs: 0
silent: true
""",
        encoding="utf-8",
    )
    return path
