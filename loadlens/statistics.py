"""Pure statistics over response-time samples: nearest-rank percentiles, APDEX, stddev.

No interpolation anywhere: percentile(values, p) always returns a value that
was actually observed.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from .models import ApdexData

DEFAULT_APDEX_THRESHOLD_MS = 500.0
# Tolerating zone upper bound, as a multiple of the APDEX threshold
APDEX_TOLERATING_FACTOR = 4


def percentile(values: Sequence[float], p: float, *, presorted: bool = False) -> float:
    """Nearest-rank percentile. Returns 0.0 for empty input.

    index = ceil(p / 100 * n) - 1, clamped to [0, n - 1].
    Pass presorted=True to skip the sort when the caller already holds sorted data.
    """
    n = len(values)
    if n == 0:
        return 0.0
    ordered = values if presorted else sorted(values)
    index = math.ceil((p / 100.0) * n) - 1
    index = max(0, min(index, n - 1))
    return ordered[index]


def apdex(
    values: Sequence[float],
    threshold: float = DEFAULT_APDEX_THRESHOLD_MS,
    label: str | None = None,
) -> ApdexData:
    """APDEX score: (satisfied + tolerating / 2) / n.

    satisfied: t <= T, tolerating: T < t <= 4T, frustrated: t > 4T.
    """
    name = label or "Unknown"
    if not values:
        return ApdexData(label=name, score=0.0, samples=0, satisfied=0, tolerating=0, frustrated=0)

    limit = threshold * APDEX_TOLERATING_FACTOR
    satisfied = 0
    tolerating = 0
    for v in values:
        if v <= threshold:
            satisfied += 1
        elif v <= limit:
            tolerating += 1
    n = len(values)
    return ApdexData(
        label=name,
        score=(satisfied + tolerating * 0.5) / n,
        samples=n,
        satisfied=satisfied,
        tolerating=tolerating,
        frustrated=n - satisfied - tolerating,
    )


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return math.fsum(values) / len(values)


def stddev(values: Sequence[float], mean_value: float) -> float:
    """Population standard deviation (divides by n)."""
    if not values:
        return 0.0
    variance = math.fsum((v - mean_value) ** 2 for v in values) / len(values)
    return math.sqrt(variance)
