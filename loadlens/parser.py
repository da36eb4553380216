"""JMeter-compatible CSV line parser. Security-aware, bounds-checked, never raises.

- Character-level tokenizer (quoted fields, doubled-quote escapes)
- Structural and semantic validation with per-line diagnostics
- Spreadsheet formula-injection detection and neutralization
- Total numeric coercion clamped to [0, MAX_SAFE_INTEGER]
"""

from __future__ import annotations

import math
import re
import time
from datetime import datetime, timezone
from typing import Any

from .models import ParseResult, PersistedRecord

# Largest integer representable exactly as a float (2**53 - 1)
MAX_SAFE_INTEGER = 9_007_199_254_740_991
MAX_FIELD_LENGTH = 1000
MIN_FIELDS = 10
# Rows above this elapsed time are kept but flagged (5 minutes)
HIGH_ELAPSED_MS = 300_000
TIMESTAMP_PAST_WINDOW_MS = 365 * 24 * 60 * 60 * 1000
TIMESTAMP_FUTURE_WINDOW_MS = 60 * 60 * 1000
# Prefix that makes spreadsheets treat a cell as literal text
NEUTRALIZING_PREFIX = "'"

_INJECTION_RE = re.compile(r"^[@=+\-|]")
_INT_RE = re.compile(r"[+-]?\d+")
_FLOAT_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
# "&" that does not already start one of the entities we emit
_BARE_AMP_RE = re.compile(r"&(?!(?:amp|lt|gt|quot);)")
_PARTIAL_ENTITY_RE = re.compile(r"&[a-z]{0,4}$")
_LINE_BREAK_RE = re.compile(r"[\r\n]")


def parse_int_safe(value: Any) -> int:
    """Leading-integer parse. 0 when unparsable; result clamped to [0, MAX_SAFE_INTEGER]."""
    if value is None:
        return 0
    m = _INT_RE.match(str(value).strip())
    if not m:
        return 0
    return max(0, min(int(m.group()), MAX_SAFE_INTEGER))


def parse_float_safe(value: Any) -> float:
    """Leading-float parse. 0.0 when unparsable or non-finite; clamped to [0, MAX_SAFE_INTEGER]."""
    if value is None:
        return 0.0
    m = _FLOAT_RE.match(str(value).strip())
    if not m:
        return 0.0
    parsed = float(m.group())
    if not math.isfinite(parsed):
        return 0.0
    return max(0.0, min(parsed, float(MAX_SAFE_INTEGER)))


def has_injection_risk(value: str) -> bool:
    """True if a spreadsheet could evaluate the value as a formula."""
    return bool(value) and _INJECTION_RE.match(value.strip()) is not None


def neutralize_field(value: str) -> str:
    """Prefix formula-leading values so spreadsheets render them as text."""
    if has_injection_risk(value):
        return NEUTRALIZING_PREFIX + value
    return value


def escape_html(value: str) -> str:
    """Entity-escape & < > ". Idempotent: already-escaped entities are left alone."""
    return (
        _BARE_AMP_RE.sub("&amp;", value)
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def sanitize_string(value: Any) -> str:
    """Trim, drop surrounding quotes, entity-escape and clamp to MAX_FIELD_LENGTH."""
    if value is None:
        return ""
    text = str(value).strip()
    if not text:
        return ""
    if text.startswith('"'):
        text = text[1:]
    if text.endswith('"'):
        text = text[:-1]
    text = escape_html(text)
    if len(text) > MAX_FIELD_LENGTH:
        # Never leave half an entity behind
        text = _PARTIAL_ENTITY_RE.sub("", text[:MAX_FIELD_LENGTH])
    return text


def tokenize(line: str) -> list[str]:
    """Split a CSV line on commas outside quotes. Doubled quotes inside quotes are literal."""
    parts: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = 0
    n = len(line)
    while i < n:
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < n and line[i + 1] == '"':
                current.append('"')
                i += 2
                continue
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    parts.append("".join(current).strip())
    return parts


def quote_field(value: str) -> str:
    """Serialize a free-text field: single line, neutralized, quoted, quotes doubled."""
    text = _LINE_BREAK_RE.sub(" ", value or "")
    text = neutralize_field(text)
    return '"' + text.replace('"', '""') + '"'


def format_number(value: float | int) -> str:
    """Render numbers without a trailing '.0' so integral values stay integers on re-read."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if math.isfinite(value) and value == int(value):
        return str(int(value))
    return repr(value)


def serialize_record(record: PersistedRecord) -> str:
    """Serialize a record as one JMeter-compatible CSV row (no trailing newline)."""
    return ",".join((
        format_number(record.timestamp),
        format_number(record.elapsed),
        quote_field(record.label),
        str(record.response_code),
        "true" if record.success else "false",
        str(record.bytes),
        str(record.sent_bytes),
        str(record.grp_threads),
        str(record.all_threads),
        quote_field(record.filename),
    ))


def _preview(value: str) -> str:
    return sanitize_string(value)[:50]


def _format_ts(timestamp: int) -> str:
    try:
        return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return str(timestamp)


def parse_line(raw: str, line_number: int, *, now_ms: int | None = None) -> ParseResult:
    """Parse one raw log line into a validated record plus diagnostics.

    Errors reject the row (record is None); warnings keep it. Blank lines
    produce an empty result. Never raises.
    """
    result = ParseResult()
    if not raw or not raw.strip():
        return result

    prefix = f"Line {line_number}:"
    parts = tokenize(raw)
    if len(parts) < MIN_FIELDS:
        result.errors.append(f"{prefix} Insufficient fields: {len(parts)} < {MIN_FIELDS}")
        return result

    for index, part in enumerate(parts):
        if has_injection_risk(part):
            result.warnings.append(f"{prefix} Potential CSV injection detected in field {index + 1}")

    ts_text, elapsed_text, code_text = parts[0], parts[1], parts[3]

    if _INT_RE.fullmatch(ts_text) is None or int(ts_text) <= 0:
        result.errors.append(f"{prefix} Invalid timestamp: {_preview(ts_text)}")
        return result
    timestamp = min(int(ts_text), MAX_SAFE_INTEGER)

    if _FLOAT_RE.fullmatch(elapsed_text) is None:
        result.errors.append(f"{prefix} Invalid elapsed time: {_preview(elapsed_text)}")
        return result
    raw_elapsed = float(elapsed_text)
    if not math.isfinite(raw_elapsed) or raw_elapsed < 0:
        result.errors.append(f"{prefix} Invalid elapsed time: {_preview(elapsed_text)}")
        return result
    elapsed = parse_float_safe(elapsed_text)

    if _INT_RE.fullmatch(code_text) is None or not 100 <= int(code_text) <= 599:
        result.errors.append(f"{prefix} Invalid response code: {_preview(code_text)}")
        return result
    response_code = int(code_text)

    now = now_ms if now_ms is not None else int(time.time() * 1000)
    if timestamp < now - TIMESTAMP_PAST_WINDOW_MS or timestamp > now + TIMESTAMP_FUTURE_WINDOW_MS:
        result.warnings.append(f"{prefix} Suspicious timestamp: {_format_ts(timestamp)}")
    if elapsed > HIGH_ELAPSED_MS:
        result.warnings.append(f"{prefix} Very high response time: {format_number(elapsed)}ms")

    result.record = PersistedRecord(
        timestamp=timestamp,
        elapsed=elapsed,
        label=sanitize_string(parts[2]),
        response_code=response_code,
        success=parts[4].strip().lower() == "true",
        bytes=parse_int_safe(parts[5]),
        sent_bytes=parse_int_safe(parts[6]),
        grp_threads=max(1, parse_int_safe(parts[7])),
        all_threads=max(1, parse_int_safe(parts[8])),
        filename=sanitize_string(parts[9]),
    )
    return result
