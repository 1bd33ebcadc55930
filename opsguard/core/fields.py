# opsguard/core/fields.py
"""
Helpers for reading loosely-typed decoded JSON.

Upstream producers never agree on field names, so every logical field is read
through an ordered list of dotted paths (``"location.world.x"``) and the first
present, non-null value wins.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional
import math
import re
import time

JSON = Dict[str, Any]

MIN_VALID_EPOCH_MS = 946_684_800_000          # 2000-01-01T00:00:00Z
MAX_FUTURE_DRIFT_MS = 1000 * 60 * 60 * 24 * 365

_MISSING = object()


def as_record(value: Any) -> Optional[JSON]:
    return value if isinstance(value, dict) else None


def read_path(record: Any, path: str) -> Any:
    cursor = record
    for chunk in path.split("."):
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(chunk, _MISSING)
        if cursor is _MISSING:
            return None
    return cursor


def pick_value(record: Any, paths: Iterable[str]) -> Any:
    for path in paths:
        value = read_path(record, path)
        if value is not None:
            return value
    return None


def parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            parsed = float(s)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def parse_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s or None


def parse_id(value: Any) -> Optional[str]:
    """Non-empty string ids pass through trimmed, finite numbers are rounded."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return str(int(round(value)))
    return None


_ISO_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2}\.)(\d+)")


def parse_iso_ms(text: str) -> Optional[int]:
    s = text.strip()
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fraction digits
    s = _ISO_FRACTION.sub(lambda m: m.group(1) + (m.group(2) + "000000")[:6], s, count=1)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def _scale_epoch(value: float) -> float:
    if value >= 1e12:
        return value
    if 1e9 <= value <= 1e11:
        return value * 1000
    return value


def parse_epoch_ms(value: Any, now_ms: Optional[float] = None) -> Optional[int]:
    """
    Epoch milliseconds from ms / seconds / numeric strings / ISO-8601.
    Anything before 2000-01-01 or more than a year ahead of ``now_ms`` is None.
    """
    if now_ms is None:
        now_ms = time.time() * 1000

    epoch: Optional[float] = None
    num = parse_number(value)
    if num is not None:
        epoch = _scale_epoch(num)
    elif isinstance(value, str) and value.strip():
        epoch = parse_iso_ms(value)
    if epoch is None:
        return None

    rounded = int(round(epoch))
    if rounded < MIN_VALID_EPOCH_MS or rounded > now_ms + MAX_FUTURE_DRIFT_MS:
        return None
    return rounded
