from __future__ import annotations

import math
import re
from typing import Any, Optional


# RFC 4122 UUIDs, versions 1-5 with the variant bits set.
_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")

# Postgres `integer` and `numeric(6,3)` column ranges.
INT4_MIN = -(2 ** 31)
INT4_MAX = 2 ** 31 - 1
RATE_MAX = 999.999


def is_uuid(v: Any) -> bool:
    return isinstance(v, str) and bool(_UUID_RE.match(v))


def _parse_int(v: Any) -> Optional[int]:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v) if math.isfinite(v) else None
    m = _LEADING_INT_RE.match(str(v if v is not None else ""))
    return int(m.group(1)) if m else None


def as_int(v: Any, default: int = 0) -> int:
    """
    Lenient integer coercion for device payloads.

    Numbers are truncated toward zero, strings are read up to the first
    non-digit ("12abc" -> 12). Anything else, and anything outside the
    32-bit range of the integer columns, falls back to `default`.
    """
    n = _parse_int(v)
    if n is None or not INT4_MIN <= n <= INT4_MAX:
        return default
    return n


def as_rate(v: Any, default: int = 0) -> float | int:
    # VAT rates keep their fraction when they arrive as numbers (7.7).
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        if isinstance(v, float) and not math.isfinite(v):
            return default
        return v if abs(v) <= RATE_MAX else default
    n = as_int(v, default)
    return n if abs(n) <= RATE_MAX else default


def str_or(v: Any, default: Optional[str]) -> Optional[str]:
    if isinstance(v, str) and v:
        return v
    return default
