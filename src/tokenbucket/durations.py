"""Duration keywords accepted wherever an interval or wait ceiling is configured."""

from __future__ import annotations

import math
from typing import Optional, Union

# Duration constants (in milliseconds)
DURATION_MS = {
    "second": 1_000,
    "minute": 60 * 1_000,
    "hour": 60 * 60 * 1_000,
    "day": 24 * 60 * 60 * 1_000,
}

# Short aliases
DURATION_ALIASES = {
    "sec": "second",
    "min": "minute",
    "hr": "hour",
}

DurationLike = Union[int, float, str]

UNBOUNDED_KEYWORDS = ("inf", "infinity", "unlimited")


def parse_duration_ms(value: DurationLike) -> int:
    """Convert ``value`` to whole milliseconds.

    Accepts a number of milliseconds, a numeric string, or one of the
    keywords in :data:`DURATION_MS` (aliases and plurals allowed).

    Raises:
        ValueError: If the value is not a finite number or known keyword.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Duration must be finite: {value!r}")
        return int(value)

    text = str(value).strip().lower()
    if not text:
        raise ValueError("Duration must not be empty")
    try:
        number = float(text)
    except ValueError:
        number = None
    if number is not None:
        if not math.isfinite(number):
            raise ValueError(f"Duration must be finite: {value!r}")
        return int(number)

    unit = DURATION_ALIASES.get(text, text)
    if unit not in DURATION_MS and unit.endswith("s"):
        unit = DURATION_ALIASES.get(unit[:-1], unit[:-1])
    if unit not in DURATION_MS:
        valid = ", ".join(sorted(DURATION_MS))
        raise ValueError(f"Unknown duration '{value}'. Valid: {valid}")
    return DURATION_MS[unit]


def _is_unbounded(value: DurationLike) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isinf(value) and value > 0
    return str(value).strip().lower() in UNBOUNDED_KEYWORDS


def parse_optional_duration_ms(value: Optional[DurationLike]) -> Optional[int]:
    """Like :func:`parse_duration_ms` but passes ``None`` through.

    Positive infinity (or ``"inf"``) means no limit and also yields ``None``.
    """
    if value is None or _is_unbounded(value):
        return None
    return parse_duration_ms(value)


__all__ = [
    "DURATION_MS",
    "DURATION_ALIASES",
    "DurationLike",
    "parse_duration_ms",
    "parse_optional_duration_ms",
]
