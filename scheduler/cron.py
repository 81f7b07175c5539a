"""Five-field cron matching (minute hour day-of-month month day-of-week).

Each field supports ``*``, lists (``1,3,5``), ranges (``9-17``) and steps
(``*/15``).  Only one form per field: a list is a list of plain integers,
a step ignores its left-hand side and matches ``value % step == 0``.

All five fields are ANDed together.  Unlike classic cron, a restricted
day-of-month and a restricted day-of-week must *both* match.
"""

from __future__ import annotations

import logging
from datetime import datetime

logger = logging.getLogger(__name__)

FIELD_NAMES = ("minute", "hour", "day_of_month", "month", "day_of_week")

_RANGES = {
    "minute":       (0, 59),
    "hour":         (0, 23),
    "day_of_month": (1, 31),
    "month":        (1, 12),
    "day_of_week":  (0, 6),   # 0 = Sunday
}


def _field_values(at: datetime) -> tuple[int, int, int, int, int]:
    # isoweekday(): Monday=1 .. Sunday=7  →  cron: Sunday=0 .. Saturday=6
    return at.minute, at.hour, at.day, at.month, at.isoweekday() % 7


def _match_field(part: str, value: int) -> bool:
    """Evaluate one field. Raises ValueError on malformed input."""
    if part == "*":
        return True
    if "," in part:
        return value in [int(p) for p in part.split(",")]
    if "-" in part:
        lo, hi = (int(p) for p in part.split("-", 1))
        return lo <= value <= hi
    if "/" in part:
        _, step = part.split("/", 1)
        n = int(step)
        if n <= 0:
            raise ValueError(f"step must be positive, got {n}")
        return value % n == 0
    return int(part) == value


def matches(expr: str, at: datetime) -> bool:
    """Return True when *at* falls in a minute described by *expr*.

    Invalid expressions are logged and never match.
    """
    parts = expr.split()
    if len(parts) != 5:
        logger.warning("Invalid cron expression", extra={"cron": expr, "fields": len(parts)})
        return False

    try:
        return all(
            _match_field(part, value)
            for part, value in zip(parts, _field_values(at))
        )
    except ValueError as e:
        logger.warning("Invalid cron expression", extra={"cron": expr, "error": str(e)})
        return False


def validate(expr: str) -> None:
    """Raise ValueError if *expr* is not a usable 5-field expression."""
    parts = expr.split()
    if len(parts) != 5:
        raise ValueError(
            f"Cron expression must have 5 fields "
            f"(minute hour day-of-month month day-of-week), got {len(parts)}: {expr!r}"
        )
    for name, part in zip(FIELD_NAMES, parts):
        lo, hi = _RANGES[name]
        try:
            _match_field(part, lo)
        except ValueError:
            raise ValueError(f"Invalid {name} field {part!r} in cron expression {expr!r}") from None
        if part == "*" or "/" in part:
            continue
        numbers = [int(p) for p in part.replace("-", ",").split(",")]
        for n in numbers:
            if not lo <= n <= hi:
                raise ValueError(f"{name} value {n} out of range {lo}-{hi} in {expr!r}")
