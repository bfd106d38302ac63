"""Minimal cron expression parser. No external dependencies.

Supports standard 5-field cron: minute hour day_of_month month day_of_week

Examples:
    "0 16 * * 1-5"      -> weekdays at 4pm
    "0 9 * * sun"       -> Sundays at 9am
    "*/5 * * * *"       -> every 5 minutes
    "0 9,17 * * *"      -> 9am and 5pm daily
    "0 0-12/3 1 jan *"  -> every 3 hours until noon on January 1st

As in classic cron, when both day_of_month and day_of_week are restricted a
date matches if either one does.
"""

from __future__ import annotations

from datetime import datetime

_MONTH_NAMES = {
    name: i for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
_DAY_NAMES = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (name, min, max, names)
_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day_of_month", 1, 31, {}),
    ("month", 1, 12, _MONTH_NAMES),
    ("day_of_week", 0, 7, _DAY_NAMES),
)


class CronExpression:
    """A parsed 5-field cron expression.

    Usage:
        cron = CronExpression("*/15 9-17 * * mon-fri")
        cron.matches(datetime(2024, 1, 2, 9, 30))   # True
    """

    def __init__(self, expression: str) -> None:
        parts = expression.strip().split()
        if len(parts) != 5:
            raise ValueError(f"Invalid cron expression (need 5 fields): {expression!r}")

        self.expression = expression
        values = [
            _parse_field(part, low, high, names)
            for part, (_, low, high, names) in zip(parts, _FIELDS)
        ]
        self.minutes, self.hours, self.days, self.months, weekdays = values
        # 7 is an alias for Sunday
        self.weekdays = {d % 7 for d in weekdays}
        self._dom_restricted = parts[2] != "*"
        self._dow_restricted = parts[4] != "*"

    def matches(self, dt: datetime) -> bool:
        if dt.minute not in self.minutes or dt.hour not in self.hours or dt.month not in self.months:
            return False

        dom_ok = dt.day in self.days
        dow_ok = dt.isoweekday() % 7 in self.weekdays  # 0=Sun, 6=Sat
        if self._dom_restricted and self._dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"


def cron_matches(expression: str, dt: datetime) -> bool:
    """Check if a datetime matches a cron expression."""
    return CronExpression(expression).matches(dt)


def _parse_field(field: str, low: int, high: int, names: dict[str, int]) -> set[int]:
    """Expand one cron field into the set of values it allows.

    Supports: *, */N, N, N-M, N-M/S, N/S, names, and comma lists of those.
    """
    values: set[int] = set()
    for part in field.split(","):
        if not part:
            raise ValueError(f"Invalid cron field: {field!r}")

        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"Invalid cron step: {part!r}")
            step = int(step_text)

        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start, end = _value(first, names, part), _value(last, names, part)
        else:
            start = _value(base, names, part)
            end = high if step_text else start

        if not (low <= start <= high and low <= end <= high) or start > end:
            raise ValueError(f"Cron value out of range {low}-{high}: {part!r}")
        values.update(range(start, end + 1, step))
    return values


def _value(text: str, names: dict[str, int], part: str) -> int:
    lowered = text.strip().lower()
    if lowered in names:
        return names[lowered]
    if not lowered.isdigit():
        raise ValueError(f"Invalid cron field: {part!r}")
    return int(lowered)
