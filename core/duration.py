"""Duration parsing helpers for configuration values."""

from __future__ import annotations

import re
from datetime import timedelta

_PART_RE = re.compile(r"(\d+)\s*([smhd])", re.IGNORECASE)
_FULL_RE = re.compile(r"^\s*(?:\d+\s*[smhd]\s*)+$", re.IGNORECASE)
_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_duration(value: str | int | float) -> timedelta:
    """Parse compact duration strings like '60s', '5m', '1h30m'.

    Bare numbers are taken as seconds.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ValueError(f"Invalid duration: {value!r}. Must not be negative.")
        return timedelta(seconds=value)

    text = str(value or "")
    if text.strip().isdigit():
        return timedelta(seconds=int(text))
    if not _FULL_RE.match(text):
        raise ValueError(
            f"Invalid duration: {value!r}. Expected '<int><s|m|h|d>' parts, e.g. '1h30m'."
        )

    seconds = sum(
        int(amount) * _UNIT_SECONDS[unit.lower()]
        for amount, unit in _PART_RE.findall(text)
    )
    return timedelta(seconds=seconds)


def duration_seconds(value: str | int | float) -> float:
    """parse_duration() as a float number of seconds."""
    return parse_duration(value).total_seconds()
