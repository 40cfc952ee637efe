"""Duration parsing utilities."""

import re
from datetime import timedelta

from fleetsync.types import Duration

_DURATION_PATTERN = re.compile(r"^(?:\d+(?:ms|s|m|h|d))+$")
_PART_PATTERN = re.compile(r"(\d+)(ms|s|m|h|d)")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> int:
    """Parse a duration to milliseconds.

    Accepts ``"250ms"``, ``"30s"``, ``"5m"``, compound forms such as
    ``"1m30s"``, a :class:`~datetime.timedelta`, or an int that is already
    in milliseconds.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, int):
        if duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration
    if isinstance(duration, timedelta):
        if duration < timedelta(0):
            raise ValueError(f"Invalid duration: {duration!r}")
        return int(duration.total_seconds() * 1000)

    if not isinstance(duration, str) or not _DURATION_PATTERN.match(duration):
        raise ValueError(f"Invalid duration: {duration!r}")

    return sum(
        int(value) * _UNITS[unit] for value, unit in _PART_PATTERN.findall(duration)
    )


def to_seconds(duration: Duration) -> float:
    """Parse a duration and return it in (fractional) seconds."""
    return parse_duration(duration) / 1000
