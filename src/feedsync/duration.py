"""Durations for stale times and comment match windows.

Accepted forms, all normalised to integer milliseconds:
- "250ms", "30s", "5m", "2h", "1d"
- compound strings, largest unit first: "1m30s", "1h15m"
- datetime.timedelta
- non-negative int milliseconds
"""

import re
from datetime import timedelta

Duration = str | int | timedelta

_PART = re.compile(r"(\d+)(ms|s|m|h|d)")
_UNIT_MS: dict[str, int] = {
    "d": 86_400_000,
    "h": 3_600_000,
    "m": 60_000,
    "s": 1000,
    "ms": 1,
}
_ORDER = list(_UNIT_MS)


def _invalid(duration: object) -> ValueError:
    return ValueError(f"Invalid duration: {duration!r}")


def _parse_text(text: str) -> int:
    total = 0
    position = 0
    last_rank = -1
    for match in _PART.finditer(text):
        if match.start() != position:
            raise _invalid(text)
        amount, unit = match.groups()
        rank = _ORDER.index(unit)
        if rank <= last_rank:
            raise _invalid(text)
        total += int(amount) * _UNIT_MS[unit]
        position, last_rank = match.end(), rank
    if position == 0 or position != len(text):
        raise _invalid(text)
    return total


def parse_duration(duration: Duration) -> int:
    """Return duration in milliseconds, raising ValueError when malformed."""
    if isinstance(duration, timedelta):
        if duration < timedelta(0):
            raise _invalid(duration)
        return duration // timedelta(milliseconds=1)
    if isinstance(duration, bool) or not isinstance(duration, (int, str)):
        raise _invalid(duration)
    if isinstance(duration, int):
        if duration < 0:
            raise _invalid(duration)
        return duration
    return _parse_text(duration)
