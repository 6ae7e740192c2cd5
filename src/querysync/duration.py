"""Duration parsing utilities."""

import math
import re
from datetime import timedelta

from querysync.types import Duration

_SEGMENT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_FULL_PATTERN = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|s|m|h|d))+$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> float:
    """Parse a duration to milliseconds.

    Accepts milliseconds as ``int``/``float`` (``math.inf`` is allowed and
    means "never"), a ``timedelta``, or a string made of one or more
    ``<number><unit>`` segments such as ``"250ms"``, ``"30s"`` or ``"1m30s"``.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")

    if isinstance(duration, timedelta):
        ms = duration.total_seconds() * 1000
    elif isinstance(duration, (int, float)):
        ms = duration
    elif isinstance(duration, str):
        text = duration.strip().lower()
        if text in ("inf", "infinity", "never"):
            return math.inf
        if not _FULL_PATTERN.match(text):
            raise ValueError(f"Invalid duration: {duration!r}")
        ms = sum(
            float(value) * _UNITS[unit]
            for value, unit in _SEGMENT_PATTERN.findall(text)
        )
    else:
        raise ValueError(f"Invalid duration: {duration!r}")

    if math.isnan(ms) or ms < 0:
        raise ValueError(f"Duration must be >= 0, got {duration!r}")
    return ms


def parse_optional_duration(duration: Duration | None) -> float | None:
    """Like :func:`parse_duration` but passes ``None`` through."""
    if duration is None:
        return None
    return parse_duration(duration)
