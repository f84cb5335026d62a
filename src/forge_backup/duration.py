from __future__ import annotations

import re
from datetime import timedelta

from .errors import DurationParseError

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration such as ``24h``, ``1h30m`` or ``1.5s``.

    Only positive durations are accepted since they drive a periodic timer.
    """
    text = (value or "").strip()
    if not text:
        raise DurationParseError("Interval must not be empty")

    seconds = 0.0
    position = 0
    for match in _COMPONENT.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise DurationParseError(f"Invalid interval {value!r}; expected e.g. '24h', '1h30m' or '90s'")
    if seconds <= 0:
        raise DurationParseError(f"Interval {value!r} must be positive")
    return timedelta(seconds=seconds)
