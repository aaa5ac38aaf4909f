"""Duration parsing for TTL and rotation fields.

Accepts integer seconds or compact duration strings such as ``"90s"``,
``"1m"``, ``"1h30m"`` or ``"7d"``. A bare numeric string is seconds.
"""

from __future__ import annotations

import re

from .errors import InvalidConfiguration

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}

_PART_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_PATTERN = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|s|m|h|d))+$")


def parse_duration(value: object, *, field_name: str = "duration") -> int:
    """Convert a duration value to whole seconds.

    Raises:
        InvalidConfiguration: If the value is negative or not a duration.
    """
    if isinstance(value, bool):
        raise InvalidConfiguration(f"{field_name} must be a duration: {value!r}")

    if isinstance(value, int):
        seconds = value
    elif isinstance(value, float):
        seconds = int(value)
    elif isinstance(value, str):
        seconds = _parse_string(value.strip(), field_name)
    else:
        raise InvalidConfiguration(f"{field_name} must be a duration: {value!r}")

    if seconds < 0:
        raise InvalidConfiguration(f"{field_name} cannot be negative: {value!r}")
    return seconds


def _parse_string(text: str, field_name: str) -> int:
    if not text:
        return 0
    if text.lstrip("-").isdigit():
        return int(text)
    if not _DURATION_PATTERN.match(text):
        raise InvalidConfiguration(f"{field_name} is not a valid duration: {text!r}")

    total = 0.0
    for amount, unit in _PART_PATTERN.findall(text):
        total += float(amount) * _UNIT_SECONDS[unit]
    return int(total)
