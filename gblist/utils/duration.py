# gblist/utils/duration.py

from __future__ import annotations

import re
from datetime import timedelta

# Microseconds per unit; "ns" is rounded to the nearest microsecond.
_UNITS = {
    "ns": 0.001,
    "us": 1,
    "µs": 1,
    "μs": 1,
    "ms": 1_000,
    "s": 1_000_000,
    "m": 60 * 1_000_000,
    "h": 3600 * 1_000_000,
}

_PREFIX_RE = re.compile(r"^(?:(?P<weeks>[0-9]+)w)?(?:(?P<days>[0-9]+)d)?(?P<rest>.*)$")
_TERM_RE = re.compile(r"([0-9]+(?:\.[0-9]*)?|\.[0-9]+)(ns|us|µs|μs|ms|s|m|h)")


def _parse_standard(text: str) -> float:
    """Parse "1h30m"-style text into microseconds."""
    total = 0.0
    pos = 0
    while pos < len(text):
        match = _TERM_RE.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    return total


def parse_ttl(text: str) -> timedelta:
    """
    Parse a TTL such as "2w", "3d12h", "1w2d3h4m" or "90m".

    Weeks and days may only appear as a leading "<n>w<n>d" prefix; whatever
    follows is a sequence of hour/minute/second (and smaller) terms.

    Raises:
        ValueError on anything else, or when the total does not fit in a timedelta
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("empty duration")

    match = _PREFIX_RE.match(text)
    if match is None:
        raise ValueError(f"invalid duration {text!r}")

    weeks = int(match.group("weeks") or 0)
    days = int(match.group("days") or 0)
    rest = match.group("rest")
    if rest == "" and match.group("weeks") is None and match.group("days") is None:
        raise ValueError(f"invalid duration {text!r}")

    micros = _parse_standard(rest)
    try:
        return timedelta(weeks=weeks, days=days, microseconds=round(micros))
    except OverflowError as e:
        raise ValueError(f"duration {text!r} is too large") from e


def format_ttl(delta: timedelta) -> str:
    """Render a duration in the grammar accepted by parse_ttl."""
    total = delta // timedelta(microseconds=1)
    if total <= 0:
        return "0s"

    parts = []
    for unit, size in (
            ("w", 7 * 86400 * 1_000_000),
            ("d", 86400 * 1_000_000),
            ("h", 3600 * 1_000_000),
            ("m", 60 * 1_000_000),
            ("s", 1_000_000),
            ("us", 1),
    ):
        count, total = divmod(total, size)
        if count:
            parts.append(f"{count}{unit}")
    return "".join(parts)
