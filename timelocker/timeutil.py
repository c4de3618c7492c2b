from __future__ import annotations

import re
from datetime import datetime, timezone

from .errors import InvalidUnlockTime


_NAIVE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d")
_FRACTION = re.compile(r"\.(\d+)")


def from_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z`` and fractions longer than microseconds (they are
    truncated), as written by other tools.
    """
    s = text.strip()
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    s = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s, count=1)
    dt = datetime.fromisoformat(s.replace(" ", "T", 1) if "T" not in s else s)
    if dt.tzinfo is None:
        raise ValueError(f"Timestamp has no UTC offset: {text!r}")
    return dt.astimezone(timezone.utc)


def to_rfc3339(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    out = dt.strftime("%Y-%m-%dT%H:%M:%S")
    if dt.microsecond:
        out += f".{dt.microsecond:06d}"
    return out + "Z"


def parse_unlock_time(text: str) -> datetime:
    """Parse a user-supplied unlock time; naive forms are local time."""
    s = text.strip()
    try:
        return from_rfc3339(s)
    except ValueError:
        pass
    for fmt in _NAIVE_FORMATS:
        try:
            local = datetime.strptime(s, fmt)
        except ValueError:
            continue
        return local.astimezone().astimezone(timezone.utc)
    raise InvalidUnlockTime(f"Unrecognized unlock time: {text!r} (use RFC 3339 or YYYY-MM-DD [HH:MM[:SS]])")


def format_remaining(seconds: float) -> str:
    total = max(0, int(seconds))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    return f"{hours}h {minutes}m {secs}s"
