"""Lifetime mini-language used by uploads: ``30s``, ``2 hours``, ISO timestamps, ``never``."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

_UNIT_SECONDS = {
    "s": 1,
    "second": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "h": 3600,
    "hour": 3600,
    "d": 86400,
    "day": 86400,
    "w": 7 * 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
}

# single-letter units take no plural; "10ms" is not ten minutes
_SHORT = re.compile(r"^(\d+)\s*([smhdw])$")
_LONG = re.compile(r"^(\d+)\s*(second|min|minute|hour|day|week|month)s?$")

# largest first, for rendering
_DISPLAY_UNITS = (
    ("month", 30 * 86400),
    ("week", 7 * 86400),
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
    ("second", 1),
)


def parse_lifetime(text: str | None, now: datetime) -> datetime | None:
    """Return the absolute expiry for ``text``, or ``None`` for a grant that never expires.

    Raises ``ValueError`` on unparseable text or a non-positive lifetime.
    """
    raw = (text or "").strip()
    if not raw or raw.lower() == "never":
        return None

    if "T" in raw:
        try:
            at = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as err:
            raise ValueError(f"invalid timestamp: {raw!r}") from err
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        if at <= now:
            raise ValueError("expiry must be in the future")
        return at

    lowered = raw.lower()
    m = _SHORT.match(lowered) or _LONG.match(lowered)
    if not m:
        raise ValueError(f"invalid duration: {raw!r}")
    amount, unit = int(m.group(1)), m.group(2)
    seconds = _UNIT_SECONDS[unit]
    if amount <= 0:
        raise ValueError("duration must be positive")
    return now + timedelta(seconds=amount * seconds)


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "never"
    total = int(seconds)
    if total <= 0:
        return "expired"
    for name, size in _DISPLAY_UNITS:
        if total >= size:
            n = total // size
            return f"{n} {name}" + ("s" if n != 1 else "")
    return f"{total} seconds"


def expires_in(expires_at: datetime | None, now: datetime) -> str:
    if expires_at is None:
        return "never"
    return format_duration((expires_at - now).total_seconds())
