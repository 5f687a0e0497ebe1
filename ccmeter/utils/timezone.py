"""
Timezone helpers for grouping UTC timestamps by local calendar periods.

All events are held in UTC; conversion to a caller-chosen zone happens only
when computing day and month keys.
"""

import re
from datetime import datetime, timezone, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_FRACTION_RE = re.compile(r"([T ]\d{2}:\d{2}:\d{2})\.(\d+)")


def resolve_timezone(tz: Union[str, tzinfo, None]) -> tzinfo:
    """Resolve a timezone argument into a tzinfo.

    Args:
        tz: IANA name (e.g. 'Asia/Seoul'), a tzinfo instance, or None / 'auto'
            for the system local zone

    Returns:
        tzinfo usable with datetime.astimezone()

    Raises:
        ValueError: If the name is not a known IANA timezone
    """
    if isinstance(tz, tzinfo):
        return tz
    if tz is None or tz == "auto":
        return datetime.now().astimezone().tzinfo or timezone.utc
    if tz.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {tz}")


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_microseconds(match: "re.Match") -> str:
    return f"{match.group(1)}.{(match.group(2) + '000000')[:6]}"


def parse_timestamp(raw: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp as written in usage logs.

    Accepts a trailing 'Z' and fractional seconds of any length, which are
    padded or truncated to microseconds. Returns None when the value cannot
    be parsed.
    """
    if not isinstance(raw, str) or not raw:
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(_to_microseconds, text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def date_key(value: datetime, tz: tzinfo) -> str:
    """YYYY-MM-DD of the timestamp in the given zone."""
    return value.astimezone(tz).strftime("%Y-%m-%d")


def month_key(value: datetime, tz: tzinfo) -> str:
    """YYYY-MM of the timestamp in the given zone."""
    return value.astimezone(tz).strftime("%Y-%m")
