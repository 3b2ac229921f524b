# Timestamp helpers - every persisted timestamp is UTC ISO-8601 with milliseconds and a Z suffix

import re
from datetime import datetime, timezone
from typing import Optional

_FRACTION = re.compile(r'(\d{2}:\d{2}:\d{2})[.,](\d+)')


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (trailing Z allowed, naive means UTC); None when unparsable."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    text = _FRACTION.sub(lambda m: m.group(1) + '.' + m.group(2)[:6].ljust(6, '0'), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_iso(value) -> str:
    """Re-emit a parsable timestamp in canonical form, or now when it is not."""
    parsed = parse_iso(value)
    return to_iso(parsed) if parsed is not None else utc_now_iso()
