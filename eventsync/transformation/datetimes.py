"""
Date and Time Normalization

Turns the loosely typed date/time values found in upstream order metadata,
ticketing payloads and product titles into ``datetime.date`` objects and
24-hour ``HH:MM`` strings.

Features:
- Multi-format date parsing (ISO, M/D/Y then D/M/Y, D.M.Y, month names)
- 12/24-hour time parsing
- Time and date extraction from free text
- Symmetric time-buffer comparison
"""

import re
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any, Optional

EPOCH_DATE = date(1970, 1, 1)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
_DOT_DATE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2}|\d{4})$")
_ORDINAL = re.compile(r"(\d{1,2})(st|nd|rd|th)\b", re.IGNORECASE)
_TIME_VALUE = re.compile(
    r"^(\d{1,2})(?:[:.](\d{2}))?(?::\d{2})?\s*([ap])?\.?\s*(?:m\.?)?$",
    re.IGNORECASE,
)

# Month-name formats tried after ordinal suffixes are stripped
_NAMED_MONTH_FORMATS = [
    "%B %d, %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%d %B, %Y",
    "%A, %B %d, %Y",
    "%a, %b %d, %Y",
    "%A %B %d %Y",
    "%a %b %d %Y",
]

# Title patterns, most specific first
_TITLE_TIME_PATTERNS = [
    re.compile(r"(\d{1,2})[ :]?([0-5][0-9])?\s*(am|pm)", re.IGNORECASE),
    re.compile(r"(\d{1,2})[:.](\d{2})"),
    re.compile(r"(\d{1,2})\s*o'?clock", re.IGNORECASE),
]

_MONTHS = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?"
_TITLE_DATE_PATTERNS = [
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(rf"\b{_MONTHS}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b", re.IGNORECASE),
    re.compile(rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+{_MONTHS},?\s+\d{{4}}\b", re.IGNORECASE),
    re.compile(r"\b\d{1,2}/\d{1,2}/(?:\d{4}|\d{2})\b"),
    re.compile(r"\b\d{1,2}\.\d{1,2}\.(?:\d{4}|\d{2})\b"),
]


# =============================================================================
# TIME
# =============================================================================

def _format_time(hour: int, minute: int, meridiem: Optional[str] = None) -> Optional[str]:
    if meridiem:
        meridiem = meridiem.lower()
        if not 1 <= hour <= 12:
            return None
        if meridiem == "p" and hour < 12:
            hour += 12
        elif meridiem == "a" and hour == 12:
            hour = 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return f"{hour:02d}:{minute:02d}"


def parse_time_value(value: Any) -> Optional[str]:
    """
    Parse a time value into 24-hour ``HH:MM``.

    Accepts ``time``/``datetime`` objects and strings such as "20:00",
    "8:00 PM", "8pm", "8 p.m." and "20:00:00". Returns None when the value
    is empty or not a valid time of day.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime("%H:%M")
    if isinstance(value, time):
        return value.strftime("%H:%M")

    text = str(value).strip()
    if not text:
        return None

    match = _TIME_VALUE.match(text)
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2)) if match.group(2) else 0
    return _format_time(hour, minute, match.group(3))


def time_to_minutes(value: str) -> int:
    """Minutes since midnight for an ``HH:MM`` string"""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def is_time_close(first: Optional[str], second: Optional[str], buffer_minutes: int = 30) -> bool:
    """True when both times are set and at most ``buffer_minutes`` apart"""
    if not first or not second:
        return False
    return abs(time_to_minutes(first) - time_to_minutes(second)) <= buffer_minutes


def extract_time_from_title(title: Optional[str]) -> Optional[str]:
    """Find a show time like "8pm", "8:30 PM", "20:00" or "8 o'clock" in a title"""
    if not title:
        return None

    for pattern in _TITLE_TIME_PATTERNS:
        match = pattern.search(title)
        if not match:
            continue
        groups = match.groups()
        hour = int(groups[0])
        minute = int(groups[1]) if len(groups) > 1 and groups[1] else 0
        meridiem = groups[2][0] if len(groups) > 2 and groups[2] else None
        parsed = _format_time(hour, minute, meridiem)
        if parsed:
            return parsed
    return None


# =============================================================================
# DATE
# =============================================================================

def _expand_year(year: str) -> int:
    # Two-digit years are always this century
    return int("20" + year) if len(year) == 2 else int(year)


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _accept(value: Optional[date]) -> Optional[date]:
    if value is None or value <= EPOCH_DATE:
        return None
    return value


def parse_date_value(value: Any) -> Optional[date]:
    """
    Parse a loosely typed date into a ``date``.

    Handles, in order:
    - ``date``/``datetime`` objects
    - dicts carrying a "date" key and lists (first element)
    - ISO "YYYY-MM-DD"
    - "M/D/Y", falling back to "D/M/Y" when the month is out of range
    - "D.M.Y"
    - month names ("June 1, 2025", "1st June 2025", "Sun, Jun 1, 2025")
    - ISO datetimes ("2025-06-01T20:00:00-04:00")

    Dates in or before 1970 are rejected as misparsed timestamps.
    """
    if isinstance(value, dict):
        value = value.get("date")
    elif isinstance(value, (list, tuple)):
        value = value[0] if value else None

    if isinstance(value, datetime):
        return _accept(value.date())
    if isinstance(value, date):
        return _accept(value)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    if _ISO_DATE.match(text):
        year, month, day = (int(part) for part in text.split("-"))
        return _accept(_safe_date(year, month, day))

    match = _SLASH_DATE.match(text)
    if match:
        first, second, year = int(match.group(1)), int(match.group(2)), _expand_year(match.group(3))
        return _accept(_safe_date(year, first, second) or _safe_date(year, second, first))

    match = _DOT_DATE.match(text)
    if match:
        day, month, year = int(match.group(1)), int(match.group(2)), _expand_year(match.group(3))
        return _accept(_safe_date(year, month, day))

    if re.search(r"[a-zA-Z]", text):
        cleaned = _ORDINAL.sub(r"\1", text)
        cleaned = re.sub(r"\s+", " ", cleaned.replace(".", "")).strip()
        for fmt in _NAMED_MONTH_FORMATS:
            try:
                return _accept(datetime.strptime(cleaned, fmt).date())
            except ValueError:
                continue

    try:
        return _accept(datetime.strptime(text, "%Y/%m/%d").date())
    except ValueError:
        pass

    try:
        return _accept(datetime.fromisoformat(text).date())
    except ValueError:
        return None


def extract_date_from_text(text: Optional[str]) -> Optional[date]:
    """Find the first parseable explicit date inside free text"""
    if not text:
        return None

    for pattern in _TITLE_DATE_PATTERNS:
        for match in pattern.finditer(text):
            parsed = parse_date_value(match.group(0))
            if parsed:
                return parsed
    return None


def to_local_date(value: datetime, tz: tzinfo) -> date:
    """Calendar date of an instant in the given timezone; naive values are UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).date()


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None
