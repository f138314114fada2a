"""Date/time helpers for portal (US-format) values.

Only ``MM/DD/YYYY`` (or two-digit year) dates and ``HH:MM[:SS]`` times with
an optional AM/PM suffix are understood; anything else yields ``None`` / 0.
"""
from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_US_DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2,4})")
_US_DATETIME_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})\s*(\d{1,2}):(\d{2})(?::(\d{2}))?")
_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})(?::\d{2})?\s*([AaPp][Mm])?")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_us_date(text: str | None) -> date | None:
    if not text:
        return None
    raw = text.strip()
    iso = _ISO_DATE_RE.match(raw)
    try:
        if iso:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        match = _US_DATE_RE.search(raw)
        if not match:
            return None
        year = match.group(3)
        if len(year) == 2:
            year = "20" + year
        return date(int(year), int(match.group(1)), int(match.group(2)))
    except ValueError:
        return None


def parse_us_datetime(text: str | None) -> datetime | None:
    if not text:
        return None
    match = _US_DATETIME_RE.search(text)
    if not match:
        return None
    month, day, year, hour, minute, second = match.groups()
    try:
        return datetime(int(year), int(month), int(day), int(hour), int(minute), int(second or 0))
    except ValueError:
        return None


def find_us_datetimes(text: str) -> list[datetime]:
    found: list[datetime] = []
    for match in _US_DATETIME_RE.finditer(text or ""):
        parsed = parse_us_datetime(match.group(0))
        if parsed is not None:
            found.append(parsed)
    return found


def parse_clock_minutes(text: str | None) -> int:
    """Minutes after midnight for ``HH:MM`` (AM/PM aware); 0 when absent."""

    if not text:
        return 0
    match = _CLOCK_RE.search(text)
    if not match:
        return 0
    hour, minute, suffix = int(match.group(1)), int(match.group(2)), match.group(3)
    if suffix:
        suffix = suffix.upper()
        hour = hour % 12
        if suffix == "PM":
            hour += 12
    if hour > 23 or minute > 59:
        return 0
    return hour * 60 + minute


def minutes_to_clock(minutes: float) -> str:
    if not math.isfinite(minutes):
        return "12:00 PM"
    total = int(minutes)
    if total < 0:
        total += 1440
    hour = (total // 60) % 24
    minute = total % 60
    suffix = "PM" if hour >= 12 else "AM"
    hour = hour % 12 or 12
    return f"{hour}:{minute:02d} {suffix}"


def days_before(target: date, today: date) -> int:
    """Whole days from ``target`` to ``today``; negative for future dates."""

    return (today - target).days


def is_within_days(target: date, today: date, days: int) -> bool:
    return days_before(target, today) <= days
