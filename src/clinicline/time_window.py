"""Caller time preference → concrete search window.

A single pure function owns every calendar rule (weekday roll-over, a day
that has already passed, part-of-day hours) so the edge cases are testable
with a fixed ``now``.
"""

import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from clinicline.validation import CLOCK_TIME, WEEKDAYS, day_phrase

DEFAULT_TZ = "Australia/Brisbane"
MIN_LEAD = timedelta(minutes=15)
OPEN_SEARCH_DAYS = 14

PART_HOURS = {
    "morning": (8, 12),
    "afternoon": (12, 17),
    "evening": (17, 20),
}
BUSINESS_HOURS = (8, 18)


@dataclass
class TimeWindow:
    start: datetime
    end: datetime
    description: str

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def now_local(tz: str = DEFAULT_TZ) -> datetime:
    """Current time in the clinic timezone. Extracted for test mocking."""
    return datetime.now(ZoneInfo(tz))


def _at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day.date(), time(hour, minute), tzinfo=day.tzinfo)


def _hours_for(preference: str) -> tuple[int, int, Optional[tuple[int, int]]]:
    """(start hour, end hour, specific clock time) for the preference text."""
    clock = CLOCK_TIME.search(preference)
    if clock:
        hour = int(clock.group(1)) % 12
        minute = int(clock.group(2) or 0)
        if clock.group(3) == "p":
            hour += 12
        return hour, hour, (hour, minute)
    for part, (start, end) in PART_HOURS.items():
        if re.search(rf"\b{part}\b", preference):
            return start, end, None
    return BUSINESS_HOURS[0], BUSINESS_HOURS[1], None


def _day_window(day: datetime, preference: str) -> tuple[datetime, datetime]:
    start_hour, end_hour, clock = _hours_for(preference)
    if clock:
        anchor = _at(day, clock[0], clock[1])
        return anchor - timedelta(hours=1), anchor + timedelta(hours=2)
    return _at(day, start_hour), _at(day, end_hour)


def resolve_time_window(preference: str, now: Optional[datetime] = None, tz: str = DEFAULT_TZ) -> TimeWindow:
    """Resolve a normalised preference ("tuesday morning", "tomorrow") to a window.

    Weekday rules:
    - a weekday later this week is this week's occurrence;
    - a weekday earlier in the week rolls to next week;
    - today's weekday means today only while the requested part of the day is
      still open, otherwise the same weekday next week;
    - "next <weekday>" is that weekday in the following Monday-started week.
    No recognisable day searches the next two weeks.
    """
    now = now or now_local(tz)
    earliest = now + MIN_LEAD
    text = (preference or "").lower().strip()
    today = _at(now, 0)
    day = day_phrase(text)

    if not day:
        return TimeWindow(earliest, now + timedelta(days=OPEN_SEARCH_DAYS), "in the next two weeks")

    if day == "next week":
        monday = today + timedelta(days=7 - today.weekday())
        return TimeWindow(max(monday, earliest), monday + timedelta(days=7), "next week")

    if day == "today":
        target = today
        start, end = _day_window(target, text)
        if end <= earliest:
            target = today + timedelta(days=1)
            start, end = _day_window(target, text)
            return TimeWindow(max(start, earliest), end, "tomorrow")
        return TimeWindow(max(start, earliest), end, "today")

    if day == "tomorrow":
        start, end = _day_window(today + timedelta(days=1), text)
        return TimeWindow(max(start, earliest), end, "tomorrow")

    weekday = day.replace("next ", "")
    index = WEEKDAYS.index(weekday)
    if day.startswith("next "):
        week_start = today - timedelta(days=today.weekday())
        target = week_start + timedelta(days=7 + index)
    else:
        delta = (index - today.weekday()) % 7
        target = today + timedelta(days=delta)
        if delta == 0:
            _, end = _day_window(target, text)
            if end <= earliest:
                target = today + timedelta(days=7)

    start, end = _day_window(target, text)
    return TimeWindow(max(start, earliest), end, f"on {weekday.title()} the {_ordinal(target.day)}")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def speakable_time(value: str, tz: str = DEFAULT_TZ) -> str:
    """Spoken form of a slot start, e.g. "Tuesday the 4th at 10:30 am"."""
    local = parse_iso(value).astimezone(ZoneInfo(tz))
    hour = local.hour % 12 or 12
    minutes = f":{local.minute:02d}" if local.minute else ""
    meridiem = "am" if local.hour < 12 else "pm"
    return f"{local.strftime('%A')} the {_ordinal(local.day)} at {hour}{minutes} {meridiem}"
