from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from clinicline.time_window import (
    MIN_LEAD,
    TimeWindow,
    _ordinal,
    parse_iso,
    resolve_time_window,
    speakable_time,
)

from conftest import NOW, TZ

BNE = ZoneInfo(TZ)


def at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=BNE)


class TestResolveTimeWindow:
    def test_no_preference_searches_two_weeks(self):
        w = resolve_time_window("", NOW)
        assert w.start == NOW + MIN_LEAD
        assert w.end == NOW + timedelta(days=14)
        assert w.description == "in the next two weeks"

    def test_soonest_searches_two_weeks(self):
        assert resolve_time_window("soonest", NOW).description == "in the next two weeks"

    def test_weekday_later_this_week(self):
        w = resolve_time_window("tuesday morning", NOW)
        assert w.start == at(3, 8)
        assert w.end == at(3, 12)
        assert w.description == "on Tuesday the 3rd"

    def test_earlier_weekday_rolls_to_next_week(self):
        w = resolve_time_window("sunday", NOW)
        assert w.start == at(8, 8)
        assert w.description == "on Sunday the 8th"

    def test_todays_weekday_still_open_means_today(self):
        w = resolve_time_window("monday morning", NOW)
        assert w.start == NOW + MIN_LEAD
        assert w.end == at(2, 12)
        assert w.description == "on Monday the 2nd"

    def test_todays_weekday_already_closed_rolls_a_week(self):
        late = at(2, 17, 50)
        w = resolve_time_window("monday", late)
        assert w.start == at(9, 8)
        assert w.end == at(9, 18)
        assert w.description == "on Monday the 9th"

    def test_next_weekday_is_in_following_week(self):
        w = resolve_time_window("next tuesday", NOW)
        assert w.start == at(10, 8)
        assert w.description == "on Tuesday the 10th"

    def test_next_week(self):
        w = resolve_time_window("next week", NOW)
        assert w.start == at(9, 0)
        assert w.end == at(16, 0)
        assert w.description == "next week"

    def test_tomorrow_afternoon(self):
        w = resolve_time_window("tomorrow afternoon", NOW)
        assert (w.start, w.end) == (at(3, 12), at(3, 17))
        assert w.description == "tomorrow"

    def test_clock_time_brackets_the_hour(self):
        w = resolve_time_window("tomorrow 3:00 pm", NOW)
        assert (w.start, w.end) == (at(3, 14), at(3, 17))

    def test_today_after_window_closed_rolls_to_tomorrow(self):
        w = resolve_time_window("today morning", at(2, 12, 30))
        assert (w.start, w.end) == (at(3, 8), at(3, 12))
        assert w.description == "tomorrow"

    def test_today_is_clamped_to_lead_time(self):
        w = resolve_time_window("today afternoon", at(2, 13))
        assert w.start == at(2, 13, 15)
        assert w.description == "today"


class TestTimeWindow:
    def test_contains_is_half_open(self):
        w = TimeWindow(at(3, 8), at(3, 12), "x")
        assert w.contains(at(3, 8))
        assert w.contains(at(3, 11, 59))
        assert not w.contains(at(3, 12))


class TestSpeakable:
    def test_speakable_with_minutes(self):
        assert speakable_time("2026-03-03T10:30:00+10:00", TZ) == "Tuesday the 3rd at 10:30 am"

    def test_speakable_converts_utc(self):
        assert speakable_time("2026-03-02T23:00:00Z", TZ) == "Tuesday the 3rd at 9 am"

    def test_speakable_afternoon(self):
        assert speakable_time("2026-03-21T13:00:00+10:00", TZ) == "Saturday the 21st at 1 pm"

    @pytest.mark.parametrize("day,expected", [(1, "1st"), (2, "2nd"), (11, "11th"), (13, "13th"), (22, "22nd")])
    def test_ordinal(self, day, expected):
        assert _ordinal(day) == expected

    def test_parse_iso_accepts_z(self):
        assert parse_iso("2026-03-02T23:00:00Z") == at(3, 9)
