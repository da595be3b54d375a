"""
Tests for funnel/utils/timezone.py - country lookup and messaging windows.
"""
from datetime import datetime, timezone

from funnel.utils.timezone import (
    calculate_optimal_send_time,
    get_country_code,
    get_local_time,
    get_messaging_window_status,
    get_timezone_context,
    get_timezone_from_country,
    is_friday_weekend_country,
)

# 2026-10-16 is a Friday, 2026-10-13 a Tuesday
FRIDAY_14_RIYADH = datetime(2026, 10, 16, 11, 0, tzinfo=timezone.utc)
TUESDAY_15_NEW_YORK = datetime(2026, 10, 13, 19, 0, tzinfo=timezone.utc)


class TestCountryLookup:
    def test_iso_code_passthrough(self):
        assert get_country_code("de") == "DE"

    def test_localized_names(self):
        assert get_country_code("Almanya") == "DE"
        assert get_country_code("السعودية") == "SA"
        assert get_country_code("Arabie Saoudite") == "SA"

    def test_unknown_country(self):
        assert get_country_code("Atlantis") is None
        assert get_timezone_from_country(None) is None

    def test_timezone_from_name(self):
        assert get_timezone_from_country("türkiye") == "Europe/Istanbul"

    def test_friday_weekend_countries(self):
        assert is_friday_weekend_country("ae")
        assert not is_friday_weekend_country("TR")
        assert not is_friday_weekend_country(None)


class TestMessagingWindow:
    def test_saudi_friday_afternoon_waits_until_saturday_morning(self):
        status = get_messaging_window_status("Asia/Riyadh", "SA", now=FRIDAY_14_RIYADH)
        assert status.current_hour == 14
        assert status.is_weekend
        assert status.can_send is False
        assert status.wait_hours == 19

    def test_us_tuesday_afternoon_is_open(self):
        status = get_messaging_window_status("America/New_York", "US", now=TUESDAY_15_NEW_YORK)
        assert status.current_hour == 15
        assert status.can_send is True
        assert status.wait_hours == 0

    def test_sleeping_hours(self):
        # 23:00 in Istanbul (UTC+3)
        now = datetime(2026, 10, 13, 20, 0, tzinfo=timezone.utc)
        status = get_messaging_window_status("Europe/Istanbul", "TR", now=now)
        assert status.can_send is False
        assert status.wait_hours == 10

    def test_friday_is_a_weekday_outside_gulf(self):
        # Friday 14:00 in Berlin (UTC+2 in October)
        now = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
        status = get_messaging_window_status("Europe/Berlin", "DE", now=now)
        assert status.can_send is True

    def test_weekend_check_can_be_disabled(self):
        status = get_messaging_window_status(
            "Asia/Riyadh", "SA", avoid_weekends=False, now=FRIDAY_14_RIYADH
        )
        assert status.can_send is True

    def test_unknown_zone_falls_back_to_utc(self):
        local = get_local_time("Mars/Olympus", TUESDAY_15_NEW_YORK)
        assert local.hour == 19


class TestOptimalSendTime:
    def test_without_timezone_uses_plain_delay(self):
        result = calculate_optimal_send_time(None, 2, now=TUESDAY_15_NEW_YORK)
        assert result == datetime(2026, 10, 13, 21, 0, tzinfo=timezone.utc)

    def test_inside_window_keeps_delay(self):
        result = calculate_optimal_send_time("America/New_York", 2, "US", now=TUESDAY_15_NEW_YORK)
        assert get_local_time("America/New_York", result).hour == 17

    def test_late_evening_rolls_to_next_morning(self):
        # 15:00 + 7h = 22:00 local -> next day 09:00
        result = calculate_optimal_send_time("America/New_York", 7, "US", now=TUESDAY_15_NEW_YORK)
        local = get_local_time("America/New_York", result)
        assert local.hour == 9
        assert local.weekday() == 2

    def test_gulf_friday_pushed_past_weekend(self):
        result = calculate_optimal_send_time("Asia/Riyadh", 1, "SA", now=FRIDAY_14_RIYADH)
        local = get_local_time("Asia/Riyadh", result)
        assert local.weekday() not in (4, 5)


def test_timezone_context_without_country():
    ctx = get_timezone_context(None)
    assert ctx["timezone"] is None
    assert ctx["is_messaging_hours"] is True


def test_timezone_context_with_country():
    ctx = get_timezone_context("Saudi Arabia", now=FRIDAY_14_RIYADH)
    assert ctx["timezone"] == "Asia/Riyadh"
    assert ctx["local_time"] == "14:00"
    assert ctx["local_day"] == "Friday"
    assert ctx["hours_until_next_window"] == 19
