"""Tests for the working hours policy."""

from datetime import date, datetime, timedelta, timezone

import pytest

from counselbot.core.scheduling.hours import WorkingHoursPolicy, format_hour

from tests.conftest import MONDAY, at


class TestFormatHour:
    def test_morning_and_afternoon(self):
        assert format_hour(8) == "8:00 AM"
        assert format_hour(12) == "12:00 PM"
        assert format_hour(17) == "5:00 PM"
        assert format_hour(0) == "12:00 AM"


class TestValidInstant:
    """Test is_valid_instant."""

    def test_inside_hours(self, policy):
        check = policy.is_valid_instant(at(9))
        assert check.ok
        assert check

    def test_before_opening(self, policy):
        check = policy.is_valid_instant(at(7))
        assert not check
        assert check.reason == "Appointments are only available from 8:00 AM onwards"

    def test_closing_hour_is_excluded(self, policy):
        check = policy.is_valid_instant(at(17))
        assert not check
        assert check.reason == "Appointments are only available until 5:00 PM"

    def test_last_minute_before_closing(self, policy):
        assert policy.is_valid_instant(at(16, 59))

    def test_weekend(self, policy):
        saturday = MONDAY + timedelta(days=5)
        check = policy.is_valid_instant(at(10, day=saturday))
        assert not check
        assert check.reason == "Appointments are not available on Saturdays"

    def test_lunch_break(self, policy):
        check = policy.is_valid_instant(at(12, 30))
        assert not check
        assert "lunch break (12:00 PM - 1:00 PM)" in check.reason

    def test_aware_instant_converted_to_business_timezone(self, policy):
        # 05:00 UTC is 08:00 in Nairobi
        assert policy.is_valid_instant(datetime(2030, 1, 7, 5, 0, tzinfo=timezone.utc))
        # 04:59 UTC is 07:59 in Nairobi
        assert not policy.is_valid_instant(datetime(2030, 1, 7, 4, 59, tzinfo=timezone.utc))

    def test_no_lunch_configured(self):
        policy = WorkingHoursPolicy("Africa/Nairobi", 8, 17, {1, 2, 3, 4, 5})
        assert policy.is_valid_instant(at(12, 30))


class TestValidRange:
    """Test is_valid_range."""

    def test_session_inside_hours(self, policy):
        assert policy.is_valid_range(at(15), at(16))
        assert policy.is_valid_range(at(16), at(16, 59))

    def test_session_ending_at_closing(self, policy):
        check = policy.is_valid_range(at(16), at(17))
        assert not check
        assert check.reason == "Appointments are only available until 5:00 PM"

    def test_session_ending_when_lunch_starts(self, policy):
        check = policy.is_valid_range(at(11), at(12))
        assert not check
        assert "during lunch break" in check.reason

    def test_session_running_past_closing(self, policy):
        check = policy.is_valid_range(at(16, 30), at(17, 30))
        assert not check
        assert check.reason == "Appointments are only available until 5:00 PM"

    def test_session_across_lunch(self, policy):
        check = policy.is_valid_range(at(11, 30), at(13, 30))
        assert not check
        assert "across lunch break" in check.reason

    def test_end_before_start(self, policy):
        check = policy.is_valid_range(at(10), at(9))
        assert check.reason == "End time must be after start time"

    def test_zero_length(self, policy):
        assert not policy.is_valid_range(at(10), at(10))

    def test_spanning_midnight(self, policy):
        check = policy.is_valid_range(at(16), at(9, day=MONDAY + timedelta(days=1)))
        assert check.reason == "Appointments cannot span multiple days"

    def test_start_out_of_hours(self, policy):
        check = policy.is_valid_range(at(7), at(8))
        assert check.reason == "Appointments are only available from 8:00 AM onwards"


class TestAvailableSlots:
    def test_hour_slots_skip_lunch(self, policy):
        slots = policy.available_slots(date(2030, 1, 7), 60)
        labels = [slot.label() for slot in slots]

        assert labels == [
            "08:00 - 09:00",
            "09:00 - 10:00",
            "10:00 - 11:00",
            "13:00 - 14:00",
            "14:00 - 15:00",
            "15:00 - 16:00",
        ]

    def test_ninety_minutes_resume_after_lunch(self, policy):
        slots = policy.available_slots(date(2030, 1, 7), 90)
        labels = [slot.label() for slot in slots]

        assert labels == ["08:00 - 09:30", "09:30 - 11:00", "13:00 - 14:30", "14:30 - 16:00"]

    def test_non_working_day(self, policy):
        assert policy.available_slots(date(2030, 1, 12), 60) == []


class TestDescribe:
    def test_default_week(self, policy):
        assert policy.describe() == (
            "Monday to Friday, 8:00 AM - 5:00 PM (lunch break 12:00 PM - 1:00 PM)"
        )

    def test_custom_days(self):
        policy = WorkingHoursPolicy("Africa/Nairobi", 9, 13, {2, 4})
        assert policy.describe() == "Tuesday, Thursday, 9:00 AM - 1:00 PM"


class TestConstruction:
    def test_rejects_inverted_hours(self):
        with pytest.raises(ValueError):
            WorkingHoursPolicy("Africa/Nairobi", 17, 8, {1})
