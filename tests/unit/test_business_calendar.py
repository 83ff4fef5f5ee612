"""
Unit Tests for the Business Calendar

Python 3.8 Compatible

Covers the quota window (local midnight at a fixed UTC offset) and the
inventory-date cutoffs. 2024-06-03 is a Monday.
"""

import os
import sys
from datetime import date, datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.business_calendar import (
    business_day_start,
    inventory_date,
    to_local,
)

OFFSET = -5


def utc(year, month, day, hour=0, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


# =============================================================================
# Quota Window
# =============================================================================

class TestBusinessDayStart:

    def test_midday_maps_to_local_midnight(self):
        """Noon local on Monday starts the window at 05:00 UTC that day."""
        now = utc(2024, 6, 3, 17, 0)
        assert business_day_start(now, OFFSET) == utc(2024, 6, 3, 5, 0)

    def test_early_utc_belongs_to_previous_local_day(self):
        """02:00 UTC Tuesday is still Monday evening in UTC-5."""
        now = utc(2024, 6, 4, 2, 0)
        assert business_day_start(now, OFFSET) == utc(2024, 6, 3, 5, 0)

    def test_exact_local_midnight_opens_new_window(self):
        now = utc(2024, 6, 4, 5, 0)
        assert business_day_start(now, OFFSET) == now

    def test_result_is_utc(self):
        start = business_day_start(utc(2024, 6, 3, 12), OFFSET)
        assert start.utcoffset().total_seconds() == 0

    def test_naive_timestamp_rejected(self):
        with pytest.raises(ValueError):
            business_day_start(datetime(2024, 6, 3, 12), OFFSET)

    def test_to_local_applies_offset(self):
        local = to_local(utc(2024, 6, 3, 12), OFFSET)
        assert local.hour == 7
        assert local.utcoffset().total_seconds() == -5 * 3600


# =============================================================================
# Inventory Date
# =============================================================================

class TestInventoryDate:

    def test_weekday_before_cutoff_same_day(self):
        """Monday 16:59 local settles Monday."""
        assert inventory_date(utc(2024, 6, 3, 21, 59), OFFSET) == date(2024, 6, 3)

    def test_weekday_at_cutoff_next_day(self):
        """Monday 17:00 local settles Tuesday."""
        assert inventory_date(utc(2024, 6, 3, 22, 0), OFFSET) == date(2024, 6, 4)

    def test_friday_after_cutoff_rolls_to_saturday(self):
        assert inventory_date(utc(2024, 6, 7, 23, 0), OFFSET) == date(2024, 6, 8)

    def test_saturday_before_cutoff_same_day(self):
        """Saturday 14:59 local settles Saturday."""
        assert inventory_date(utc(2024, 6, 8, 19, 59), OFFSET) == date(2024, 6, 8)

    def test_saturday_at_cutoff_rolls_to_monday(self):
        """Saturday 15:00 local settles Monday."""
        assert inventory_date(utc(2024, 6, 8, 20, 0), OFFSET) == date(2024, 6, 10)

    @pytest.mark.parametrize("hour", [5, 12, 20])
    def test_sunday_always_monday(self, hour):
        assert inventory_date(utc(2024, 6, 9, hour), OFFSET) == date(2024, 6, 10)

    def test_local_date_used_not_utc_date(self):
        """01:00 UTC Tuesday is Monday 20:00 local, past the cutoff."""
        assert inventory_date(utc(2024, 6, 4, 1, 0), OFFSET) == date(2024, 6, 4)

    def test_sunday_evening_utc_is_still_sunday_locally(self):
        """Monday 03:00 UTC is Sunday 22:00 local."""
        assert inventory_date(utc(2024, 6, 10, 3, 0), OFFSET) == date(2024, 6, 10)
