"""Tests for time-zone conversion and timestamp encoding."""

from datetime import UTC, date, datetime, time

import pytest

from commitbet.core import clock


@pytest.mark.unit
class TestZoneConversion:
    def test_local_to_utc_before_dst(self):
        assert clock.local_to_utc(date(2026, 3, 2), time(9, 0), "America/New_York") == datetime(
            2026, 3, 2, 14, 0, tzinfo=UTC
        )

    def test_local_to_utc_after_dst(self):
        assert clock.local_to_utc(date(2026, 3, 9), time(9, 0), "America/New_York") == datetime(
            2026, 3, 9, 13, 0, tzinfo=UTC
        )

    def test_missing_zone_uses_default(self):
        assert clock.local_to_utc(date(2026, 3, 2), time(9, 0), None) == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def test_unknown_zone_raises(self):
        with pytest.raises(ValueError, match="Unknown time zone"):
            clock.get_zone("Nowhere/Special")

    def test_local_today_follows_zone(self, frozen_clock):
        frozen_clock.set(datetime(2026, 3, 2, 3, 0, tzinfo=UTC))

        assert clock.local_today("UTC") == date(2026, 3, 2)
        assert clock.local_today("America/Los_Angeles") == date(2026, 3, 1)

    def test_local_day_bounds(self):
        start, end = clock.local_day_bounds(date(2026, 3, 2), "America/Toronto")

        assert start == datetime(2026, 3, 2, 5, 0, tzinfo=UTC)
        assert end == datetime(2026, 3, 3, 5, 0, tzinfo=UTC)


@pytest.mark.unit
class TestTimestamps:
    def test_naive_datetime_rejected(self):
        with pytest.raises(ValueError, match="explicit time zone"):
            clock.ensure_utc(datetime(2026, 3, 2, 12, 0))

    def test_storage_format_is_fixed_width_utc(self):
        value = datetime.fromisoformat("2026-03-02T09:00:00-05:00")

        assert clock.to_db_timestamp(value) == "2026-03-02T14:00:00.000000Z"
        assert clock.from_db_timestamp("2026-03-02T14:00:00.000000Z") == value

    def test_storage_format_sorts_chronologically(self):
        earlier = clock.to_db_timestamp(datetime(2026, 3, 2, 9, 59, 59, 999999, tzinfo=UTC))
        later = clock.to_db_timestamp(datetime(2026, 3, 2, 10, 0, tzinfo=UTC))

        assert earlier < later
