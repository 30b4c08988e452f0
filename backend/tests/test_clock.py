from datetime import datetime, timezone

import pytest

from backend.services import clock


def test_resolve_local_uses_fixed_offset():
    stamp = clock.parse_time_for_date("2026-03-02", "09:00")
    assert stamp == int(datetime(2026, 3, 2, 2, 0, tzinfo=timezone.utc).timestamp() * 1000)
    assert clock.resolve_local(stamp) == ("2026-03-02", 1, "09:00")


def test_local_date_rolls_over_before_utc_midnight():
    # 17:30 UTC on Sunday is 00:30 Monday at UTC+7.
    stamp = int(datetime(2026, 3, 1, 17, 30, tzinfo=timezone.utc).timestamp() * 1000)
    assert clock.local_date(stamp) == "2026-03-02"
    assert clock.local_day_of_week(stamp) == 1
    assert clock.local_hhmm(stamp) == "00:30"


def test_day_of_week_convention_starts_on_sunday():
    assert clock.day_of_week_for_date("2026-03-01") == 0
    assert clock.day_of_week_for_date("2026-03-02") == 1
    assert clock.day_of_week_for_date("2026-03-07") == 6


def test_weekends():
    assert clock.is_weekend("2026-03-07")
    assert clock.is_weekend("2026-03-08")
    assert not clock.is_weekend("2026-03-09")


@pytest.mark.parametrize("value", ["9:00", "24:00", "12:60", "", "noon"])
def test_invalid_time_of_day(value):
    assert not clock.is_valid_time_of_day(value)
    with pytest.raises(ValueError):
        clock.parse_time_for_date("2026-03-02", value)


def test_invalid_dates():
    assert not clock.is_valid_date("2026-02-30")
    assert not clock.is_valid_date("02/03/2026")
    assert clock.is_valid_date("2026-02-28")


def test_iter_dates_is_inclusive():
    assert list(clock.iter_dates("2026-02-27", "2026-03-02")) == [
        "2026-02-27",
        "2026-02-28",
        "2026-03-01",
        "2026-03-02",
    ]
