from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from shift_ledger.shift_window import (
    iter_shift_days,
    resolve_shift_day,
    shift_window,
    to_shift_date_key,
)

BKK = ZoneInfo("Asia/Bangkok")


def test_receipts_either_side_of_cutover() -> None:
    early = datetime(2025, 10, 19, 2, 45, tzinfo=BKK)
    late = datetime(2025, 10, 19, 3, 5, tzinfo=BKK)
    assert to_shift_date_key(early) == "2025-10-18"
    assert to_shift_date_key(late) == "2025-10-19"


def test_cutover_instant_belongs_to_new_day() -> None:
    assert resolve_shift_day(datetime(2025, 10, 19, 3, 0, 0, tzinfo=BKK)) == date(2025, 10, 19)
    assert resolve_shift_day(datetime(2025, 10, 19, 2, 59, 59, 999999, tzinfo=BKK)) == date(2025, 10, 18)


def test_resolution_uses_business_timezone() -> None:
    # 19:59 UTC is 02:59 next day in Bangkok.
    assert resolve_shift_day(datetime(2025, 10, 18, 19, 59, tzinfo=timezone.utc)) == date(2025, 10, 18)
    assert resolve_shift_day(datetime(2025, 10, 18, 20, 0, tzinfo=timezone.utc)) == date(2025, 10, 19)


def test_naive_timestamps_are_utc() -> None:
    assert resolve_shift_day(datetime(2025, 10, 18, 20, 0)) == date(2025, 10, 19)


def test_resolution_is_stable() -> None:
    at = datetime(2025, 12, 31, 23, 30, tzinfo=BKK)
    assert {resolve_shift_day(at) for _ in range(5)} == {date(2025, 12, 31)}


def test_shift_date_key_accepts_dates_and_strings() -> None:
    assert to_shift_date_key(date(2025, 1, 2)) == "2025-01-02"
    assert to_shift_date_key("2025-01-02") == "2025-01-02"
    assert to_shift_date_key("2025-01-02T17:00:00+07:00") == "2025-01-02"


def test_shift_window_is_half_open_utc_interval() -> None:
    starts_at, ends_at = shift_window("2025-10-19")
    assert starts_at == datetime(2025, 10, 18, 20, 0, tzinfo=timezone.utc)
    assert ends_at == datetime(2025, 10, 19, 20, 0, tzinfo=timezone.utc)
    assert resolve_shift_day(starts_at) == date(2025, 10, 19)
    assert resolve_shift_day(ends_at) == date(2025, 10, 20)


def test_iter_shift_days_is_inclusive() -> None:
    days = list(iter_shift_days("2025-10-30", "2025-11-02"))
    assert days == [date(2025, 10, 30), date(2025, 10, 31), date(2025, 11, 1), date(2025, 11, 2)]
