from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Union
from zoneinfo import ZoneInfo

from shift_ledger.config import settings

ShiftDayLike = Union[datetime, date, str]


def business_tz() -> ZoneInfo:
    return ZoneInfo(settings.business_timezone)


def _cutover() -> time:
    return time(settings.shift_cutover_hour, 0)


def as_utc(value: datetime) -> datetime:
    # Storage convention: naive timestamps are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_shift_day(at: datetime) -> date:
    local_at = as_utc(at).astimezone(business_tz())
    shift_day = local_at.date()
    if local_at.time() < _cutover():
        shift_day = shift_day - timedelta(days=1)
    return shift_day


def to_shift_date_key(value: ShiftDayLike) -> str:
    return parse_shift_day(value).isoformat()


def parse_shift_day(value: ShiftDayLike) -> date:
    if isinstance(value, datetime):
        return resolve_shift_day(value)
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def shift_window(shift_day: ShiftDayLike) -> tuple[datetime, datetime]:
    day = parse_shift_day(shift_day)
    starts_at = datetime.combine(day, _cutover(), tzinfo=business_tz())
    ends_at = datetime.combine(day + timedelta(days=1), _cutover(), tzinfo=business_tz())
    return starts_at.astimezone(timezone.utc), ends_at.astimezone(timezone.utc)


def iter_shift_days(start: ShiftDayLike, end: ShiftDayLike) -> Iterator[date]:
    current = parse_shift_day(start)
    last = parse_shift_day(end)
    while current <= last:
        yield current
        current += timedelta(days=1)
