from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from errors import InvalidInput
from instants import to_instant, utc_now


@dataclass(frozen=True)
class Period:
    """Closed interval of instants: both ``start`` and ``end`` are included."""

    slug: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= to_instant(moment) <= self.end


def _local_midnight(year: int, month: int, tz: ZoneInfo) -> datetime:
    return datetime(year, month, 1, tzinfo=tz)


def month_period(year: int, month: int, timezone: str = "UTC") -> Period:
    tz = ZoneInfo(timezone)
    start_local = _local_midnight(year, month, tz)
    if month == 12:
        next_local = _local_midnight(year + 1, 1, tz)
    else:
        next_local = _local_midnight(year, month + 1, tz)
    start = to_instant(start_local)
    end = to_instant(next_local) - timedelta(microseconds=1)
    return Period(f"{year:04d}-{month:02d}", start, end)


def local_month(moment: datetime, timezone: str = "UTC") -> tuple[int, int]:
    local = to_instant(moment).astimezone(ZoneInfo(timezone))
    return local.year, local.month


def current_month(now: Optional[datetime] = None, timezone: str = "UTC") -> Period:
    year, month = local_month(now or utc_now(), timezone)
    return month_period(year, month, timezone)


def previous_month(now: Optional[datetime] = None, timezone: str = "UTC") -> Period:
    year, month = local_month(now or utc_now(), timezone)
    if month == 1:
        return month_period(year - 1, 12, timezone)
    return month_period(year, month - 1, timezone)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    now: Optional[datetime] = None,
    timezone: str = "UTC",
) -> Period:
    now = now or utc_now()
    if period == "last_month":
        return previous_month(now, timezone)
    if period == "custom":
        if not start or not end:
            raise InvalidInput("Custom period requires start and end dates")
        try:
            start_at = to_instant(start)
            end_at = to_instant(end)
        except ValueError as exc:
            raise InvalidInput(str(exc)) from exc
        if len(end.strip()) == 10:
            # A bare date as the end bound covers that whole day.
            end_at = datetime.combine(
                end_at.date(), time.max, tzinfo=end_at.tzinfo
            )
        if start_at > end_at:
            raise InvalidInput("Start date must be before end date")
        return Period("custom", start_at, end_at)
    return current_month(now, timezone)
