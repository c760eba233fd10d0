from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_now() -> datetime:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    settings = get_settings()
    return value.astimezone(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def add_months(year: int, month: int, count: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + count
    return total // 12, total % 12 + 1


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    next_year, next_month = add_months(year, month, 1)
    return date(next_year, next_month, 1) - date.resolution


def bucket_for(occurred_at: datetime) -> tuple[int, int]:
    return occurred_at.year, occurred_at.month


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    """Half-open [first day 00:00, first day of next month 00:00)."""
    next_year, next_month = add_months(year, month, 1)
    return (
        datetime(year, month, 1),
        datetime(next_year, next_month, 1),
    )


def range_bounds(
    start: Optional[date | datetime], end: Optional[date | datetime]
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Normalise an inclusive range to [lower, upper) datetimes.

    A bare date as ``end`` covers the whole of that day.
    """
    lower: Optional[datetime] = None
    upper: Optional[datetime] = None
    if start is not None:
        if isinstance(start, datetime):
            lower = to_local_naive(start)
        else:
            lower = datetime.combine(start, time.min)
    if end is not None:
        if isinstance(end, datetime):
            upper = to_local_naive(end) + timedelta(microseconds=1)
        else:
            upper = datetime.combine(end + timedelta(days=1), time.min)
    return lower, upper


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        year, month = add_months(today.year, today.month, -1)
        return Period("last_month", month_start(year, month), month_end(year, month))
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    # this month
    return Period(
        "this_month",
        month_start(today.year, today.month),
        month_end(today.year, today.month),
    )
