from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def add_months(moment: datetime, count: int) -> datetime:
    """First instant of the calendar month ``count`` months away from ``moment``."""
    month_index = (moment.year * 12) + (moment.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return datetime(year, month, 1)


def month_period(moment: datetime, offset: int = 0) -> Period:
    first = add_months(moment, offset)
    last_day = (add_months(first, 1) - timedelta(days=1)).date()
    end = datetime.combine(last_day, time(23, 59, 59))
    return Period(month_key(first), first, end)


def month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def trailing_months(moment: datetime, count: int) -> list[datetime]:
    return [add_months(moment, offset) for offset in range(-(count - 1), 1)]


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
