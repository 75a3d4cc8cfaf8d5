from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    """Half-open datetime range ``[start, end)``."""

    slug: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def month_label(d: date) -> str:
    return d.replace(day=1).strftime("%b %Y")


def parse_month_key(value: str) -> tuple[int, int]:
    try:
        year_part, month_part = value.split("-")
        year, month = int(year_part), int(month_part)
    except ValueError as exc:
        raise ValueError("Month must be formatted as YYYY-MM") from exc
    if not 1 <= month <= 12 or not 1970 <= year <= 3000:
        raise ValueError("Month must be formatted as YYYY-MM")
    return year, month


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    next_first = add_months(first, 1)
    return Period(
        month_key(first),
        datetime.combine(first, time.min),
        datetime.combine(next_first, time.min),
    )


def trailing_months(as_of: date, count: int = 6) -> list[date]:
    """First days of the ``count`` months ending at ``as_of``'s month, oldest first."""
    first = as_of.replace(day=1)
    return [add_months(first, -offset) for offset in range(count - 1, -1, -1)]


def resolve_range(
    start: Optional[date],
    end: Optional[date],
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Turn optional inclusive calendar dates into half-open datetime bounds."""
    if start and end and start > end:
        raise ValueError("Start date must be before end date")
    lower = datetime.combine(start, time.min) if start else None
    upper = datetime.combine(end + timedelta(days=1), time.min) if end else None
    return lower, upper


def as_local_naive(moment: datetime) -> datetime:
    """Stored dates are naive wall-clock times in the configured timezone.

    Aware inputs are converted into that timezone first so month keys,
    month windows and ``local_today`` all share one calendar.
    """
    if moment.tzinfo is None:
        return moment
    tz = ZoneInfo(get_settings().timezone)
    return moment.astimezone(tz).replace(tzinfo=None)
