from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    month: int
    year: int
    start: date
    end: date

    @property
    def slug(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end

    def overlaps(self, start: date, end: Optional[date]) -> bool:
        return start <= self.end and (end is None or end >= self.start)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def period_for(month: int, year: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError(f"Month must be between 1 and 12, got {month}")
    start = date(year, month, 1)
    end = start.replace(day=days_in_month(year, month))
    return Period(month, year, start, end)


def period_for_date(value: date) -> Period:
    return period_for(value.month, value.year)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def current_period(today: Optional[date] = None) -> Period:
    return period_for_date(today or local_today())
