import calendar
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import BadRequestError


class Granularity(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def today_local() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def _parse(value: Union[str, date], label: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise BadRequestError(f"Invalid {label} format, expected YYYY-MM-DD") from exc


def resolve_range(
    start: Optional[Union[str, date]], end: Optional[Union[str, date]]
) -> Period:
    if not start or not end:
        raise BadRequestError("Start date and end date are required")
    start_date = _parse(start, "start date")
    end_date = _parse(end, "end date")
    if start_date > end_date:
        raise BadRequestError("Start date must be before end date")
    return Period("custom", start_date, end_date)


def subtract_months(d: date, months: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) - months
    year = month_index // 12
    month = (month_index % 12) + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def trailing_months(months: int, *, today: Optional[date] = None) -> Period:
    today = today or today_local()
    return Period("trailing", subtract_months(today, months), today)


def period_key(d: date, granularity: Granularity) -> str:
    if granularity == Granularity.day:
        return d.isoformat()
    if granularity == Granularity.week:
        iso_year, iso_week, _ = d.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    if granularity == Granularity.year:
        return f"{d.year:04d}"
    return f"{d.year:04d}-{d.month:02d}"
