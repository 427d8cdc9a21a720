from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import RangeRequiredError, ValidationError
from filters import Condition
from schemas import coerce_date

PERIOD_ALIASES = {
    "daily": "day",
    "weekly": "week",
    "monthly": "month",
    "yearly": "year",
}


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[date]
    end: Optional[date]

    def conditions(self) -> list[Condition]:
        conditions: list[Condition] = []
        if self.start is not None:
            conditions.append(Condition("date", "ge", self.start))
        if self.end is not None:
            conditions.append(Condition("date", "le", self.end))
        return conditions


ALL_TIME = Period("all", None, None)


def _month_end(first: date) -> date:
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start=None,
    end=None,
    *,
    today: Optional[date] = None,
) -> Period:
    """Map a period token to a concrete inclusive date window.

    Unknown tokens, ``all`` and an empty token mean "no constraint".
    """
    slug = (period or "all").strip().lower()
    slug = PERIOD_ALIASES.get(slug, slug)

    if slug == "custom":
        if not start or not end:
            raise RangeRequiredError()
        start_date = coerce_date(start, "start")
        end_date = coerce_date(end, "end")
        if start_date > end_date:
            raise ValidationError("Start date must not be after end date")
        return Period("custom", start_date, end_date)

    today = today or local_today()
    if slug == "day":
        return Period("day", today, today)
    if slug == "week":
        # same window as sqlite date('now', 'weekday 0', '-7 days')
        next_sunday = today + timedelta(days=(6 - today.weekday()) % 7)
        return Period("week", next_sunday - timedelta(days=7), today)
    if slug == "month":
        first = today.replace(day=1)
        return Period("month", first, _month_end(first))
    if slug == "year":
        return Period("year", date(today.year, 1, 1), date(today.year, 12, 31))
    return ALL_TIME
