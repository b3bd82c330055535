from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, target: date) -> bool:
        return self.start <= target <= self.end


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period(f"{year:04d}-{month:02d}", first, next_month - date.resolution)


def parse_month(value: Optional[str], *, today: Optional[date] = None) -> Period:
    """Resolve a ``YYYY-MM`` string, defaulting to the current month."""
    today = today or date.today()
    if not value:
        return month_period(today.year, today.month)
    try:
        year_str, month_str = value.split("-", 1)
        year = int(year_str)
        month = int(month_str)
        return month_period(year, month)
    except ValueError as exc:
        raise ValidationError(f"Invalid month: {value!r}") from exc


def resolve_window(start: Optional[str], end: Optional[str]) -> Period:
    if not start or not end:
        raise ValidationError("Window requires start and end dates")
    try:
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if start_date > end_date:
        raise ValidationError("Start date must be before end date")
    return Period("window", start_date, end_date)
