"""
Calendar Periods

Reporting windows (month, year, all time) and their intersection with a
record's validity interval.

A window is a closed range of calendar days: [start, end], where any date
ON the last day is inside. A record's validity interval is half-open:
[start_date, end_bound). Intersections are carried as half-open day
ranges so both rules compose without off-by-one errors.
"""

import re
from datetime import date, timedelta
from typing import Annotated, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from budget_tracker.dates import first_of_month, last_day_of_month, parse_local_date

__all__ = [
    "AllTimePeriod",
    "CalendarPeriod",
    "DateWindow",
    "InvalidPeriodError",
    "MonthPeriod",
    "PeriodOverlap",
    "YearPeriod",
    "intersect",
    "iter_month_starts",
    "month_window",
    "parse_local_date",
    "parse_reporting_period",
    "year_window",
]


class InvalidPeriodError(ValueError):
    """A reporting period selector could not be parsed."""
    pass


class DateWindow(BaseModel):
    """Closed range of calendar days, end inclusive."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @property
    def end_exclusive(self) -> date:
        return self.end + timedelta(days=1)

    def contains(self, d: date) -> bool:
        return self.start <= d <= self.end


class PeriodOverlap(BaseModel):
    """Non-empty intersection of a window and a validity interval."""

    model_config = ConfigDict(frozen=True)

    start: date
    end_exclusive: date

    @property
    def last_day(self) -> date:
        return self.end_exclusive - timedelta(days=1)

    @property
    def days(self) -> int:
        return (self.end_exclusive - self.start).days


def month_window(year: int, month: int) -> DateWindow:
    """Day 1 through the last day of the month."""
    return DateWindow(start=date(year, month, 1), end=last_day_of_month(year, month))


def year_window(year: int) -> DateWindow:
    """Jan 1 through Dec 31."""
    return DateWindow(start=date(year, 1, 1), end=date(year, 12, 31))


def intersect(
    window_start: date,
    window_end: date,
    record_start: date,
    record_end: Optional[date] = None,
) -> Optional[PeriodOverlap]:
    """
    Intersect [window_start, window_end] with [record_start, record_end).

    Returns None when the overlap has zero or negative width.
    """
    period_start = max(window_start, record_start)
    period_end = window_end + timedelta(days=1)
    if record_end is not None:
        period_end = min(period_end, record_end)

    if period_start >= period_end:
        return None
    return PeriodOverlap(start=period_start, end_exclusive=period_end)


def iter_month_starts(start: date, end: date) -> Iterator[date]:
    """Yield the first day of every month from start's month through end's."""
    current = first_of_month(start)
    while current <= end:
        yield current
        if current.month == 12:
            current = current.replace(year=current.year + 1, month=1)
        else:
            current = current.replace(month=current.month + 1)


# =============================================================================
# REPORTING PERIODS
# =============================================================================

class MonthPeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["month"] = "month"
    year: int = Field(ge=1, le=9999)
    month: int = Field(ge=1, le=12)

    @property
    def label(self) -> str:
        return date(self.year, self.month, 1).strftime("%B %Y")

    def resolve(self, earliest_start: Optional[date], today: date) -> Optional[DateWindow]:
        return month_window(self.year, self.month)


class YearPeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["year"] = "year"
    year: int = Field(ge=1, le=9999)

    @property
    def label(self) -> str:
        return str(self.year)

    def resolve(self, earliest_start: Optional[date], today: date) -> Optional[DateWindow]:
        return year_window(self.year)


class AllTimePeriod(BaseModel):
    """From the earliest start among the considered records up to today."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["all"] = "all"

    @property
    def label(self) -> str:
        return "all time"

    def resolve(self, earliest_start: Optional[date], today: date) -> Optional[DateWindow]:
        if earliest_start is None or earliest_start > today:
            return None
        return DateWindow(start=earliest_start, end=today)


CalendarPeriod = Annotated[
    Union[MonthPeriod, YearPeriod, AllTimePeriod],
    Field(discriminator="kind"),
]


_YEAR_SELECTOR = re.compile(r"^year:(\d{4})$")
_MONTH_SELECTOR = re.compile(r"^month:(\d{4})-(\d{2})$")


def parse_reporting_period(selector: str) -> Union[MonthPeriod, YearPeriod, AllTimePeriod]:
    """
    Convert a UI period selector into a calendar period.

    Accepted forms: "all", "year:YYYY", "month:YYYY-MM".
    """
    value = (selector or "").strip().lower()

    if value == "all":
        return AllTimePeriod()

    match = _YEAR_SELECTOR.match(value)
    if match:
        return YearPeriod(year=int(match.group(1)))

    match = _MONTH_SELECTOR.match(value)
    if match:
        month = int(match.group(2))
        if not 1 <= month <= 12:
            raise InvalidPeriodError(f"Invalid month in period selector: {selector!r}")
        return MonthPeriod(year=int(match.group(1)), month=month)

    raise InvalidPeriodError(
        f"Unknown period selector: {selector!r}. "
        "Expected 'all', 'year:YYYY' or 'month:YYYY-MM'"
    )
