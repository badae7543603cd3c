"""
Calendar date helpers.

Every date in this package is a local calendar date. Date-only strings
like "2024-03-01" are decomposed into (year, month, day) and never go
through timezone-aware parsing, which would shift the day by one for
users east or west of UTC.
"""

import calendar
import re
from datetime import date, datetime
from typing import Any, Optional


_ISO_PREFIX = re.compile(r"^\s*(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})")
_NUMERIC_DATE = re.compile(r"^\s*(\d{1,2})[-/.](\d{1,2})[-/.](\d{2}|\d{4})\s*$")


def parse_local_date(value: Any) -> Optional[date]:
    """
    Parse a value into a calendar date, returning None on failure.

    Accepts date objects, datetimes (their calendar date as written,
    no timezone conversion) and strings starting with YYYY-MM-DD
    (also YYYY/MM/DD and YYYY.MM.DD). Timestamp strings such as
    "2024-03-01T22:15:00Z" yield 2024-03-01.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    match = _ISO_PREFIX.match(value)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def first_of_month(d: date) -> date:
    return d.replace(day=1)


def last_day_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def add_months(d: date, n: int) -> date:
    """Add n months to date d, clamping day to month end."""
    month = d.month - 1 + n
    year = d.year + month // 12
    month = month % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_years(d: date, n: int) -> date:
    """Add n years, Feb 29 becomes Feb 28 in non-leap years."""
    return add_months(d, 12 * n)


def resolve_ambiguous_date(text: str, today: Optional[date] = None) -> Optional[date]:
    """
    Resolve a numeric date like "03/04/2024" whose day/month order is unknown.

    Both readings are built: day-first (3 April) and month-first (4 March).
    If only one is a valid calendar date, it wins. Otherwise the reading
    closer to today wins. On a tie the reading that is not in the future
    wins, and after that the day-first reading.

    This is a heuristic guess, not a guarantee: a receipt from last year
    can resolve to the wrong month when both readings are plausible.
    """
    match = _NUMERIC_DATE.match(text or "")
    if not match:
        return None

    first, second, year_str = match.groups()
    year = int(year_str)
    if len(year_str) == 2:
        year += 2000

    candidates = []
    for day, month in ((int(first), int(second)), (int(second), int(first))):
        try:
            candidates.append(date(year, month, day))
        except ValueError:
            continue

    if not candidates:
        return None
    if len(candidates) == 1 or candidates[0] == candidates[1]:
        return candidates[0]

    today = today or date.today()
    day_first, month_first = candidates
    day_first_distance = abs((day_first - today).days)
    month_first_distance = abs((month_first - today).days)

    if day_first_distance != month_first_distance:
        return day_first if day_first_distance < month_first_distance else month_first
    if month_first <= today < day_first:
        return month_first
    return day_first
