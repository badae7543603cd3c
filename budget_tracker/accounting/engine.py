"""
Period Accounting Engine

Computes how much a recurring record (subscription or income) contributes
to a reporting window, and the aggregate over many records.

BILLING POLICY:
- month frequency: charged ONCE per calendar month the validity interval
  touches, no pro-rating. One active day costs a full month.
- week / year frequency: ceil(days / 7) or ceil(days / 365) charges over
  the overlap, at least one.

Multi-month windows (year, all time) are walked one calendar month at a
time for monthly records. The "once per month" rule is a per-month
decision; computing it once over the whole range would miss months when
a record starts or ends mid-year.

The engine is pure: no I/O, no state between calls. It never raises for
malformed record data. Bad records contribute 0.
"""

import math
from datetime import date
from typing import Any, Callable, Iterable, Optional, Union

import structlog
from pydantic import BaseModel

from budget_tracker.accounting.currency import CurrencyConverter
from budget_tracker.accounting.periods import (
    AllTimePeriod,
    DateWindow,
    MonthPeriod,
    PeriodOverlap,
    YearPeriod,
    intersect,
    iter_month_starts,
    month_window,
    parse_reporting_period,
)
from budget_tracker.dates import add_months, parse_local_date
from budget_tracker.models.recurring import (
    Frequency,
    RecordKind,
    RecurringRecord,
    parse_frequency,
)


logger = structlog.get_logger(__name__)

PeriodLike = Union[MonthPeriod, YearPeriod, AllTimePeriod, str]


class RecordContribution(BaseModel):
    """One record's share of a reporting period, in the target currency."""

    record_id: Optional[str] = None
    name: Optional[str] = None
    kind: RecordKind
    frequency: Frequency
    amount: float
    currency: str


class PeriodAccountingEngine:
    """
    Attributes recurring amounts to calendar periods.

    Args:
        converter: Currency table to normalize amounts with.
        default_currency: Currency assumed for records without a valid one.
        today: Clock used for all-time windows and the current month.
    """

    def __init__(
        self,
        converter: Optional[CurrencyConverter] = None,
        default_currency: str = "USD",
        today: Optional[Callable[[], date]] = None,
    ):
        self._converter = converter or CurrencyConverter()
        self._default_currency = default_currency.upper()
        self._today = today or date.today

    # -------------------------------------------------------------------------
    # Single record, single window
    # -------------------------------------------------------------------------

    def compute_cost(
        self,
        record: Any,
        window_start: Any,
        window_end: Any,
        target_currency: str,
    ) -> float:
        """
        Amount a record contributes to [window_start, window_end].

        The window end is inclusive: a record starting ON the last day
        still counts.
        """
        rec = self._coerce(record)
        if rec is None or not rec.active:
            return 0.0

        start = rec.effective_start
        w_start = parse_local_date(window_start)
        w_end = parse_local_date(window_end)
        if start is None or w_start is None or w_end is None:
            return 0.0
        if start > w_end:
            return 0.0

        overlap = intersect(w_start, w_end, start, rec.end_date)
        if overlap is None:
            return 0.0

        total = rec.amount * self._billing_periods(overlap, rec.frequency)
        return self._converter.convert(
            total,
            rec.currency_or(self._default_currency),
            target_currency,
        )

    def _billing_periods(self, overlap: PeriodOverlap, frequency: Frequency) -> int:
        if frequency == Frequency.MONTH:
            start, last = overlap.start, overlap.last_day
            return (last.year - start.year) * 12 + (last.month - start.month) + 1

        days = overlap.days
        if frequency == Frequency.WEEK:
            periods = math.ceil(days / 7)
        else:
            periods = math.ceil(days / 365)
        return max(1, periods)

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    def compute_monthly_aggregate(
        self,
        records: Iterable[Any],
        target_currency: str,
        month_date: Any = None,
    ) -> float:
        """Total for the calendar month containing month_date (default: this month)."""
        anchor = parse_local_date(month_date) or self._today()
        window = month_window(anchor.year, anchor.month)
        return sum(
            (self.compute_cost(r, window.start, window.end, target_currency) for r in records),
            0.0,
        )

    def compute_aggregate(
        self,
        records: Iterable[Any],
        target_currency: str,
        period: PeriodLike,
    ) -> float:
        """Total over a month, year or all-time period."""
        return sum(
            (c.amount for c in self.compute_breakdown(records, target_currency, period)),
            0.0,
        )

    def compute_breakdown(
        self,
        records: Iterable[Any],
        target_currency: str,
        period: PeriodLike,
    ) -> list[RecordContribution]:
        """
        Per-record contributions to a period.

        Records that cannot be read at all are skipped. Every other record
        gets an entry, zero included.

        Raises:
            InvalidPeriodError: If period is a selector string that cannot be parsed
        """
        if isinstance(period, str):
            period = parse_reporting_period(period)

        coerced = [rec for rec in (self._coerce(r) for r in records) if rec is not None]
        starts = [rec.effective_start for rec in coerced if rec.effective_start is not None]
        window = period.resolve(min(starts) if starts else None, self._today())
        walk_months = not isinstance(period, MonthPeriod)

        contributions = []
        for rec in coerced:
            if window is None:
                amount = 0.0
            elif walk_months and rec.frequency == Frequency.MONTH:
                amount = self._walk_months(rec, window, target_currency)
            else:
                amount = self.compute_cost(rec, window.start, window.end, target_currency)

            contributions.append(RecordContribution(
                record_id=rec.id,
                name=rec.name,
                kind=rec.kind,
                frequency=rec.frequency,
                amount=amount,
                currency=target_currency,
            ))
        return contributions

    def _walk_months(
        self,
        rec: RecurringRecord,
        window: DateWindow,
        target_currency: str,
    ) -> float:
        """Sum per-month charges of a monthly record across a multi-month window."""
        start = rec.effective_start
        if not rec.active or start is None:
            return 0.0

        walk_start = max(start, window.start)
        walk_end = min(rec.end_date or window.end, window.end)

        total = 0.0
        for month_start in iter_month_starts(walk_start, walk_end):
            month = month_window(month_start.year, month_start.month)
            total += self.compute_cost(
                rec,
                max(month.start, window.start),
                min(month.end, window.end),
                target_currency,
            )
        return total

    def _coerce(self, record: Any) -> Optional[RecurringRecord]:
        rec = RecurringRecord.coerce(record)
        if rec is None:
            logger.debug("recurring_record_unusable", record_type=type(record).__name__)
        return rec


def next_billing_date(
    start_date: Any,
    frequency: Any = Frequency.MONTH,
    current: Any = None,
) -> Optional[date]:
    """
    First billing date strictly after `current` (default: today).

    Occurrences are counted from start_date, so a subscription started on
    Jan 31 bills Feb 28/29, Mar 31, Apr 30 without drifting.
    Returns None when start_date cannot be read.
    """
    start = parse_local_date(start_date)
    if start is None:
        return None
    current = parse_local_date(current) or date.today()
    freq = parse_frequency(frequency)

    if start > current:
        return start

    if freq == Frequency.WEEK:
        weeks = (current - start).days // 7 + 1
        return date.fromordinal(start.toordinal() + 7 * weeks)

    step = 1 if freq == Frequency.MONTH else 12
    n = ((current.year - start.year) * 12 + current.month - start.month) // step
    candidate = add_months(start, n * step)
    while candidate <= current:
        n += 1
        candidate = add_months(start, n * step)
    return candidate


# =============================================================================
# MODULE-LEVEL ENTRY POINTS
# =============================================================================

_default_engine = PeriodAccountingEngine()


def compute_cost(record: Any, window_start: Any, window_end: Any, target_currency: str) -> float:
    return _default_engine.compute_cost(record, window_start, window_end, target_currency)


def compute_monthly_aggregate(
    records: Iterable[Any],
    target_currency: str,
    month_date: Any = None,
) -> float:
    return _default_engine.compute_monthly_aggregate(records, target_currency, month_date)


def compute_aggregate(records: Iterable[Any], target_currency: str, period: PeriodLike) -> float:
    return _default_engine.compute_aggregate(records, target_currency, period)
