"""
Recurring-cost period accounting.

CurrencyConverter and the calendar periods are leaves; the engine
combines them.
"""

from budget_tracker.accounting.currency import CurrencyConverter, DEFAULT_RATES
from budget_tracker.accounting.periods import (
    AllTimePeriod,
    CalendarPeriod,
    DateWindow,
    InvalidPeriodError,
    MonthPeriod,
    PeriodOverlap,
    YearPeriod,
    intersect,
    iter_month_starts,
    month_window,
    parse_reporting_period,
    year_window,
)
from budget_tracker.accounting.engine import (
    PeriodAccountingEngine,
    RecordContribution,
    compute_aggregate,
    compute_cost,
    compute_monthly_aggregate,
    next_billing_date,
)
from budget_tracker.accounting.budgets import (
    BudgetLine,
    PotentialSubscription,
    build_budget_overview,
    detect_potential_subscriptions,
)

__all__ = [
    "AllTimePeriod",
    "BudgetLine",
    "CalendarPeriod",
    "CurrencyConverter",
    "DEFAULT_RATES",
    "DateWindow",
    "InvalidPeriodError",
    "MonthPeriod",
    "PeriodAccountingEngine",
    "PeriodOverlap",
    "PotentialSubscription",
    "RecordContribution",
    "YearPeriod",
    "build_budget_overview",
    "compute_aggregate",
    "compute_cost",
    "compute_monthly_aggregate",
    "detect_potential_subscriptions",
    "intersect",
    "iter_month_starts",
    "month_window",
    "next_billing_date",
    "parse_reporting_period",
    "year_window",
]
