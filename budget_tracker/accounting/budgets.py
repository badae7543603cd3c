"""
Budget Overview

Monthly spending per category compared with the user's budget limits.
Recurring subscriptions are charged into the Subscriptions category for
the month through the period accounting engine.
"""

from datetime import date
from typing import Iterable, Optional

from pydantic import BaseModel

from budget_tracker.accounting.currency import CurrencyConverter
from budget_tracker.accounting.engine import PeriodAccountingEngine
from budget_tracker.dates import parse_local_date
from budget_tracker.models.expense import Budget, ExpenseCategory, Transaction


class BudgetLine(BaseModel):
    """Spending against the limit for one category, in the display currency."""

    category: ExpenseCategory
    spent: float
    limit: Optional[float] = None
    percentage: Optional[float] = None  # capped at 100 for progress bars
    over_budget: bool = False


class PotentialSubscription(BaseModel):
    """Repeated Subscriptions-category purchases not yet tracked as a subscription."""

    name: str
    count: int
    total: float
    last_date: date


def build_budget_overview(
    transactions: Iterable[Transaction],
    budgets: Iterable[Budget],
    subscriptions: Iterable,
    currency: str,
    month_date: Optional[date] = None,
    engine: Optional[PeriodAccountingEngine] = None,
    converter: Optional[CurrencyConverter] = None,
) -> list[BudgetLine]:
    """
    Build the per-category budget lines for one calendar month.

    Only categories with spending appear. Lines are sorted by amount
    spent, largest first.
    """
    converter = converter or CurrencyConverter()
    engine = engine or PeriodAccountingEngine(converter=converter)
    anchor = parse_local_date(month_date) or date.today()

    spending: dict[ExpenseCategory, float] = {}
    for txn in transactions:
        if (txn.expense_date.year, txn.expense_date.month) != (anchor.year, anchor.month):
            continue
        amount = converter.convert(float(txn.amount), txn.currency, currency)
        spending[txn.category] = spending.get(txn.category, 0.0) + amount

    subscription_cost = engine.compute_monthly_aggregate(subscriptions, currency, anchor)
    if subscription_cost > 0:
        category = ExpenseCategory.SUBSCRIPTIONS
        spending[category] = spending.get(category, 0.0) + subscription_cost

    limits = {
        budget.category: converter.convert(float(budget.amount), budget.currency, currency)
        for budget in budgets
    }

    lines = []
    for category, spent in spending.items():
        limit = limits.get(category)
        percentage = None
        if limit:
            percentage = min(spent / limit * 100, 100.0)
        lines.append(BudgetLine(
            category=category,
            spent=spent,
            limit=limit,
            percentage=percentage,
            over_budget=bool(limit) and spent > limit,
        ))

    lines.sort(key=lambda line: line.spent, reverse=True)
    return lines


def detect_potential_subscriptions(
    transactions: Iterable[Transaction],
    currency: str,
    converter: Optional[CurrencyConverter] = None,
) -> list[PotentialSubscription]:
    """Group Subscriptions-category transactions by item name (case-insensitive)."""
    converter = converter or CurrencyConverter()
    groups: dict[str, PotentialSubscription] = {}

    for txn in transactions:
        if txn.category != ExpenseCategory.SUBSCRIPTIONS:
            continue
        key = txn.item.lower()
        amount = converter.convert(float(txn.amount), txn.currency, currency)

        found = groups.get(key)
        if found is None:
            groups[key] = PotentialSubscription(
                name=txn.item,
                count=1,
                total=amount,
                last_date=txn.expense_date,
            )
            continue

        found.count += 1
        found.total += amount
        if txn.expense_date > found.last_date:
            found.last_date = txn.expense_date

    return list(groups.values())
