"""
Shared fixtures.

No test talks to Gemini or Google Sheets: the AI client is replaced by
FakeGeminiClient and storage by the in-memory implementations.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Sequence

import pytest

from budget_tracker.accounting import CurrencyConverter, PeriodAccountingEngine
from budget_tracker.audit import AuditLogger
from budget_tracker.config import AppSettings
from budget_tracker.models.expense import ExpenseCategory, Transaction
from budget_tracker.models.recurring import RecordKind
from budget_tracker.services.storage import (
    InMemoryAuditStorage,
    InMemoryBudgetStorage,
    InMemoryRecurringRecordStorage,
    InMemoryTransactionStorage,
)


TODAY = date(2024, 6, 15)


class FakeGeminiClient:
    """
    Scripted stand-in for GeminiClient.

    `replies` maps a model name to a list of replies consumed in order.
    A reply that is an Exception instance is raised instead of returned.
    """

    def __init__(self, replies: dict[str, list[Any]], model_names: Sequence[str] = None):
        self.replies = {name: list(queue) for name, queue in replies.items()}
        self._model_names = list(model_names or replies.keys())
        self.calls: list[tuple[str, list]] = []

    @property
    def model_names(self) -> list[str]:
        return self._model_names

    async def generate(self, model_name: str, parts: Sequence[Any]) -> str:
        self.calls.append((model_name, list(parts)))
        queue = self.replies.get(model_name) or []
        if not queue:
            raise RuntimeError(f"no scripted reply for {model_name}")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_transaction(
    item: str,
    amount: str,
    expense_date: date,
    category: ExpenseCategory = ExpenseCategory.GROCERIES,
    currency: str = "USD",
    user_id: str = "user-1",
) -> Transaction:
    return Transaction(
        user_id=user_id,
        item=item,
        amount=Decimal(amount),
        currency=currency,
        category=category,
        expense_date=expense_date,
    )


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def clock():
    return lambda: TODAY


@pytest.fixture
def app_settings() -> AppSettings:
    return AppSettings(
        default_currency="USD",
        receipt_max_past_days=730,
        receipt_max_future_days=365,
        max_expense_amount=10000.0,
        future_date_tolerance_days=1,
    )


@pytest.fixture
def converter() -> CurrencyConverter:
    return CurrencyConverter()


@pytest.fixture
def engine(converter, clock) -> PeriodAccountingEngine:
    return PeriodAccountingEngine(converter=converter, default_currency="USD", today=clock)


@pytest.fixture
def transaction_storage() -> InMemoryTransactionStorage:
    return InMemoryTransactionStorage()


@pytest.fixture
def budget_storage() -> InMemoryBudgetStorage:
    return InMemoryBudgetStorage()


@pytest.fixture
def recurring_storages() -> dict:
    return {kind: InMemoryRecurringRecordStorage(kind) for kind in RecordKind}


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)
