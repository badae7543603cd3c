"""
In-Memory Storage

Process-local implementations of the storage interfaces. Used by the
tests and for local runs without Google credentials. Nothing survives a
restart.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional
from uuid import UUID, uuid4

from budget_tracker.models.audit import AuditEvent
from budget_tracker.models.expense import Budget, ExpenseCategory, Transaction
from budget_tracker.models.recurring import RecordKind, RecurringRecord
from budget_tracker.services.storage.interface import (
    AuditStorageInterface,
    BudgetStorageInterface,
    NotFoundError,
    RecurringRecordStorageInterface,
    TransactionStorageInterface,
    filter_transactions,
)


class InMemoryTransactionStorage(TransactionStorageInterface):

    def __init__(self, transactions: Optional[list[Transaction]] = None):
        self._transactions: list[Transaction] = list(transactions or [])

    async def save_transactions(self, transactions: list[Transaction]) -> int:
        self._transactions.extend(transactions)
        return len(transactions)

    async def list_transactions(
        self,
        user_id: str,
        category: Optional[ExpenseCategory] = None,
        item: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[Transaction]:
        return filter_transactions(
            self._transactions,
            user_id=user_id,
            category=category,
            item=item,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )

    async def transaction_exists(
        self,
        user_id: str,
        item: str,
        amount: Decimal,
        expense_date: date,
    ) -> bool:
        return any(
            txn.user_id == user_id
            and txn.item.lower() == item.lower()
            and txn.amount == amount
            and txn.expense_date == expense_date
            for txn in self._transactions
        )

    async def update_transaction(self, transaction_id: UUID, patch: Mapping[str, Any]) -> Transaction:
        for idx, txn in enumerate(self._transactions):
            if txn.id == transaction_id:
                self._transactions[idx] = txn.with_patch(patch)
                return self._transactions[idx]
        raise NotFoundError(f"Transaction not found: {transaction_id}")

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        before = len(self._transactions)
        self._transactions = [txn for txn in self._transactions if txn.id != transaction_id]
        return len(self._transactions) < before


class InMemoryBudgetStorage(BudgetStorageInterface):

    def __init__(self):
        self._budgets: dict[tuple[str, ExpenseCategory], Budget] = {}

    async def set_budget(self, budget: Budget) -> bool:
        self._budgets[(budget.user_id, budget.category)] = budget
        return True

    async def list_budgets(self, user_id: str) -> list[Budget]:
        return [b for (owner, _), b in self._budgets.items() if owner == user_id]


class InMemoryRecurringRecordStorage(RecurringRecordStorageInterface):
    """
    Holds raw mappings, like a document store would.

    Rows that can't be read as a record are skipped on the way out.
    """

    def __init__(self, kind: RecordKind, rows: Optional[list[Mapping[str, Any]]] = None):
        self.kind = kind
        self._rows: dict[str, dict] = {}
        for row in rows or []:
            row = dict(row)
            row.setdefault("id", str(uuid4()))
            self._rows[str(row["id"])] = row

    async def list_by_user(self, user_id: str) -> list[RecurringRecord]:
        records = []
        for row in self._rows.values():
            rec = RecurringRecord.coerce({**row, "kind": self.kind})
            if rec is not None and rec.user_id == user_id:
                records.append(rec)
        return records

    async def create(self, record: RecurringRecord) -> RecurringRecord:
        stored = record.model_copy(update={
            "id": record.id or str(uuid4()),
            "kind": self.kind,
        })
        self._rows[stored.id] = stored.model_dump(mode="json")
        return stored

    async def update(self, record_id: str, patch: Mapping[str, Any]) -> RecurringRecord:
        row = self._rows.get(record_id)
        if row is None:
            raise NotFoundError(f"Record not found: {record_id}")
        current = RecurringRecord.coerce({**row, "kind": self.kind})
        if current is None:
            raise NotFoundError(f"Record unreadable: {record_id}")

        updated = current.with_patch(patch)
        self._rows[record_id] = updated.model_dump(mode="json")
        return updated

    async def delete(self, record_id: str) -> bool:
        return self._rows.pop(record_id, None) is not None


class InMemoryAuditStorage(AuditStorageInterface):

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        found = [e for e in self.events if e.correlation_id == correlation_id]
        return sorted(found, key=lambda e: e.timestamp)

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        newest_first = list(reversed(self.events))
        return sorted(newest_first, key=lambda e: e.timestamp, reverse=True)[:limit]
