"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Just the operations we need for expenses, budgets and recurring records.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Optional
from uuid import UUID

from budget_tracker.models.audit import AuditEvent
from budget_tracker.models.expense import Budget, ExpenseCategory, Transaction
from budget_tracker.models.recurring import RecordKind, RecurringRecord


class TransactionStorageInterface(ABC):
    """Abstract interface for confirmed expense storage."""

    @abstractmethod
    async def save_transactions(self, transactions: list[Transaction]) -> int:
        """
        Save confirmed transactions.

        Returns:
            Number of transactions saved

        Raises:
            StorageError: If save fails
        """
        pass

    @abstractmethod
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
        """
        List a user's transactions, newest first.

        Args:
            user_id: Owner of the transactions
            category: Filter by category
            item: Filter by item name (partial, case-insensitive)
            date_from: Filter expenses on or after this date
            date_to: Filter expenses on or before this date
            limit: Maximum number of results
            offset: Number of results to skip
        """
        pass

    @abstractmethod
    async def transaction_exists(
        self,
        user_id: str,
        item: str,
        amount: Decimal,
        expense_date: date,
    ) -> bool:
        """Check whether the same item, amount and date is already stored."""
        pass

    @abstractmethod
    async def update_transaction(self, transaction_id: UUID, patch: Mapping[str, Any]) -> Transaction:
        """
        Correct a stored transaction (see Transaction.with_patch).

        Raises:
            NotFoundError: If the transaction doesn't exist
            ValueError: If the patch is not allowed or invalid
        """
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: UUID) -> bool:
        """Returns False when there was nothing to delete."""
        pass


class BudgetStorageInterface(ABC):
    """One monthly budget per user and category."""

    @abstractmethod
    async def set_budget(self, budget: Budget) -> bool:
        """Create or replace the budget for budget.category."""
        pass

    @abstractmethod
    async def list_budgets(self, user_id: str) -> list[Budget]:
        pass


class RecurringRecordStorageInterface(ABC):
    """
    Storage for one kind of recurring record (subscriptions or income).

    Records are read back leniently: whatever the backend holds is passed
    through RecurringRecord.coerce and unusable rows are skipped.
    """

    kind: RecordKind

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[RecurringRecord]:
        pass

    async def list_active_by_user(self, user_id: str) -> list[RecurringRecord]:
        """Records of the user that are flagged active."""
        return [rec for rec in await self.list_by_user(user_id) if rec.active]

    @abstractmethod
    async def create(self, record: RecurringRecord) -> RecurringRecord:
        """
        Store a new record.

        Returns:
            The stored record, with its id assigned
        """
        pass

    @abstractmethod
    async def update(self, record_id: str, patch: Mapping[str, Any]) -> RecurringRecord:
        """
        Apply a partial update.

        Raises:
            NotFoundError: If the record doesn't exist
        """
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Returns False when there was nothing to delete."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Events of one flow, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent events, newest first."""
        pass


def filter_transactions(
    transactions: list[Transaction],
    user_id: str,
    category: Optional[ExpenseCategory] = None,
    item: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 1000,
    offset: int = 0,
) -> list[Transaction]:
    """
    Apply the list_transactions filters in Python.

    Shared by backends that can't filter server-side.
    """
    found = []
    for txn in transactions:
        if txn.user_id != user_id:
            continue
        if category and txn.category != category:
            continue
        if item and item.lower() not in txn.item.lower():
            continue
        if date_from and txn.expense_date < date_from:
            continue
        if date_to and txn.expense_date > date_to:
            continue
        found.append(txn)

    # Newest first
    found.sort(key=lambda t: (t.expense_date, t.created_at), reverse=True)
    return found[offset:offset + limit]


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
