"""Tests for the in-memory storage backend and the audit logger."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from budget_tracker.audit import AuditLogger, create_correlation_id
from budget_tracker.models.audit import AuditEventType, AuditSeverity
from budget_tracker.models.expense import Budget, ExpenseCategory
from budget_tracker.models.recurring import RecordKind, RecurringRecord
from budget_tracker.services.storage import (
    AuditStorageInterface,
    InMemoryAuditStorage,
    InMemoryRecurringRecordStorage,
    NotFoundError,
    StorageError,
)

from conftest import make_transaction


class TestTransactionStorage:

    @pytest.mark.asyncio
    async def test_save_and_list(self, transaction_storage):
        saved = await transaction_storage.save_transactions([
            make_transaction("Milk", "1.99", date(2024, 6, 1)),
            make_transaction("Tea", "3.50", date(2024, 6, 2)),
        ])
        assert saved == 2

        found = await transaction_storage.list_transactions("user-1")
        assert [t.item for t in found] == ["Tea", "Milk"]

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, transaction_storage):
        await transaction_storage.save_transactions([
            make_transaction(f"Item {day}", "1", date(2024, 6, day)) for day in range(1, 6)
        ])
        found = await transaction_storage.list_transactions("user-1", limit=2, offset=1)
        assert [t.item for t in found] == ["Item 4", "Item 3"]

    @pytest.mark.asyncio
    async def test_exists(self, transaction_storage):
        await transaction_storage.save_transactions([make_transaction("Milk", "1.99", date(2024, 6, 1))])
        assert await transaction_storage.transaction_exists("user-1", "MILK", Decimal("1.99"), date(2024, 6, 1))
        assert not await transaction_storage.transaction_exists("user-1", "Milk", Decimal("2.00"), date(2024, 6, 1))

    @pytest.mark.asyncio
    async def test_update_and_delete(self, transaction_storage):
        milk = make_transaction("Milk", "1.99", date(2024, 6, 1))
        tea = make_transaction("Tea", "3.50", date(2024, 6, 2))
        await transaction_storage.save_transactions([milk, tea])

        updated = await transaction_storage.update_transaction(milk.id, {"item": "Oat milk", "currency": "eur"})
        assert (updated.id, updated.item, updated.currency) == (milk.id, "Oat milk", "EUR")

        assert await transaction_storage.delete_transaction(tea.id) is True
        assert await transaction_storage.delete_transaction(tea.id) is False
        assert [t.item for t in await transaction_storage.list_transactions("user-1")] == ["Oat milk"]

    @pytest.mark.asyncio
    async def test_update_rejects_bad_patches(self, transaction_storage):
        milk = make_transaction("Milk", "1.99", date(2024, 6, 1))
        await transaction_storage.save_transactions([milk])

        with pytest.raises(NotFoundError):
            await transaction_storage.update_transaction(uuid4(), {"item": "Tea"})
        with pytest.raises(ValueError):
            await transaction_storage.update_transaction(milk.id, {"source": "receipt"})
        with pytest.raises(ValueError):
            await transaction_storage.update_transaction(milk.id, {"amount": "-1"})

        (stored,) = await transaction_storage.list_transactions("user-1")
        assert stored.amount == Decimal("1.99")


class TestBudgetStorage:

    @pytest.mark.asyncio
    async def test_one_budget_per_category(self, budget_storage):
        await budget_storage.set_budget(Budget(user_id="user-1", category="Groceries", amount=100))
        await budget_storage.set_budget(Budget(user_id="user-1", category="Groceries", amount=150))
        await budget_storage.set_budget(Budget(user_id="user-2", category="Groceries", amount=80))

        budgets = await budget_storage.list_budgets("user-1")

        assert len(budgets) == 1
        assert budgets[0].amount == Decimal("150")
        assert budgets[0].category == ExpenseCategory.GROCERIES


class TestRecurringRecordStorage:
    """The in-memory backend behaves like a document store of raw rows."""

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_kind(self):
        storage = InMemoryRecurringRecordStorage(RecordKind.INCOME)
        stored = await storage.create(RecurringRecord(user_id="user-1", name="Salary", amount=3000))

        assert stored.id
        assert stored.kind == RecordKind.INCOME
        assert await storage.list_by_user("user-1") == [stored]

    @pytest.mark.asyncio
    async def test_malformed_rows_read_leniently(self):
        storage = InMemoryRecurringRecordStorage(RecordKind.SUBSCRIPTION, [
            {"id": "1", "user_id": "user-1", "name": "Odd", "amount": "twelve", "frequency": "daily"},
        ])
        (rec,) = await storage.list_by_user("user-1")
        assert rec.amount == 0.0
        assert rec.kind == RecordKind.SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_list_active(self):
        storage = InMemoryRecurringRecordStorage(RecordKind.SUBSCRIPTION, [
            {"user_id": "user-1", "name": "On"},
            {"user_id": "user-1", "name": "Off", "active": "FALSE"},
        ])
        assert [r.name for r in await storage.list_active_by_user("user-1")] == ["On"]
        assert len(await storage.list_by_user("user-1")) == 2

    @pytest.mark.asyncio
    async def test_update(self):
        storage = InMemoryRecurringRecordStorage(RecordKind.SUBSCRIPTION, [
            {"id": "sub-1", "user_id": "user-1", "name": "Gym", "amount": 30},
        ])
        updated = await storage.update("sub-1", {"amount": 35, "next_billing_date": "2024-09-01"})

        assert updated.amount == 35.0
        assert updated.end_date == date(2024, 9, 1)
        (stored,) = await storage.list_by_user("user-1")
        assert stored == updated

    @pytest.mark.asyncio
    async def test_update_missing(self):
        storage = InMemoryRecurringRecordStorage(RecordKind.SUBSCRIPTION)
        with pytest.raises(NotFoundError):
            await storage.update("nope", {"amount": 1})

    @pytest.mark.asyncio
    async def test_delete(self):
        storage = InMemoryRecurringRecordStorage(RecordKind.SUBSCRIPTION, [{"id": "x", "user_id": "user-1"}])
        assert await storage.delete("x") is True
        assert await storage.delete("x") is False
        assert await storage.list_by_user("user-1") == []


class FailingAuditStorage(InMemoryAuditStorage):
    async def append_event(self, event) -> bool:
        raise StorageError("sheet is read-only")


class TestAuditLogger:
    """Audit events are logged locally and persisted when storage is set."""

    @pytest.mark.asyncio
    async def test_events_persisted(self, audit_logger, audit_storage):
        cid = create_correlation_id()
        await audit_logger.log_expense_parse_failed("receipt", "blurry", cid)
        await audit_logger.log_user_rejected(uuid4(), "user-1", None, cid)

        events = await audit_storage.get_events_by_correlation_id(cid)

        assert [e.event_type for e in events] == [
            AuditEventType.EXPENSE_PARSE_FAILED,
            AuditEventType.USER_REJECTED,
        ]
        assert events[0].severity == AuditSeverity.ERROR
        assert events[1].details == {"reason": "No reason provided"}

    @pytest.mark.asyncio
    async def test_recent_events_newest_first(self, audit_logger, audit_storage):
        await audit_logger.log_budget_updated("user-1", "Groceries", "100", "USD")
        await audit_logger.log_external_service_error("gemini", "timeout")

        recent = await audit_storage.get_recent_events(limit=1)

        assert len(recent) == 1
        assert recent[0].event_type == AuditEventType.EXTERNAL_SERVICE_ERROR

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_raised(self):
        logger = AuditLogger(FailingAuditStorage())
        assert await logger.log_error("ValueError", "boom") is False

    @pytest.mark.asyncio
    async def test_without_storage(self):
        assert await AuditLogger().log_query_failed("?", "no data", create_correlation_id()) is True

    def test_memory_storage_implements_interface(self, audit_storage):
        assert isinstance(audit_storage, AuditStorageInterface)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
