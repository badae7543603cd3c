"""
Integration tests for the orchestration flows.

Every flow runs end to end on in-memory storage with a scripted Gemini
client; audit events are checked through the in-memory audit storage.
"""

import json
from datetime import date
from decimal import Decimal

import pytest

from budget_tracker.agents import (
    AllProvidersFailedError,
    ExpenseParsingAgent,
    InsightsAgent,
    InsightType,
    QueryAgent,
)
from budget_tracker.models.audit import AuditEventType
from budget_tracker.models.expense import ExpenseCategory, ExpenseItem
from budget_tracker.models.recurring import RecordKind, RecurringRecord
from budget_tracker.orchestrator import (
    BudgetFlow,
    ExpenseLoggingFlow,
    QueryFlow,
    RecurringRecordFlow,
    create_app_components,
)
from budget_tracker.queries import QueryExecutor
from budget_tracker.services.storage import (
    InMemoryRecurringRecordStorage,
    NotFoundError,
    StorageError,
)
from budget_tracker.validation import ExpenseValidator

from conftest import TODAY, FakeGeminiClient, make_transaction


RECEIPT_REPLY = json.dumps({
    "date": "2024-06-14",
    "items": [
        {"item": "Milk", "amount": 1.99, "category": "Groceries"},
        {"item": "Shampoo", "amount": 5.5, "category": "Personal Care"},
    ],
})


def event_types(audit_storage) -> list[AuditEventType]:
    return [e.event_type for e in audit_storage.events]


@pytest.fixture
def make_expense_flow(app_settings, clock, transaction_storage, audit_logger):
    def build(replies: dict, storage=transaction_storage) -> ExpenseLoggingFlow:
        parser = ExpenseParsingAgent(FakeGeminiClient(replies), settings=app_settings, today=clock)
        return ExpenseLoggingFlow(
            parser=parser,
            transaction_storage=storage,
            validator=ExpenseValidator(storage, settings=app_settings, today=clock),
            audit_logger=audit_logger,
            default_currency="EUR",
        )
    return build


class BrokenTransactionStorage:
    async def save_transactions(self, transactions):
        raise StorageError("sheet locked")

    async def transaction_exists(self, **kwargs):
        return False


class TestExpenseLoggingFlow:
    """Parse -> validate -> confirm -> save."""

    @pytest.mark.asyncio
    async def test_receipt_end_to_end(self, make_expense_flow, transaction_storage, audit_storage):
        flow = make_expense_flow({"m1": [RECEIPT_REPLY]})

        parsed, result, message = await flow.parse_receipt(b"img", "image/jpeg", "user-1")

        assert result.is_valid is True
        assert message.startswith("All checks passed")
        assert await transaction_storage.list_transactions("user-1") == []

        saved = await flow.confirm_and_save(parsed, "user-1", receipt_url="https://img/1")

        assert [t.item for t in saved] == ["Milk", "Shampoo"]
        assert all(t.currency == "EUR" for t in saved)
        assert all(t.expense_date == date(2024, 6, 14) for t in saved)
        assert all(t.extraction_id == parsed.extraction_id for t in saved)
        assert saved[1].category == ExpenseCategory.PERSONAL_CARE
        assert len(await transaction_storage.list_transactions("user-1")) == 2
        assert event_types(audit_storage) == [
            AuditEventType.EXPENSE_PARSED,
            AuditEventType.USER_CONFIRMED,
            AuditEventType.TRANSACTION_SAVED,
            AuditEventType.TRANSACTION_SAVED,
        ]

    @pytest.mark.asyncio
    async def test_user_edits_are_saved(self, make_expense_flow):
        flow = make_expense_flow({"m1": [RECEIPT_REPLY]})
        parsed, _, _ = await flow.parse_receipt(b"img", "image/jpeg", "user-1")

        saved = await flow.confirm_and_save(
            parsed,
            "user-1",
            items=[ExpenseItem(item="Oat milk", amount="2.49", category="Groceries")],
            expense_date=date(2024, 6, 13),
            currency="usd",
        )

        assert len(saved) == 1
        assert saved[0].item == "Oat milk"
        assert saved[0].amount == Decimal("2.49")
        assert saved[0].currency == "USD"
        assert saved[0].expense_date == date(2024, 6, 13)

    @pytest.mark.asyncio
    async def test_duplicate_receipt_is_flagged(self, make_expense_flow, transaction_storage):
        await transaction_storage.save_transactions([
            make_transaction("Milk", "1.99", date(2024, 6, 14)),
        ])
        flow = make_expense_flow({"m1": [RECEIPT_REPLY]})

        _, result, message = await flow.parse_receipt(b"img", "image/jpeg", "user-1")

        assert [i.issue_type for i in result.issues] == ["potential_duplicate"]
        assert "may already be recorded" in message

    @pytest.mark.asyncio
    async def test_invalid_parse_is_audited(self, make_expense_flow, audit_storage):
        flow = make_expense_flow({"m1": [json.dumps({"items": []})]})

        _, result, _ = await flow.parse_text("nothing useful", "user-1")

        assert result.is_valid is False
        assert AuditEventType.VALIDATION_FAILED in event_types(audit_storage)

    @pytest.mark.asyncio
    async def test_parse_failure_is_audited_and_raised(self, make_expense_flow, audit_storage):
        flow = make_expense_flow({"m1": [RuntimeError("quota exceeded")]})

        with pytest.raises(AllProvidersFailedError):
            await flow.parse_audio(b"webm", "audio/webm", "user-1")

        assert event_types(audit_storage) == [AuditEventType.EXPENSE_PARSE_FAILED]

    @pytest.mark.asyncio
    async def test_save_failure_is_audited_and_raised(self, make_expense_flow, audit_storage):
        flow = make_expense_flow({"m1": [RECEIPT_REPLY]}, storage=BrokenTransactionStorage())
        parsed, _, _ = await flow.parse_receipt(b"img", "image/jpeg", "user-1")

        with pytest.raises(StorageError):
            await flow.confirm_and_save(parsed, "user-1")

        assert event_types(audit_storage)[-1] == AuditEventType.SAVE_FAILED

    @pytest.mark.asyncio
    async def test_reject(self, make_expense_flow, transaction_storage, audit_storage):
        flow = make_expense_flow({"m1": [RECEIPT_REPLY]})
        parsed, _, _ = await flow.parse_receipt(b"img", "image/jpeg", "user-1")

        await flow.reject(parsed, "user-1", reason="wrong receipt")

        assert await transaction_storage.list_transactions("user-1") == []
        assert audit_storage.events[-1].event_type == AuditEventType.USER_REJECTED
        assert audit_storage.events[-1].details == {"reason": "wrong receipt"}

    @pytest.mark.asyncio
    async def test_correct_saved_transaction(self, make_expense_flow, transaction_storage, audit_storage):
        txn = make_transaction("Milk", "1.99", date(2024, 6, 14))
        await transaction_storage.save_transactions([txn])
        flow = make_expense_flow({"m1": []})

        updated = await flow.update_transaction(
            "user-1", txn.id, {"amount": "2.19", "category": "personal care"}
        )

        assert updated.id == txn.id
        assert updated.amount == Decimal("2.19")
        assert updated.category == ExpenseCategory.PERSONAL_CARE
        assert await transaction_storage.list_transactions("user-1") == [updated]
        assert audit_storage.events[-1].event_type == AuditEventType.TRANSACTION_UPDATED
        assert audit_storage.events[-1].details == {"fields": ["amount", "category"]}

    @pytest.mark.asyncio
    async def test_owner_of_transaction_cannot_be_patched(self, make_expense_flow, transaction_storage, audit_storage):
        txn = make_transaction("Milk", "1.99", date(2024, 6, 14))
        await transaction_storage.save_transactions([txn])
        flow = make_expense_flow({"m1": []})

        with pytest.raises(ValueError):
            await flow.update_transaction("user-1", txn.id, {"user_id": "mallory"})

        assert (await transaction_storage.list_transactions("user-1"))[0].user_id == "user-1"
        assert audit_storage.events == []

    @pytest.mark.asyncio
    async def test_delete_saved_transaction(self, make_expense_flow, transaction_storage, audit_storage):
        milk = make_transaction("Milk", "1.99", date(2024, 6, 14))
        bread = make_transaction("Bread", "2.50", date(2024, 6, 14))
        await transaction_storage.save_transactions([milk, bread])
        flow = make_expense_flow({"m1": []})

        assert await flow.delete_transaction("user-1", milk.id) is True

        assert await transaction_storage.list_transactions("user-1") == [bread]
        assert audit_storage.events[-1].event_type == AuditEventType.TRANSACTION_DELETED
        assert audit_storage.events[-1].entity_id == str(milk.id)
        with pytest.raises(NotFoundError):
            await flow.delete_transaction("user-1", milk.id)

    @pytest.mark.asyncio
    async def test_other_users_transaction_is_untouchable(self, make_expense_flow, transaction_storage, audit_storage):
        txn = make_transaction("Milk", "1.99", date(2024, 6, 14), user_id="alice")
        await transaction_storage.save_transactions([txn])
        flow = make_expense_flow({"m1": []})

        with pytest.raises(NotFoundError):
            await flow.update_transaction("mallory", txn.id, {"amount": "0.01"})
        with pytest.raises(NotFoundError):
            await flow.delete_transaction("mallory", txn.id)

        assert await transaction_storage.list_transactions("alice") == [txn]
        assert audit_storage.events == []


@pytest.fixture
def recurring_flow(recurring_storages, engine, audit_logger) -> RecurringRecordFlow:
    return RecurringRecordFlow(recurring_storages, engine=engine, audit_logger=audit_logger)


class TestRecurringRecordFlow:
    """Create, edit and report on subscriptions and income."""

    @pytest.mark.asyncio
    async def test_create_and_report(self, recurring_flow, audit_storage):
        await recurring_flow.create("user-1", RecordKind.SUBSCRIPTION, {
            "name": "Music", "amount": 100, "currency": "DKK", "start_date": "2024-01-10",
        })

        assert await recurring_flow.monthly_total("user-1", RecordKind.SUBSCRIPTION, "DKK",
                                                  date(2024, 1, 1)) == 100.0
        assert await recurring_flow.period_total("user-1", RecordKind.SUBSCRIPTION, "DKK",
                                                 "year:2024") == 1200.0
        assert audit_storage.events[0].event_type == AuditEventType.RECORD_CREATED
        assert audit_storage.events[0].details["frequency"] == "month"

    @pytest.mark.asyncio
    async def test_create_rejects_bad_input(self, recurring_flow):
        with pytest.raises(ValueError):
            await recurring_flow.create("user-1", RecordKind.INCOME, {"amount": 10})
        with pytest.raises(ValueError):
            await recurring_flow.create("user-1", RecordKind.INCOME, {"name": "Refund", "amount": -10})

    @pytest.mark.asyncio
    async def test_pause_stops_charges(self, recurring_flow, audit_storage):
        rec = await recurring_flow.create("user-1", RecordKind.SUBSCRIPTION, {
            "name": "Gym", "amount": 30, "start_date": "2024-01-01",
        })

        await recurring_flow.update("user-1", RecordKind.SUBSCRIPTION, rec.id, {"active": False})

        assert await recurring_flow.monthly_total("user-1", RecordKind.SUBSCRIPTION, "USD") == 0.0
        assert len(await recurring_flow.list_records("user-1", RecordKind.SUBSCRIPTION)) == 1
        assert audit_storage.events[-1].details == {"fields": ["active"]}

    @pytest.mark.asyncio
    async def test_update_missing(self, recurring_flow):
        with pytest.raises(NotFoundError):
            await recurring_flow.update("user-1", RecordKind.INCOME, "missing", {"amount": 1})

    @pytest.mark.asyncio
    async def test_delete(self, recurring_flow, audit_storage):
        rec = await recurring_flow.create("user-1", RecordKind.INCOME, {"name": "Salary", "amount": 3000})

        assert await recurring_flow.delete("user-1", RecordKind.INCOME, rec.id) is True
        with pytest.raises(NotFoundError):
            await recurring_flow.delete("user-1", RecordKind.INCOME, rec.id)
        assert event_types(audit_storage).count(AuditEventType.RECORD_DELETED) == 1

    @pytest.mark.asyncio
    async def test_other_users_record_cannot_be_deleted(self, recurring_flow, audit_storage):
        rec = await recurring_flow.create("alice", RecordKind.SUBSCRIPTION, {"name": "Music", "amount": 10})

        with pytest.raises(NotFoundError):
            await recurring_flow.delete("mallory", RecordKind.SUBSCRIPTION, rec.id)

        assert await recurring_flow.list_records("alice", RecordKind.SUBSCRIPTION) == [rec]
        assert AuditEventType.RECORD_DELETED not in event_types(audit_storage)

    @pytest.mark.asyncio
    async def test_other_users_record_cannot_be_updated(self, recurring_flow, audit_storage):
        rec = await recurring_flow.create("alice", RecordKind.INCOME, {"name": "Salary", "amount": 3000})

        with pytest.raises(NotFoundError):
            await recurring_flow.update("mallory", RecordKind.INCOME, rec.id, {"active": False})

        (stored,) = await recurring_flow.list_records("alice", RecordKind.INCOME)
        assert stored.active is True
        assert AuditEventType.RECORD_UPDATED not in event_types(audit_storage)

    @pytest.mark.asyncio
    async def test_owner_cannot_be_patched(self, recurring_flow):
        rec = await recurring_flow.create("alice", RecordKind.INCOME, {"name": "Salary", "amount": 3000})

        with pytest.raises(ValueError):
            await recurring_flow.update("alice", RecordKind.INCOME, rec.id, {"user_id": "mallory"})

        assert await recurring_flow.list_records("mallory", RecordKind.INCOME) == []

    @pytest.mark.asyncio
    async def test_breakdown(self, recurring_flow):
        await recurring_flow.create("user-1", RecordKind.INCOME, {
            "name": "Salary", "amount": 3000, "start_date": "2024-01-01",
        })
        await recurring_flow.create("user-1", RecordKind.INCOME, {
            "name": "Rent out", "amount": 100, "frequency": "week", "start_date": "2024-06-01",
        })

        contributions = await recurring_flow.breakdown("user-1", RecordKind.INCOME, "USD", "month:2024-06")

        assert {c.name: c.amount for c in contributions} == {"Salary": 3000.0, "Rent out": 500.0}

    @pytest.mark.asyncio
    async def test_upcoming_bills(self, recurring_flow):
        await recurring_flow.create("user-1", RecordKind.SUBSCRIPTION, {
            "name": "Music", "amount": 10, "start_date": "2024-01-20",
        })
        await recurring_flow.create("user-1", RecordKind.SUBSCRIPTION, {
            "name": "Weekly box", "amount": 40, "frequency": "week", "start_date": "2024-06-03",
        })
        await recurring_flow.create("user-1", RecordKind.SUBSCRIPTION, {
            "name": "Ending", "amount": 5, "start_date": "2024-01-16", "next_billing_date": "2024-06-16",
        })

        upcoming = await recurring_flow.upcoming_bills("user-1", current=TODAY)

        assert [(rec.name, due) for rec, due in upcoming] == [
            ("Weekly box", date(2024, 6, 17)),
            ("Music", date(2024, 6, 20)),
        ]

    @pytest.mark.asyncio
    async def test_unknown_kind(self, engine, audit_logger):
        flow = RecurringRecordFlow(
            {RecordKind.SUBSCRIPTION: InMemoryRecurringRecordStorage(RecordKind.SUBSCRIPTION)},
            engine=engine,
            audit_logger=audit_logger,
        )
        with pytest.raises(StorageError):
            await flow.list_records("user-1", RecordKind.INCOME)


class TestBudgetFlow:

    @pytest.mark.asyncio
    async def test_overview(self, budget_storage, transaction_storage, recurring_storages,
                            engine, converter, audit_logger, audit_storage):
        flow = BudgetFlow(
            budget_storage,
            transaction_storage,
            recurring_storages[RecordKind.SUBSCRIPTION],
            engine=engine,
            converter=converter,
            audit_logger=audit_logger,
        )
        await flow.set_budget("user-1", ExpenseCategory.SUBSCRIPTIONS, Decimal("20"), "usd")
        await recurring_storages[RecordKind.SUBSCRIPTION].create(
            RecurringRecord(
                user_id="user-1", name="Music", amount=15, start_date="2024-01-01",
            )
        )
        await transaction_storage.save_transactions([
            make_transaction("App", "10", date(2024, 6, 2), category=ExpenseCategory.SUBSCRIPTIONS),
        ])

        (line,) = await flow.overview("user-1", "USD", date(2024, 6, 1))

        assert line.category == ExpenseCategory.SUBSCRIPTIONS
        assert line.spent == 25.0
        assert line.limit == 20.0
        assert line.over_budget is True
        assert audit_storage.events[0].event_type == AuditEventType.BUDGET_UPDATED

    @pytest.mark.asyncio
    async def test_potential_subscriptions(self, budget_storage, transaction_storage, audit_logger):
        flow = BudgetFlow(budget_storage, transaction_storage, audit_logger=audit_logger)
        await transaction_storage.save_transactions([
            make_transaction("Cloud", "2", date(2024, 5, 1), category=ExpenseCategory.SUBSCRIPTIONS),
            make_transaction("Cloud", "2", date(2024, 6, 1), category=ExpenseCategory.SUBSCRIPTIONS),
        ])

        (found,) = await flow.potential_subscriptions("user-1", "USD")

        assert found.count == 2
        assert found.last_date == date(2024, 6, 1)

    @pytest.mark.asyncio
    async def test_insights(self, budget_storage, transaction_storage, audit_logger):
        client = FakeGeminiClient({"m1": [json.dumps({"insights": [
            {"type": "budget_warning", "message": "Groceries are close to budget", "category": "Groceries"},
        ]})]})
        flow = BudgetFlow(
            budget_storage, transaction_storage, audit_logger=audit_logger, insights_agent=InsightsAgent(client),
        )
        await transaction_storage.save_transactions([make_transaction("Milk", "2", date(2024, 6, 2))])
        await transaction_storage.save_transactions([
            make_transaction("Secret", "9", date(2024, 6, 2), user_id="user-2"),
        ])

        (insight,) = await flow.insights("user-1")

        assert insight.type == InsightType.BUDGET_WARNING
        prompt = client.calls[0][1][0]
        assert "Milk" in prompt
        assert "Secret" not in prompt

    @pytest.mark.asyncio
    async def test_insights_need_agent_and_transactions(self, budget_storage, transaction_storage):
        client = FakeGeminiClient({"m1": []})

        assert await BudgetFlow(budget_storage, transaction_storage).insights("user-1") == []
        flow = BudgetFlow(budget_storage, transaction_storage, insights_agent=InsightsAgent(client))
        assert await flow.insights("user-1") == []
        assert client.calls == []


class TestQueryFlow:
    """Question -> intent -> query -> answer."""

    @pytest.mark.asyncio
    async def test_answer_from_data(self, clock, transaction_storage, recurring_storages,
                                    engine, converter, audit_logger, audit_storage):
        await transaction_storage.save_transactions([
            make_transaction("Milk", "2", date(2024, 6, 2)),
            make_transaction("Bread", "3", date(2024, 6, 5)),
        ])
        client = FakeGeminiClient({"m1": [
            json.dumps({"query_type": "aggregate", "category": "Groceries",
                        "time_reference": "this month", "aggregation": "sum"}),
            "You spent $5.00 on groceries this month.",
        ]})
        flow = QueryFlow(
            QueryAgent(client, converter=converter, today=clock),
            QueryExecutor(transaction_storage, recurring_storages, engine=engine, converter=converter),
            audit_logger=audit_logger,
        )

        answer, result, query = await flow.answer_question("Groceries this month?", "user-1")

        assert answer == "You spent $5.00 on groceries this month."
        assert result.aggregation_result["value"] == 5.0
        assert query.period_selector == "month:2024-06"
        assert "value: $5.00" in client.calls[1][1][0]
        assert event_types(audit_storage) == [AuditEventType.QUERY_EXECUTED]

    @pytest.mark.asyncio
    async def test_failed_query_is_audited(self, clock, transaction_storage, audit_logger, audit_storage):
        client = FakeGeminiClient({"m1": [json.dumps({"query_type": "recurring"})]})
        flow = QueryFlow(
            QueryAgent(client, today=clock),
            QueryExecutor(transaction_storage),
            audit_logger=audit_logger,
        )

        answer, result, _ = await flow.answer_question("What do subscriptions cost?", "user-1")

        assert result.success is False
        assert answer.startswith("I couldn't run that query")
        assert event_types(audit_storage) == [AuditEventType.QUERY_FAILED]


class TestCreateAppComponents:

    def test_in_memory_wiring(self):
        from budget_tracker.config import get_settings

        get_settings.cache_clear()
        client = FakeGeminiClient({"m1": []})

        components = create_app_components(use_storage=False, client=client)

        assert components.sheets_client is None
        assert isinstance(components.expense_flow, ExpenseLoggingFlow)
        assert isinstance(components.recurring_flow, RecurringRecordFlow)
        assert isinstance(components.budget_flow, BudgetFlow)
        assert isinstance(components.query_flow, QueryFlow)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
