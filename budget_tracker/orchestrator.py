"""
Main Orchestrator for Budget Tracker

This module ties together all the components and defines the
end-to-end flows for:
1. Expense logging (receipt / voice / text -> parse -> validate -> confirm -> save)
2. Recurring records (subscriptions and income: create, update, delete, report)
3. Budgets (limits per category, monthly overview)
4. Query (question -> parse -> execute -> respond)

DESIGN DECISION: The orchestrator enforces the boundaries:
- No expense persists without human confirmation
- No query answers without data lookup
- Every step is audited
"""

from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Mapping, NamedTuple, Optional
from uuid import UUID

import structlog
from pydantic import ValidationError

from budget_tracker.accounting import (
    BudgetLine,
    CurrencyConverter,
    PeriodAccountingEngine,
    PotentialSubscription,
    RecordContribution,
    build_budget_overview,
    detect_potential_subscriptions,
    next_billing_date,
)
from budget_tracker.accounting.engine import PeriodLike
from budget_tracker.agents import (
    AllProvidersFailedError,
    ExpenseParsingAgent,
    ExpenseParsingError,
    GeminiClient,
    Insight,
    InsightsAgent,
    ProviderChain,
    QueryAgent,
)
from budget_tracker.agents.insights import MAX_TRANSACTIONS as MAX_INSIGHT_TRANSACTIONS
from budget_tracker.audit import AuditLogger, configure_logging, create_correlation_id
from budget_tracker.config import get_settings
from budget_tracker.models.audit import AuditEventType
from budget_tracker.models.expense import (
    Budget,
    ExpenseCategory,
    ExpenseItem,
    ParsedExpense,
    QueryResult,
    StructuredQuery,
    Transaction,
    ValidationResult,
)
from budget_tracker.models.recurring import RecordKind, RecurringRecord
from budget_tracker.queries import QueryExecutor
from budget_tracker.services.storage import (
    BudgetStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsBudgetStorage,
    GoogleSheetsClient,
    GoogleSheetsRecurringRecordStorage,
    GoogleSheetsTransactionStorage,
    InMemoryBudgetStorage,
    InMemoryRecurringRecordStorage,
    InMemoryTransactionStorage,
    NotFoundError,
    RecurringRecordStorageInterface,
    StorageError,
    TransactionStorageInterface,
)
from budget_tracker.validation import ExpenseValidator


logger = structlog.get_logger(__name__)

_FIXED_RECORD_FIELDS = frozenset({"id", "user_id", "kind"})


class ExpenseLoggingFlow:
    """
    Orchestrates the expense capture flow.

    Flow:
    1. Parse -> AI reads a receipt, a voice memo or a note
    2. Validate -> Two-stage validation
    3. Review -> Present to user (PAUSE - require confirmation)
    4. Confirm -> User explicitly approves (possibly after editing)
    5. Save -> One Transaction per item

    Human confirmation (step 4) is MANDATORY.
    The system NEVER auto-saves.
    """

    def __init__(
        self,
        parser: ExpenseParsingAgent,
        transaction_storage: Optional[TransactionStorageInterface] = None,
        validator: Optional[ExpenseValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        default_currency: str = "USD",
    ):
        self._parser = parser
        self._storage = transaction_storage
        self._validator = validator or ExpenseValidator(transaction_storage)
        self._audit_logger = audit_logger or AuditLogger()
        self._default_currency = default_currency

    async def parse_receipt(
        self,
        image_bytes: bytes,
        mime_type: str,
        user_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[ParsedExpense, ValidationResult, str]:
        return await self._parse(
            "receipt",
            self._parser.parse_receipt(image_bytes, mime_type),
            user_id,
            correlation_id,
        )

    async def parse_audio(
        self,
        audio_bytes: bytes,
        mime_type: str,
        user_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[ParsedExpense, ValidationResult, str]:
        return await self._parse(
            "audio",
            self._parser.parse_audio(audio_bytes, mime_type),
            user_id,
            correlation_id,
        )

    async def parse_text(
        self,
        text: str,
        user_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[ParsedExpense, ValidationResult, str]:
        return await self._parse(
            "text",
            self._parser.parse_text(text),
            user_id,
            correlation_id,
        )

    async def _parse(
        self,
        source: str,
        parsing: Awaitable[ParsedExpense],
        user_id: str,
        correlation_id: Optional[UUID],
    ) -> tuple[ParsedExpense, ValidationResult, str]:
        """
        Await a parser call, then validate its result.

        Returns:
            (parsed, validation_result, user_message)

        Raises:
            ExpenseParsingError: If the input itself was unusable
            AllProvidersFailedError: If no model could parse it
        """
        correlation_id = correlation_id or create_correlation_id()

        try:
            parsed = await parsing
        except (ExpenseParsingError, AllProvidersFailedError) as e:
            await self._audit_logger.log_expense_parse_failed(
                source=source,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise

        await self._audit_logger.log_expense_parsed(
            extraction_id=parsed.extraction_id,
            source=source,
            item_count=len(parsed.items),
            model_name=parsed.model_name,
            correlation_id=correlation_id,
        )

        result = await self._validator.validate(parsed, user_id=user_id)
        message = self._validator.get_user_friendly_summary(result)

        if not result.is_valid:
            await self._audit_logger.log_validation_failed(
                extraction_id=parsed.extraction_id,
                issues=[
                    {"field": i.field, "type": i.issue_type, "message": i.message}
                    for i in result.issues
                ],
                correlation_id=correlation_id,
            )

        return parsed, result, message

    async def confirm_and_save(
        self,
        parsed: ParsedExpense,
        user_id: str,
        items: Optional[list[ExpenseItem]] = None,
        expense_date: Optional[date] = None,
        currency: Optional[str] = None,
        receipt_url: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        """
        Confirm and save the expense, one Transaction per item.

        CRITICAL: This is called ONLY after explicit user confirmation.

        Args:
            parsed: The proposal the user reviewed
            items: Items as edited by the user. Defaults to the parsed items
            expense_date: Date as edited by the user. Defaults to the parsed date, then today

        Raises:
            StorageError: If the transactions could not be saved
        """
        correlation_id = correlation_id or create_correlation_id()
        confirmed_items = parsed.items if items is None else items
        when = expense_date or parsed.expense_date or date.today()

        transactions = [
            Transaction(
                user_id=user_id,
                item=item.item,
                amount=item.amount,
                currency=currency or self._default_currency,
                category=item.category,
                expense_date=when,
                source=parsed.source,
                receipt_url=receipt_url,
                extraction_id=parsed.extraction_id,
            )
            for item in confirmed_items
        ]

        await self._audit_logger.log_user_confirmed(
            extraction_id=parsed.extraction_id,
            user_id=user_id,
            item_count=len(transactions),
            correlation_id=correlation_id,
        )

        if self._storage is None:
            return transactions

        try:
            await self._storage.save_transactions(transactions)
        except StorageError as e:
            await self._audit_logger.log_save_failed(
                entity_type="transaction",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise

        for txn in transactions:
            await self._audit_logger.log_transaction_saved(
                transaction_id=txn.id,
                user_id=user_id,
                item=txn.item,
                amount=str(txn.amount),
                currency=txn.currency,
                correlation_id=correlation_id,
            )
        return transactions

    async def reject(
        self,
        parsed: ParsedExpense,
        user_id: str,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Record that the user discarded the proposal."""
        await self._audit_logger.log_user_rejected(
            extraction_id=parsed.extraction_id,
            user_id=user_id,
            reason=reason,
            correlation_id=correlation_id or create_correlation_id(),
        )

    async def _owned_transaction(self, user_id: str, transaction_id: UUID) -> Transaction:
        """
        The user's transaction with this id.

        Raises:
            StorageError: If no transaction storage is configured
            NotFoundError: If no such transaction belongs to the user
        """
        if self._storage is None:
            raise StorageError("No transaction storage configured")
        page_size = 1000
        offset = 0
        while True:
            page = await self._storage.list_transactions(user_id, limit=page_size, offset=offset)
            for txn in page:
                if txn.id == transaction_id:
                    return txn
            if len(page) < page_size:
                raise NotFoundError(f"Transaction not found: {transaction_id}")
            offset += page_size

    async def update_transaction(
        self,
        user_id: str,
        transaction_id: UUID,
        patch: Mapping[str, Any],
    ) -> Transaction:
        """
        Correct a confirmed expense after the fact.

        Raises:
            NotFoundError: If the user has no transaction with this id
            ValueError: If the patch touches a field that can't be corrected
        """
        current = await self._owned_transaction(user_id, transaction_id)
        # Reject a bad patch before the backend sees it
        current.with_patch(patch)
        updated = await self._storage.update_transaction(transaction_id, patch)
        await self._audit_logger.log_record_changed(
            AuditEventType.TRANSACTION_UPDATED,
            str(transaction_id),
            "transaction",
            user_id,
            {"fields": sorted(patch)},
        )
        return updated

    async def delete_transaction(self, user_id: str, transaction_id: UUID) -> bool:
        """
        Remove a confirmed expense.

        Raises:
            NotFoundError: If the user has no transaction with this id
        """
        await self._owned_transaction(user_id, transaction_id)
        deleted = await self._storage.delete_transaction(transaction_id)
        if deleted:
            await self._audit_logger.log_record_changed(
                AuditEventType.TRANSACTION_DELETED,
                str(transaction_id),
                "transaction",
                user_id,
            )
        return deleted


class RecurringRecordFlow:
    """
    Subscriptions and income streams: edits are audited, reports go
    through the period accounting engine.
    """

    def __init__(
        self,
        storages: Mapping[RecordKind, RecurringRecordStorageInterface],
        engine: Optional[PeriodAccountingEngine] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storages = dict(storages)
        self._engine = engine or PeriodAccountingEngine()
        self._audit_logger = audit_logger or AuditLogger()

    def _storage(self, kind: RecordKind) -> RecurringRecordStorageInterface:
        try:
            return self._storages[kind]
        except KeyError:
            raise StorageError(f"No storage configured for {kind.value} records")

    async def _owned_record(self, user_id: str, kind: RecordKind, record_id: str) -> RecurringRecord:
        """
        The user's record with this id.

        Raises:
            NotFoundError: If no such record belongs to the user
        """
        for rec in await self._storage(kind).list_by_user(user_id):
            if rec.id == record_id:
                return rec
        raise NotFoundError(f"{kind.value.capitalize()} not found: {record_id}")

    async def create(
        self,
        user_id: str,
        kind: RecordKind,
        data: Mapping[str, Any],
    ) -> RecurringRecord:
        """
        Create a subscription or income record.

        Raises:
            ValueError: If the record has no name or a negative amount
        """
        record = RecurringRecord.model_validate({**data, "user_id": user_id, "kind": kind})
        if not record.name:
            raise ValueError("A recurring record needs a name")
        if record.amount < 0:
            raise ValueError("Amount cannot be negative")

        stored = await self._storage(kind).create(record)
        await self._audit_logger.log_record_changed(
            event_type=AuditEventType.RECORD_CREATED,
            record_id=stored.id,
            kind=kind.value,
            user_id=user_id,
            details={
                "name": stored.name,
                "amount": stored.amount,
                "currency": stored.currency,
                "frequency": stored.frequency.value,
            },
        )
        return stored

    async def update(
        self,
        user_id: str,
        kind: RecordKind,
        record_id: str,
        patch: Mapping[str, Any],
    ) -> RecurringRecord:
        """
        Apply a partial update, e.g. {"active": False} to pause a subscription.

        Raises:
            NotFoundError: If the user has no record with this id
            ValueError: If the patch tries to change the id or the owner
        """
        if _FIXED_RECORD_FIELDS & set(patch):
            raise ValueError(f"Cannot change {', '.join(sorted(_FIXED_RECORD_FIELDS & set(patch)))}")
        await self._owned_record(user_id, kind, record_id)

        updated = await self._storage(kind).update(record_id, patch)
        await self._audit_logger.log_record_changed(
            event_type=AuditEventType.RECORD_UPDATED,
            record_id=record_id,
            kind=kind.value,
            user_id=user_id,
            details={"fields": sorted(patch.keys())},
        )
        return updated

    async def delete(self, user_id: str, kind: RecordKind, record_id: str) -> bool:
        """
        Delete one of the user's records.

        Raises:
            NotFoundError: If the user has no record with this id
        """
        await self._owned_record(user_id, kind, record_id)
        deleted = await self._storage(kind).delete(record_id)
        if deleted:
            await self._audit_logger.log_record_changed(
                event_type=AuditEventType.RECORD_DELETED,
                record_id=record_id,
                kind=kind.value,
                user_id=user_id,
            )
        return deleted

    async def list_records(self, user_id: str, kind: RecordKind) -> list[RecurringRecord]:
        return await self._storage(kind).list_by_user(user_id)

    async def monthly_total(
        self,
        user_id: str,
        kind: RecordKind,
        currency: str,
        month_date: Optional[date] = None,
    ) -> float:
        """Charge (or income) for one calendar month, default this month."""
        records = await self._storage(kind).list_active_by_user(user_id)
        return self._engine.compute_monthly_aggregate(records, currency, month_date)

    async def period_total(
        self,
        user_id: str,
        kind: RecordKind,
        currency: str,
        period: PeriodLike,
    ) -> float:
        """
        Total over a month, year or all time.

        Raises:
            InvalidPeriodError: If period is an unreadable selector
        """
        records = await self._storage(kind).list_active_by_user(user_id)
        return self._engine.compute_aggregate(records, currency, period)

    async def breakdown(
        self,
        user_id: str,
        kind: RecordKind,
        currency: str,
        period: PeriodLike,
    ) -> list[RecordContribution]:
        records = await self._storage(kind).list_active_by_user(user_id)
        return self._engine.compute_breakdown(records, currency, period)

    async def upcoming_bills(
        self,
        user_id: str,
        current: Optional[date] = None,
    ) -> list[tuple[RecurringRecord, date]]:
        """Active subscriptions with their next billing date, soonest first."""
        records = await self._storage(RecordKind.SUBSCRIPTION).list_active_by_user(user_id)
        upcoming = []
        for rec in records:
            due = next_billing_date(rec.effective_start, rec.frequency, current)
            if due is None:
                continue
            if rec.end_date is not None and due >= rec.end_date:
                continue
            upcoming.append((rec, due))
        upcoming.sort(key=lambda pair: pair[1])
        return upcoming


class BudgetFlow:
    """Category budgets and the monthly spending overview."""

    def __init__(
        self,
        budget_storage: BudgetStorageInterface,
        transaction_storage: TransactionStorageInterface,
        subscription_storage: Optional[RecurringRecordStorageInterface] = None,
        engine: Optional[PeriodAccountingEngine] = None,
        converter: Optional[CurrencyConverter] = None,
        audit_logger: Optional[AuditLogger] = None,
        insights_agent: Optional[InsightsAgent] = None,
    ):
        self._budgets = budget_storage
        self._transactions = transaction_storage
        self._subscriptions = subscription_storage
        self._converter = converter or CurrencyConverter()
        self._engine = engine or PeriodAccountingEngine(converter=self._converter)
        self._audit_logger = audit_logger or AuditLogger()
        self._insights = insights_agent

    async def set_budget(
        self,
        user_id: str,
        category: ExpenseCategory,
        amount: Decimal,
        currency: str,
    ) -> Budget:
        budget = Budget(user_id=user_id, category=category, amount=amount, currency=currency.upper())
        await self._budgets.set_budget(budget)
        await self._audit_logger.log_budget_updated(
            user_id=user_id,
            category=budget.category.value,
            amount=str(budget.amount),
            currency=budget.currency,
        )
        return budget

    async def overview(
        self,
        user_id: str,
        currency: str,
        month_date: Optional[date] = None,
    ) -> list[BudgetLine]:
        """Per-category spending against limits for one month (default this month)."""
        subscriptions = []
        if self._subscriptions is not None:
            subscriptions = await self._subscriptions.list_active_by_user(user_id)

        return build_budget_overview(
            transactions=await self._transactions.list_transactions(user_id, limit=100000),
            budgets=await self._budgets.list_budgets(user_id),
            subscriptions=subscriptions,
            currency=currency,
            month_date=month_date,
            engine=self._engine,
            converter=self._converter,
        )

    async def potential_subscriptions(
        self,
        user_id: str,
        currency: str,
    ) -> list[PotentialSubscription]:
        """Repeated Subscriptions-category purchases worth tracking as subscriptions."""
        transactions = await self._transactions.list_transactions(
            user_id,
            category=ExpenseCategory.SUBSCRIPTIONS,
            limit=100000,
        )
        return detect_potential_subscriptions(transactions, currency, self._converter)

    async def insights(self, user_id: str) -> list[Insight]:
        """A few AI observations about recent spending; empty without an agent or transactions."""
        if self._insights is None:
            return []
        try:
            transactions = await self._transactions.list_transactions(user_id, limit=MAX_INSIGHT_TRANSACTIONS)
        except StorageError as e:
            logger.warning("insights_unavailable", user_id=user_id, error=str(e))
            return []
        return await self._insights.generate_insights(transactions)


class QueryFlow:
    """
    Orchestrates the question answering flow.

    CRITICAL BOUNDARIES:
    1. User question -> LLM parses intent
    2. Intent -> StructuredQuery (deterministic)
    3. Query -> Execute on storage (deterministic)
    4. Results -> LLM generates response

    The LLM is NEVER allowed to answer directly.
    """

    def __init__(
        self,
        query_agent: QueryAgent,
        executor: QueryExecutor,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._query_agent = query_agent
        self._executor = executor
        self._audit_logger = audit_logger or AuditLogger()

    async def answer_question(
        self,
        question: str,
        user_id: str,
        currency: str = "USD",
        correlation_id: Optional[UUID] = None,
    ) -> tuple[str, QueryResult, StructuredQuery]:
        """
        Answer a user's question from their stored data.

        Returns:
            (answer, query_result, structured_query)
        """
        correlation_id = correlation_id or create_correlation_id()

        intent = await self._query_agent.parse_question(question)
        query = self._query_agent.intent_to_query(intent, question, user_id, currency)
        result = await self._executor.execute(query)

        if result.success:
            await self._audit_logger.log_query_executed(
                query_id=query.query_id,
                query_type=query.query_type,
                result_count=result.result_count,
                correlation_id=correlation_id,
            )
        else:
            await self._audit_logger.log_query_failed(
                question=question,
                error_message=result.error_message or "unknown error",
                correlation_id=correlation_id,
            )

        response = await self._query_agent.generate_response(query, result)
        return response.response, result, query


class AppComponents(NamedTuple):
    expense_flow: ExpenseLoggingFlow
    recurring_flow: RecurringRecordFlow
    budget_flow: BudgetFlow
    query_flow: QueryFlow
    sheets_client: Optional[GoogleSheetsClient]


def create_app_components(
    use_storage: bool = True,
    client: Optional[GeminiClient] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to use Google Sheets storage.
                    Falls back to in-memory storage when False or when
                    Sheets isn't configured.
        client: Gemini client. Defaults to one built from the environment.
    """
    app_settings = get_settings().app
    if app_settings.debug_mode:
        configure_logging(json_output=False)
    sheets_client = None
    audit_storage = None

    try:
        if not use_storage:
            raise StorageError("storage disabled")
        sheets_client = GoogleSheetsClient()
        transactions: TransactionStorageInterface = GoogleSheetsTransactionStorage(sheets_client)
        budgets: BudgetStorageInterface = GoogleSheetsBudgetStorage(sheets_client)
        recurring: dict[RecordKind, RecurringRecordStorageInterface] = {
            kind: GoogleSheetsRecurringRecordStorage(kind, sheets_client)
            for kind in RecordKind
        }
        audit_storage = GoogleSheetsAuditStorage(sheets_client)
    except (StorageError, ValidationError) as e:
        logger.warning("storage_not_configured", error=str(e))
        sheets_client = None
        transactions = InMemoryTransactionStorage()
        budgets = InMemoryBudgetStorage()
        recurring = {kind: InMemoryRecurringRecordStorage(kind) for kind in RecordKind}

    audit_logger = AuditLogger(audit_storage)

    async def audit_provider_failure(provider: str, error: Exception, overloaded: bool) -> None:
        await audit_logger.log_provider_failed(
            provider=provider,
            error_message=str(error),
            overloaded=overloaded,
        )

    client = client or GeminiClient()
    converter = CurrencyConverter()
    engine = PeriodAccountingEngine(
        converter=converter,
        default_currency=app_settings.default_currency,
    )

    parser = ExpenseParsingAgent(
        client,
        chain=ProviderChain(client.model_names, on_failure=audit_provider_failure),
        settings=app_settings,
    )
    insights_agent = InsightsAgent(
        client,
        chain=ProviderChain(client.model_names, on_failure=audit_provider_failure),
    )
    query_agent = QueryAgent(
        client,
        chain=ProviderChain(client.model_names, on_failure=audit_provider_failure),
        converter=converter,
    )

    return AppComponents(
        expense_flow=ExpenseLoggingFlow(
            parser=parser,
            transaction_storage=transactions,
            validator=ExpenseValidator(transactions, settings=app_settings),
            audit_logger=audit_logger,
            default_currency=app_settings.default_currency,
        ),
        recurring_flow=RecurringRecordFlow(
            storages=recurring,
            engine=engine,
            audit_logger=audit_logger,
        ),
        budget_flow=BudgetFlow(
            budget_storage=budgets,
            transaction_storage=transactions,
            subscription_storage=recurring[RecordKind.SUBSCRIPTION],
            engine=engine,
            converter=converter,
            audit_logger=audit_logger,
            insights_agent=insights_agent,
        ),
        query_flow=QueryFlow(
            query_agent=query_agent,
            executor=QueryExecutor(transactions, recurring, engine=engine, converter=converter),
            audit_logger=audit_logger,
        ),
        sheets_client=sheets_client,
    )
