"""
Query Execution Engine

DESIGN DECISION: Query execution is DETERMINISTIC.
The LLM converts natural language to StructuredQuery.
This engine executes that query on actual stored data.
The LLM then formats the response.

At no point does the LLM have direct access to answer questions.
It can only see what this engine returns from storage.

Expense amounts are converted to the query currency before they are
summed. Recurring questions ("how much do my subscriptions cost this
year?") go through the period accounting engine.
"""

from datetime import date
from typing import Optional

import structlog

from budget_tracker.accounting import (
    CurrencyConverter,
    InvalidPeriodError,
    PeriodAccountingEngine,
)
from budget_tracker.models.expense import QueryResult, StructuredQuery, Transaction
from budget_tracker.models.recurring import RecordKind
from budget_tracker.services.storage import (
    RecurringRecordStorageInterface,
    StorageError,
    TransactionStorageInterface,
)


logger = structlog.get_logger(__name__)


class QueryExecutionError(Exception):
    """Error during query execution."""
    pass


class QueryExecutor:
    """
    Executes structured queries against stored expenses and recurring records.

    GUARANTEES:
    - Only returns real data from storage
    - Never invents or estimates
    - Clear "no data found" if nothing matches
    """

    def __init__(
        self,
        transactions: TransactionStorageInterface,
        recurring: Optional[dict[RecordKind, RecurringRecordStorageInterface]] = None,
        engine: Optional[PeriodAccountingEngine] = None,
        converter: Optional[CurrencyConverter] = None,
    ):
        self._transactions = transactions
        self._recurring = recurring or {}
        self._converter = converter or CurrencyConverter()
        self._engine = engine or PeriodAccountingEngine(converter=self._converter)

    async def execute(self, query: StructuredQuery) -> QueryResult:
        """
        Execute a structured query and return results.

        Storage failures and bad periods come back as an unsuccessful
        QueryResult rather than an exception.
        """
        handlers = {
            "lookup": self._execute_list,
            "list": self._execute_list,
            "aggregate": self._execute_aggregate,
            "exists": self._execute_exists,
            "recurring": self._execute_recurring,
        }
        handler = handlers.get(query.query_type, self._execute_list)

        try:
            return await handler(query)
        except (StorageError, InvalidPeriodError, QueryExecutionError) as e:
            logger.warning("query_execution_failed", query_id=str(query.query_id), error=str(e))
            return QueryResult(
                query_id=query.query_id,
                success=False,
                error_message=str(e),
                data_found=False,
                result_count=0,
                query_description=f"Query failed: {e}",
            )

    async def _fetch(self, query: StructuredQuery, limit: int) -> list[Transaction]:
        return await self._transactions.list_transactions(
            user_id=query.user_id,
            category=query.category_filter,
            item=query.item_filter,
            date_from=query.date_from,
            date_to=query.date_to,
            limit=limit,
        )

    async def _execute_list(self, query: StructuredQuery) -> QueryResult:
        """Execute a list or lookup query."""
        transactions = await self._fetch(query, query.limit)
        results = [self._transaction_to_dict(t, query.currency) for t in transactions]

        desc_parts = ["Listing expenses"]
        desc_parts.extend(self._filter_descriptions(query))

        return QueryResult(
            query_id=query.query_id,
            success=True,
            data_found=len(results) > 0,
            result_count=len(results),
            results=results,
            query_description=" | ".join(desc_parts),
        )

    async def _execute_aggregate(self, query: StructuredQuery) -> QueryResult:
        """Execute an aggregate query (sum, count, average, min, max)."""
        transactions = await self._fetch(query, limit=100000)

        if not transactions:
            return QueryResult(
                query_id=query.query_id,
                success=True,
                data_found=False,
                result_count=0,
                query_description="No expenses found for aggregation",
            )

        amounts = [self._amount_in(t, query.currency) for t in transactions]
        aggregation_result = self._aggregate(amounts, query.aggregation_type)
        aggregation_result["currency"] = query.currency

        if query.group_by:
            groups: dict[str, list[float]] = {}
            for txn, amount in zip(transactions, amounts):
                groups.setdefault(self._group_key(txn, query.group_by), []).append(amount)
            aggregation_result["breakdown"] = {
                key: self._aggregate(values, query.aggregation_type)["value"]
                for key, values in sorted(groups.items())
            }

        desc_parts = [f"Calculating {query.aggregation_type or 'sum'}"]
        desc_parts.extend(self._filter_descriptions(query))
        if query.group_by:
            desc_parts.append(f"grouped by {query.group_by}")

        return QueryResult(
            query_id=query.query_id,
            success=True,
            data_found=True,
            result_count=len(transactions),
            aggregation_result=aggregation_result,
            query_description=" ".join(desc_parts),
        )

    async def _execute_exists(self, query: StructuredQuery) -> QueryResult:
        """Execute an exists query (yes/no check)."""
        transactions = await self._fetch(query, limit=1)
        exists = len(transactions) > 0

        result_data = [{"exists": exists, "answer": "yes" if exists else "no"}]
        if exists:
            result_data.append(self._transaction_to_dict(transactions[0], query.currency))

        desc_parts = ["Checking for expenses"]
        desc_parts.extend(self._filter_descriptions(query))

        return QueryResult(
            query_id=query.query_id,
            success=True,
            data_found=exists,
            result_count=1 if exists else 0,
            results=result_data,
            query_description=" ".join(desc_parts),
        )

    async def _execute_recurring(self, query: StructuredQuery) -> QueryResult:
        """Total cost of subscriptions, or total income, over a reporting period."""
        kind = RecordKind(query.record_kind or RecordKind.SUBSCRIPTION.value)
        storage = self._recurring.get(kind)
        if storage is None:
            raise QueryExecutionError(f"No storage configured for {kind.value} records")

        records = await storage.list_active_by_user(query.user_id)
        contributions = self._engine.compute_breakdown(
            records,
            query.currency,
            query.period_selector,
        )
        charged = [c for c in contributions if c.amount > 0]
        total = sum((c.amount for c in charged), 0.0)

        return QueryResult(
            query_id=query.query_id,
            success=True,
            data_found=len(charged) > 0,
            result_count=len(charged),
            results=[
                {
                    "name": c.name,
                    "frequency": c.frequency.value,
                    "amount": round(c.amount, 2),
                    "currency": c.currency,
                }
                for c in sorted(charged, key=lambda c: c.amount, reverse=True)
            ],
            aggregation_result={
                "total_amount": round(total, 2),
                "currency": query.currency,
                "period": query.period_selector,
            },
            query_description=f"Total {kind.value} amount for {query.period_selector}",
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _amount_in(self, txn: Transaction, currency: str) -> float:
        return self._converter.convert(float(txn.amount), txn.currency, currency)

    def _aggregate(self, amounts: list[float], aggregation_type: Optional[str]) -> dict:
        if aggregation_type == "count":
            value = len(amounts)
        elif aggregation_type == "average":
            value = sum(amounts) / len(amounts)
        elif aggregation_type == "min":
            value = min(amounts)
        elif aggregation_type == "max":
            value = max(amounts)
        else:
            aggregation_type = "sum"
            value = sum(amounts)

        if isinstance(value, float):
            value = round(value, 2)
        return {"aggregation": aggregation_type, "value": value, "count": len(amounts)}

    def _group_key(self, txn: Transaction, group_by: str) -> str:
        if group_by == "category":
            return txn.category.value
        if group_by == "month":
            return txn.expense_date.strftime("%Y-%m")
        return str(txn.expense_date.year)

    def _transaction_to_dict(self, txn: Transaction, currency: str) -> dict:
        return {
            "id": str(txn.id),
            "item": txn.item,
            "category": txn.category.value,
            "amount": float(txn.amount),
            "currency": txn.currency,
            "converted_amount": round(self._amount_in(txn, currency), 2),
            "expense_date": txn.expense_date.isoformat(),
        }

    def _filter_descriptions(self, query: StructuredQuery) -> list[str]:
        parts = []
        if query.category_filter:
            parts.append(f"category: {query.category_filter.value}")
        if query.item_filter:
            parts.append(f"item: {query.item_filter}")
        if query.date_from or query.date_to:
            parts.append(self._date_range_str(query.date_from, query.date_to))
        return parts

    def _date_range_str(
        self,
        date_from: Optional[date],
        date_to: Optional[date],
    ) -> str:
        """Format date range for description."""
        if date_from and date_to:
            if date_from == date_to:
                return f"on {date_from.strftime('%d %b %Y')}"
            return f"from {date_from.strftime('%d %b %Y')} to {date_to.strftime('%d %b %Y')}"
        if date_from:
            return f"since {date_from.strftime('%d %b %Y')}"
        if date_to:
            return f"until {date_to.strftime('%d %b %Y')}"
        return ""
