"""
Query Agent

CRITICAL BOUNDARIES:
1. The LLM ONLY converts questions to structured queries
2. The LLM ONLY generates responses FROM fetched data
3. The LLM NEVER answers from its own knowledge
4. If no data is found, it MUST say so explicitly

FLOW:
1. User asks question -> LLM extracts intent
2. Intent -> StructuredQuery (deterministic conversion)
3. StructuredQuery executes on storage (deterministic)
4. Results -> LLM generates natural language response

The LLM is sandwiched between two deterministic steps.
It cannot hallucinate numbers because it only sees real data.
"""

import re
from datetime import date
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from budget_tracker.accounting.currency import CurrencyConverter
from budget_tracker.agents.expense_parser import extract_json_object
from budget_tracker.agents.fallback import (
    AllProvidersFailedError,
    ExpenseParsingError,
    ProviderChain,
)
from budget_tracker.agents.gemini_client import GeminiClient
from budget_tracker.dates import add_months, last_day_of_month
from budget_tracker.models.expense import (
    ExpenseCategory,
    QueryResult,
    StructuredQuery,
)


logger = structlog.get_logger(__name__)

_MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4,
    "may": 5, "june": 6, "july": 7, "august": 8,
    "september": 9, "october": 10, "november": 11, "december": 12,
}

_AGGREGATIONS = {
    "sum": "sum", "total": "sum",
    "count": "count", "number": "count",
    "average": "average", "avg": "average", "mean": "average",
    "min": "min", "minimum": "min", "lowest": "min",
    "max": "max", "maximum": "max", "highest": "max",
}


class QueryIntent(BaseModel):
    """
    Parsed intent from a natural language question.

    This is what the LLM extracts from the user's question.
    It is then converted to a StructuredQuery for execution.
    """

    query_type: str = Field(
        default="list",
        description="Type: lookup, aggregate, list, exists, recurring"
    )
    category: Optional[str] = None
    item: Optional[str] = None
    time_reference: Optional[str] = Field(
        default=None,
        description="Time reference (last month, this year, March, 2024, ...)"
    )
    aggregation: Optional[str] = None
    group_by: Optional[str] = None
    record_kind: Optional[str] = Field(
        default=None,
        description="subscription or income, for recurring questions"
    )


class NaturalLanguageResponse(BaseModel):
    """
    AI-generated natural language response based on query results.

    The LLM generates this FROM the query results.
    It NEVER invents data - only formats what was found.
    """

    response: str
    confidence: float = Field(ge=0.0, le=1.0)
    data_used: bool


INTENT_PROMPT = f"""You are parsing a question about personal expenses, subscriptions and income.

Question: "{{question}}"

Extract the intent as a JSON object with these fields:
- query_type: one of [lookup, aggregate, list, exists, recurring]
  - recurring: questions about subscription costs or income totals
- category: one of [{", ".join(c.value for c in ExpenseCategory)}] if mentioned
- item: a specific item or merchant if mentioned
- time_reference: e.g. "this month", "last month", "this year", "March", "2024"
- aggregation: sum, count, average, min or max
- group_by: category, month or year
- record_kind: subscription or income (recurring questions only)

Examples:
"How much did I spend on groceries this year?" ->
{{"query_type": "aggregate", "category": "Groceries", "time_reference": "this year", "aggregation": "sum"}}

"What do my subscriptions cost per month?" ->
{{"query_type": "recurring", "record_kind": "subscription", "time_reference": "this month"}}

Respond with ONLY the JSON object, no explanation."""


class QueryAgent:
    """
    AI agent for the question answering flow.

    Args:
        client: Gemini client
        chain: Provider fallback over model names. Defaults to the client's models
        converter: Used for currency symbols in fallback answers
        today: Clock used for relative time references
    """

    def __init__(
        self,
        client: GeminiClient,
        chain: Optional[ProviderChain] = None,
        converter: Optional[CurrencyConverter] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self._client = client
        self._chain = chain or ProviderChain(client.model_names)
        self._converter = converter or CurrencyConverter()
        self._today = today or date.today

    async def _generate(self, prompt: str) -> str:
        async def attempt(model_name: str) -> str:
            return await self._client.generate(model_name, [prompt])
        return await self._chain.run(attempt)

    async def parse_question(self, question: str) -> QueryIntent:
        """
        Parse a natural language question into a structured intent.

        Falls back to a plain list intent if the model can't be reached
        or its answer can't be read.
        """
        prompt = INTENT_PROMPT.replace("{question}", question.replace('"', "'"))
        try:
            data = extract_json_object(await self._generate(prompt))
            return QueryIntent(**data)
        except (AllProvidersFailedError, ExpenseParsingError, ValidationError, TypeError) as e:
            logger.warning("query_intent_fallback", error=str(e))
            return QueryIntent(query_type="list")

    def resolve_time_reference(
        self,
        time_ref: Optional[str],
    ) -> tuple[Optional[date], Optional[date]]:
        """
        Convert a natural language time reference to an inclusive date range.

        This is DETERMINISTIC - no LLM involvement.
        """
        if not time_ref:
            return None, None

        time_ref = time_ref.lower().strip()
        today = self._today()

        if time_ref in ("this month", "current month", "monthly", "per month"):
            return today.replace(day=1), last_day_of_month(today.year, today.month)

        if time_ref in ("last month", "previous month"):
            start = add_months(today.replace(day=1), -1)
            return start, last_day_of_month(start.year, start.month)

        if time_ref in ("this year", "current year"):
            return date(today.year, 1, 1), date(today.year, 12, 31)

        if time_ref in ("last year", "previous year"):
            return date(today.year - 1, 1, 1), date(today.year - 1, 12, 31)

        year_match = re.search(r"\b(19|20)\d{2}\b", time_ref)

        for month_name, month_num in _MONTHS.items():
            if month_name in time_ref:
                if year_match:
                    year = int(year_match.group())
                else:
                    # A month later than now must be last year's
                    year = today.year if month_num <= today.month else today.year - 1
                return date(year, month_num, 1), last_day_of_month(year, month_num)

        if year_match:
            year = int(year_match.group())
            return date(year, 1, 1), date(year, 12, 31)

        return None, None

    def intent_to_query(
        self,
        intent: QueryIntent,
        original_question: str,
        user_id: str,
        currency: str = "USD",
    ) -> StructuredQuery:
        """
        Convert parsed intent to executable structured query.

        This is DETERMINISTIC - maps intent fields to query parameters.
        """
        date_from, date_to = self.resolve_time_reference(intent.time_reference)

        query_type = (intent.query_type or "list").lower()
        if query_type not in ("lookup", "aggregate", "list", "exists", "recurring"):
            query_type = "list"

        category_filter = None
        if intent.category:
            category = ExpenseCategory.from_label(intent.category)
            if category.value.lower() == intent.category.strip().lower():
                category_filter = category

        agg_type = _AGGREGATIONS.get((intent.aggregation or "").lower())

        group = None
        if intent.group_by and intent.group_by.lower() in ("category", "month", "year"):
            group = intent.group_by.lower()
        elif intent.group_by and intent.group_by.lower() == "type":
            group = "category"

        record_kind = None
        if query_type == "recurring":
            kind = (intent.record_kind or "subscription").lower()
            record_kind = "income" if kind.startswith("income") else "subscription"

        return StructuredQuery(
            user_id=user_id,
            original_question=original_question,
            query_type=query_type,
            category_filter=category_filter,
            item_filter=intent.item or None,
            date_from=date_from,
            date_to=date_to,
            aggregation_type=agg_type,
            group_by=group,
            record_kind=record_kind,
            period_selector=self.period_selector(date_from, date_to),
            currency=currency,
        )

    @staticmethod
    def period_selector(date_from: Optional[date], date_to: Optional[date]) -> str:
        """Reporting period selector matching a resolved date range."""
        if date_from is None or date_to is None:
            return "all"
        if date_from.day == 1 and date_to == last_day_of_month(date_from.year, date_from.month):
            return f"month:{date_from.year:04d}-{date_from.month:02d}"
        if date_from == date(date_from.year, 1, 1) and date_to == date(date_from.year, 12, 31):
            return f"year:{date_from.year:04d}"
        return "all"

    async def generate_response(
        self,
        query: StructuredQuery,
        result: QueryResult,
    ) -> NaturalLanguageResponse:
        """
        Generate a natural language response from query results.

        CRITICAL: The LLM can ONLY use the data provided.
        """
        if not result.success:
            return NaturalLanguageResponse(
                response=f"I couldn't run that query: {result.error_message}",
                confidence=1.0,
                data_used=False,
            )

        if not result.data_found:
            return NaturalLanguageResponse(
                response=(
                    "I don't have any records matching your question. "
                    f"({result.query_description})"
                ),
                confidence=1.0,
                data_used=False,
            )

        data_str = self._format_data(query, result)

        prompt = f"""You are answering a question about personal finances using ONLY the data provided.

Original question: "{query.original_question}"

Query performed: {result.query_description}

Results found: {result.result_count}

Data:
{data_str}

- If asked yes/no, answer clearly first
- Keep it concise

IMPORTANT: Use ONLY the data above. Do NOT add any information not in the data.
If the data doesn't fully answer the question, say so."""

        try:
            text = await self._generate(prompt)
        except AllProvidersFailedError as e:
            logger.warning("query_response_fallback", error=str(e))
            if result.aggregation_result:
                return NaturalLanguageResponse(
                    response=f"Based on your records:\n{data_str}",
                    confidence=0.7,
                    data_used=True,
                )
            return NaturalLanguageResponse(
                response=f"Found {result.result_count} matching records.",
                confidence=0.6,
                data_used=True,
            )

        return NaturalLanguageResponse(response=text, confidence=0.9, data_used=True)

    def _format_data(self, query: StructuredQuery, result: QueryResult) -> str:
        lines = []

        if result.aggregation_result:
            for key, value in result.aggregation_result.items():
                if key in ("total_amount", "value") and isinstance(value, float):
                    lines.append(f"{key}: {self._converter.format_amount(value, query.currency)}")
                else:
                    lines.append(f"{key}: {value}")

        for row in result.results[:5]:
            parts = [str(row[k]) for k in ("item", "name", "category", "expense_date") if row.get(k)]
            if "amount" in row:
                parts.append(f"{row['amount']} {row.get('currency', '')}".strip())
            if parts:
                lines.append(" | ".join(parts))

        return "\n".join(lines) or "No details available"
