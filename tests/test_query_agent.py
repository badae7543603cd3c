"""Tests for the query agent: intent parsing, time resolution, responses."""

import json
from datetime import date
from uuid import uuid4

import pytest

from budget_tracker.agents import QueryAgent, QueryIntent
from budget_tracker.models.expense import ExpenseCategory, QueryResult, StructuredQuery

from conftest import FakeGeminiClient


@pytest.fixture
def make_agent(clock):
    def build(replies: dict) -> tuple[QueryAgent, FakeGeminiClient]:
        client = FakeGeminiClient(replies)
        return QueryAgent(client, today=clock), client
    return build


class TestParseQuestion:
    """Tests for LLM intent extraction."""

    @pytest.mark.asyncio
    async def test_intent_from_reply(self, make_agent):
        agent, client = make_agent({"m1": [
            '```json\n{"query_type": "aggregate", "category": "Groceries", '
            '"time_reference": "this year", "aggregation": "sum"}\n```'
        ]})

        intent = await agent.parse_question('How much on "groceries" this year?')

        assert intent.query_type == "aggregate"
        assert intent.category == "Groceries"
        assert intent.time_reference == "this year"
        assert "How much on 'groceries' this year?" in client.calls[0][1][0]

    @pytest.mark.asyncio
    async def test_unreadable_reply_falls_back_to_list(self, make_agent):
        agent, _ = make_agent({"m1": ["no idea"]})
        intent = await agent.parse_question("???")
        assert intent == QueryIntent(query_type="list")

    @pytest.mark.asyncio
    async def test_providers_down_falls_back_to_list(self, make_agent):
        agent, _ = make_agent({"m1": [RuntimeError("503")]})
        intent = await agent.parse_question("What did I buy?")
        assert intent.query_type == "list"


class TestResolveTimeReference:
    """Time references are resolved against the injected clock (2024-06-15)."""

    @pytest.mark.parametrize("reference,expected", [
        ("this month", (date(2024, 6, 1), date(2024, 6, 30))),
        ("last month", (date(2024, 5, 1), date(2024, 5, 31))),
        ("this year", (date(2024, 1, 1), date(2024, 12, 31))),
        ("last year", (date(2023, 1, 1), date(2023, 12, 31))),
        ("March", (date(2024, 3, 1), date(2024, 3, 31))),
        ("in September", (date(2023, 9, 1), date(2023, 9, 30))),
        ("february 2023", (date(2023, 2, 1), date(2023, 2, 28))),
        ("2022", (date(2022, 1, 1), date(2022, 12, 31))),
        ("someday", (None, None)),
        (None, (None, None)),
    ])
    def test_references(self, make_agent, reference, expected):
        agent, _ = make_agent({})
        assert agent.resolve_time_reference(reference) == expected

    def test_last_month_in_january(self):
        agent = QueryAgent(FakeGeminiClient({}), today=lambda: date(2024, 1, 20))
        assert agent.resolve_time_reference("last month") == (date(2023, 12, 1), date(2023, 12, 31))


class TestIntentToQuery:
    """Tests for the deterministic intent -> query conversion."""

    def test_aggregate(self, make_agent):
        agent, _ = make_agent({})
        intent = QueryIntent(
            query_type="aggregate",
            category="groceries",
            time_reference="last month",
            aggregation="total",
            group_by="type",
        )

        query = agent.intent_to_query(intent, "q", "user-1", currency="EUR")

        assert query.query_type == "aggregate"
        assert query.category_filter == ExpenseCategory.GROCERIES
        assert query.aggregation_type == "sum"
        assert query.group_by == "category"
        assert query.date_from == date(2024, 5, 1)
        assert query.period_selector == "month:2024-05"
        assert query.currency == "EUR"
        assert query.user_id == "user-1"

    def test_unknown_values_are_dropped(self, make_agent):
        agent, _ = make_agent({})
        intent = QueryIntent(query_type="delete", category="Gadgets", aggregation="median", group_by="week")

        query = agent.intent_to_query(intent, "q", "user-1")

        assert query.query_type == "list"
        assert query.category_filter is None
        assert query.aggregation_type is None
        assert query.group_by is None

    def test_recurring_income(self, make_agent):
        agent, _ = make_agent({})
        intent = QueryIntent(query_type="recurring", record_kind="Income", time_reference="this year")

        query = agent.intent_to_query(intent, "q", "user-1")

        assert query.record_kind == "income"
        assert query.period_selector == "year:2024"

    def test_recurring_defaults_to_subscriptions_all_time(self, make_agent):
        agent, _ = make_agent({})
        query = agent.intent_to_query(QueryIntent(query_type="recurring"), "q", "user-1")
        assert query.record_kind == "subscription"
        assert query.period_selector == "all"

    def test_period_selector(self):
        assert QueryAgent.period_selector(date(2024, 2, 1), date(2024, 2, 29)) == "month:2024-02"
        assert QueryAgent.period_selector(date(2024, 1, 1), date(2024, 12, 31)) == "year:2024"
        assert QueryAgent.period_selector(date(2024, 1, 5), date(2024, 2, 5)) == "all"
        assert QueryAgent.period_selector(None, None) == "all"


class TestGenerateResponse:
    """Responses are built only from query results."""

    def query(self) -> StructuredQuery:
        return StructuredQuery(user_id="user-1", original_question="How much?", query_type="aggregate")

    def result(self, **fields) -> QueryResult:
        data = {
            "query_id": uuid4(),
            "success": True,
            "data_found": True,
            "result_count": 2,
            "aggregation_result": {"aggregation": "sum", "value": 12.5, "count": 2},
            "query_description": "Calculating sum",
        }
        data.update(fields)
        return QueryResult(**data)

    @pytest.mark.asyncio
    async def test_no_data_answer_skips_llm(self, make_agent):
        agent, client = make_agent({"m1": ["should not be used"]})
        response = await agent.generate_response(self.query(), self.result(data_found=False, result_count=0))
        assert "don't have any records" in response.response
        assert response.data_used is False
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_failed_query(self, make_agent):
        agent, _ = make_agent({})
        response = await agent.generate_response(
            self.query(),
            self.result(success=False, error_message="bad period", data_found=False, result_count=0),
        )
        assert "bad period" in response.response

    @pytest.mark.asyncio
    async def test_llm_answer_sees_only_data(self, make_agent):
        agent, client = make_agent({"m1": ["You spent $12.50."]})

        response = await agent.generate_response(self.query(), self.result())

        assert response.response == "You spent $12.50."
        assert response.data_used is True
        prompt = client.calls[0][1][0]
        assert "value: $12.50" in prompt
        assert "Use ONLY the data above" in prompt

    @pytest.mark.asyncio
    async def test_llm_down_returns_formatted_data(self, make_agent):
        agent, _ = make_agent({"m1": [RuntimeError("unavailable")]})
        response = await agent.generate_response(self.query(), self.result())
        assert response.response.startswith("Based on your records:")
        assert "$12.50" in response.response


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
