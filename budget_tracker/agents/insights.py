"""
Insights Agent

Short observations about recent spending for the dashboard
("Groceries up 20% on last month", "New subscription: Netflix").

CRITICAL: Insights are a nice-to-have. Any failure (no model reachable,
unreadable reply, malformed entries) degrades to fewer insights or an
empty list; it never raises into the caller.
"""

import json
from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from budget_tracker.agents.expense_parser import extract_json_object
from budget_tracker.agents.fallback import (
    AllProvidersFailedError,
    ExpenseParsingError,
    ProviderChain,
)
from budget_tracker.agents.gemini_client import GeminiClient
from budget_tracker.models.expense import Transaction


logger = structlog.get_logger(__name__)

# Only the most recent transactions are shown to the model
MAX_TRANSACTIONS = 50
MAX_INSIGHTS = 3


class InsightType(str, Enum):
    SPENDING_INCREASE = "spending_increase"
    SPENDING_DECREASE = "spending_decrease"
    NEW_SUBSCRIPTION = "new_subscription"
    BUDGET_WARNING = "budget_warning"


class Insight(BaseModel):
    """One observation about the user's spending."""

    type: InsightType
    message: str = Field(..., min_length=1)
    category: Optional[str] = None
    percentage: Optional[float] = None

    @field_validator("type", mode="before")
    @classmethod
    def lower_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("category", "percentage", mode="before")
    @classmethod
    def blank_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


INSIGHTS_PROMPT = """Analyze these transactions and provide insights. Return JSON with this structure:
{
  "insights": [
    {
      "type": "spending_increase" | "spending_decrease" | "new_subscription" | "budget_warning",
      "message": "human readable insight message",
      "category": "category name if applicable",
      "percentage": 0 if applicable
    }
  ]
}

Transactions: {transactions}

Provide 2-3 most relevant insights.
Respond with ONLY the JSON object, no explanation."""


def _transaction_summary(txn: Transaction) -> dict:
    return {
        "date": txn.expense_date.isoformat(),
        "item": txn.item,
        "amount": str(txn.amount),
        "currency": txn.currency,
        "category": txn.category.value,
    }


class InsightsAgent:
    """
    Args:
        client: Gemini client
        chain: Provider fallback over model names. Defaults to the client's models
    """

    def __init__(self, client: GeminiClient, chain: Optional[ProviderChain] = None):
        self._client = client
        self._chain = chain or ProviderChain(client.model_names)

    async def _generate(self, prompt: str) -> str:
        async def attempt(model_name: str) -> str:
            return await self._client.generate(model_name, [prompt])
        return await self._chain.run(attempt)

    async def generate_insights(self, transactions: list[Transaction]) -> list[Insight]:
        """
        Up to three insights about the given transactions (newest first).

        Returns an empty list when there is nothing to analyze or the
        model can't deliver.
        """
        if not transactions:
            return []

        summary = json.dumps([_transaction_summary(t) for t in transactions[:MAX_TRANSACTIONS]])
        prompt = INSIGHTS_PROMPT.replace("{transactions}", summary)
        try:
            data = extract_json_object(await self._generate(prompt))
        except (AllProvidersFailedError, ExpenseParsingError) as e:
            logger.warning("insights_unavailable", error=str(e))
            return []

        raw = data.get("insights")
        if not isinstance(raw, list):
            logger.warning("insights_unavailable", error="no insights list in model response")
            return []

        insights = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                insights.append(Insight(**entry))
            except (ValidationError, TypeError) as e:
                logger.warning("insight_skipped", error=str(e))
        return insights[:MAX_INSIGHTS]
