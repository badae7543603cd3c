"""AI agents package."""

from budget_tracker.agents.fallback import (
    AllProvidersFailedError,
    ExpenseParsingError,
    ProviderChain,
    ProviderOverloadedError,
    is_overload_error,
)
from budget_tracker.agents.gemini_client import GeminiClient, inline_data
from budget_tracker.agents.expense_parser import (
    ExpenseParsingAgent,
    extract_json_object,
)
from budget_tracker.agents.insights import Insight, InsightsAgent, InsightType
from budget_tracker.agents.query_agent import (
    NaturalLanguageResponse,
    QueryAgent,
    QueryIntent,
)

__all__ = [
    "AllProvidersFailedError",
    "ExpenseParsingAgent",
    "ExpenseParsingError",
    "GeminiClient",
    "Insight",
    "InsightType",
    "InsightsAgent",
    "NaturalLanguageResponse",
    "ProviderChain",
    "ProviderOverloadedError",
    "QueryAgent",
    "QueryIntent",
    "extract_json_object",
    "inline_data",
    "is_overload_error",
]
