"""
Expense Data Models

Strict schemas for expenses flowing from the AI parsers to storage:
1. ParsedExpense is what the AI THINKS it saw (a proposal)
2. Transaction is what the user CONFIRMED (persisted)
3. Validation and query models describe the checks and questions run on them

Amounts are Decimal here; only period accounting works in floats.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ENUMS
# =============================================================================

class ExpenseCategory(str, Enum):
    """Spending categories offered to the AI parsers and the user."""
    GROCERIES = "Groceries"
    RESTAURANTS = "Restaurants"
    TRANSPORTATION = "Transportation"
    SHOPPING = "Shopping"
    ENTERTAINMENT = "Entertainment"
    BILLS = "Bills"
    HEALTHCARE = "Healthcare"
    EDUCATION = "Education"
    PERSONAL_CARE = "Personal Care"
    SUBSCRIPTIONS = "Subscriptions"
    OTHER = "Other"

    @classmethod
    def from_label(cls, label: Any) -> "ExpenseCategory":
        """Case-insensitive lookup; anything unknown is Other."""
        text = str(getattr(label, "value", label) or "").strip().lower()
        for category in cls:
            if category.value.lower() == text:
                return category
        return cls.OTHER


class ExpenseSource(str, Enum):
    """How the expense was captured."""
    RECEIPT = "receipt"
    AUDIO = "audio"
    TEXT = "text"
    MANUAL = "manual"


# =============================================================================
# PARSED (PROPOSED) EXPENSES
# =============================================================================

class ExpenseItem(BaseModel):
    """A single purchased item as proposed by a parser."""
    model_config = ConfigDict(str_strip_whitespace=True)

    item: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )
    amount: Decimal = Field(
        ...,
        ge=0,
        decimal_places=2,
    )
    category: ExpenseCategory = ExpenseCategory.OTHER

    @field_validator("category", mode="before")
    @classmethod
    def known_category(cls, v: Any) -> ExpenseCategory:
        return ExpenseCategory.from_label(v)

    @field_validator("amount", mode="before")
    @classmethod
    def two_places(cls, v: Any) -> Any:
        if isinstance(v, (int, float, str, Decimal)) and not isinstance(v, bool):
            try:
                return Decimal(str(v).strip()).quantize(Decimal("0.01"))
            except InvalidOperation:
                raise ValueError(f"Invalid amount: {v!r}")
        return v


class ParsedExpense(BaseModel):
    """
    Output of an AI parser.

    CRITICAL: This is PROPOSED data, NOT verified.
    It must be confirmed by the user before it becomes Transactions.
    """
    extraction_id: UUID = Field(default_factory=uuid4)
    extracted_at: datetime = Field(default_factory=datetime.utcnow)
    source: ExpenseSource
    expense_date: Optional[date] = None
    items: list[ExpenseItem] = Field(default_factory=list)
    transcription: Optional[str] = None
    model_name: Optional[str] = Field(
        default=None,
        description="Model that produced this parse"
    )

    @property
    def total(self) -> Decimal:
        return sum((item.amount for item in self.items), Decimal("0"))


# =============================================================================
# CONFIRMED DATA
# =============================================================================

# Fields a user may correct after confirming an expense
EDITABLE_TRANSACTION_FIELDS = frozenset({
    "item",
    "amount",
    "currency",
    "category",
    "expense_date",
    "receipt_url",
})


class Transaction(BaseModel):
    """A confirmed, persisted expense."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    item: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    category: ExpenseCategory = ExpenseCategory.OTHER
    expense_date: date
    source: ExpenseSource = ExpenseSource.MANUAL
    receipt_url: Optional[str] = None
    extraction_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("category", mode="before")
    @classmethod
    def known_category(cls, v: Any) -> ExpenseCategory:
        return ExpenseCategory.from_label(v)

    def with_patch(self, patch: Mapping[str, Any]) -> "Transaction":
        """
        Return a corrected copy (re-validated).

        Raises:
            ValueError: If the patch touches a field outside EDITABLE_TRANSACTION_FIELDS
                        or produces an invalid transaction
        """
        fixed = set(patch) - EDITABLE_TRANSACTION_FIELDS
        if fixed:
            raise ValueError(f"Cannot change {', '.join(sorted(fixed))}")
        return type(self).model_validate({**self.model_dump(), **patch})


class Budget(BaseModel):
    """Monthly spending limit for one category. One budget per user and category."""

    user_id: str = Field(..., min_length=1)
    category: ExpenseCategory
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("category", mode="before")
    @classmethod
    def known_category(cls, v: Any) -> ExpenseCategory:
        return ExpenseCategory.from_label(v)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'future_date')"
    )
    message: str
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
    )
    suggested_fix: Optional[str] = None


class ValidationResult(BaseModel):
    """
    Result of the two-stage validation.

    Stage 1: Schema validation (items, amounts, date present)
    Stage 2: Semantic validation (plausibility, duplicates)
    """

    extraction_id: UUID
    validated_at: datetime = Field(default_factory=datetime.utcnow)
    schema_valid: bool
    semantic_valid: bool
    is_valid: bool
    can_proceed_with_review: bool
    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == "error")


# =============================================================================
# QUERY MODELS
# =============================================================================

class StructuredQuery(BaseModel):
    """
    A structured query converted from natural language.

    CRITICAL: The LLM converts user questions to this format.
    The query is then executed DETERMINISTICALLY on stored data.
    """

    query_id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    original_question: str
    created_at: datetime = Field(default_factory=datetime.utcnow)

    query_type: str = Field(
        ...,
        pattern="^(lookup|aggregate|list|exists|recurring)$",
    )

    category_filter: Optional[ExpenseCategory] = None
    item_filter: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    aggregation_type: Optional[str] = Field(
        default=None,
        pattern="^(sum|count|average|min|max)$"
    )
    group_by: Optional[str] = Field(
        default=None,
        pattern="^(category|month|year)$"
    )

    # For recurring queries
    record_kind: Optional[str] = Field(
        default=None,
        pattern="^(subscription|income)$"
    )
    period_selector: str = Field(
        default="all",
        description="Reporting period: all | year:YYYY | month:YYYY-MM"
    )

    currency: str = Field(default="USD", min_length=3, max_length=3)
    limit: int = Field(default=10, ge=1, le=100)


class QueryResult(BaseModel):
    """
    Result of executing a structured query.

    This is all the LLM gets to see when phrasing an answer.
    """

    query_id: UUID
    executed_at: datetime = Field(default_factory=datetime.utcnow)

    success: bool
    error_message: Optional[str] = None

    data_found: bool
    result_count: int = Field(ge=0)
    results: list[dict] = Field(default_factory=list)
    aggregation_result: Optional[dict] = None

    query_description: str
