"""Data models for Budget Tracker."""

from budget_tracker.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from budget_tracker.models.expense import (
    Budget,
    ExpenseCategory,
    ExpenseItem,
    ExpenseSource,
    ParsedExpense,
    QueryResult,
    StructuredQuery,
    Transaction,
    ValidationIssue,
    ValidationResult,
)
from budget_tracker.models.recurring import (
    Frequency,
    RecordKind,
    RecurringRecord,
    parse_frequency,
)

__all__ = [
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    "Budget",
    "ExpenseCategory",
    "ExpenseItem",
    "ExpenseSource",
    "Frequency",
    "ParsedExpense",
    "QueryResult",
    "RecordKind",
    "RecurringRecord",
    "StructuredQuery",
    "Transaction",
    "ValidationIssue",
    "ValidationResult",
    "parse_frequency",
]
