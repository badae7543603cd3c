"""
Audit Models for Budget Tracker

Every significant action in the system is logged for audit purposes:
expense parsing, confirmations, saves, recurring record changes and queries.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Expense parsing
    EXPENSE_PARSED = "expense_parsed"
    EXPENSE_PARSE_FAILED = "expense_parse_failed"
    PROVIDER_FAILED = "provider_failed"

    # Validation
    VALIDATION_FAILED = "validation_failed"

    # Human confirmation
    USER_CONFIRMED = "user_confirmed"
    USER_REJECTED = "user_rejected"

    # Persistence
    TRANSACTION_SAVED = "transaction_saved"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    SAVE_FAILED = "save_failed"
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"
    RECORD_DELETED = "record_deleted"
    BUDGET_UPDATED = "budget_updated"

    # Query operations
    QUERY_EXECUTED = "query_executed"
    QUERY_FAILED = "query_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Column order of the audit sheet
AUDIT_SHEET_COLUMNS = (
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "user_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
)


class AuditEvent(BaseModel):
    """
    A single audit event.

    `correlation_id` ties together everything that happened during one user
    action (one receipt, one question).
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    entity_type: Optional[str] = Field(
        default=None,
        description="'extraction', 'transaction', 'subscription', 'income', 'budget' or 'query'"
    )
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None
    is_user_action: bool = False

    def to_log_dict(self) -> dict:
        """JSON-safe dict for structured logging."""
        return self.model_dump(mode="json")

    def to_sheets_row(self) -> list[str]:
        """Cell values in AUDIT_SHEET_COLUMNS order; missing values are empty."""
        data = self.to_log_dict()
        data["details_json"] = json.dumps(self.details, default=str) if self.details else ""
        return ["" if data.get(column) is None else str(data[column]) for column in AUDIT_SHEET_COLUMNS]


class AuditEventBuilder:
    """
    Factories for the events the flows emit.

    Usage:
        event = AuditEventBuilder.expense_parsed(extraction_id, "receipt", 3, model, cid)
        event = AuditEventBuilder.record_changed(AuditEventType.RECORD_CREATED, rec.id, "income", user_id)
    """

    @staticmethod
    def _extraction(
        event_type: AuditEventType,
        extraction_id: Optional[UUID],
        correlation_id: UUID,
        description: str,
        **fields: Any,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="extraction",
            entity_id=str(extraction_id) if extraction_id else None,
            correlation_id=correlation_id,
            description=description,
            **fields,
        )

    @staticmethod
    def expense_parsed(
        extraction_id: UUID,
        source: str,
        item_count: int,
        model_name: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEventBuilder._extraction(
            AuditEventType.EXPENSE_PARSED,
            extraction_id,
            correlation_id,
            f"Parsed {item_count} item(s) from {source}",
            details={"source": source, "item_count": item_count, "model_name": model_name},
        )

    @staticmethod
    def expense_parse_failed(source: str, error_message: str, correlation_id: UUID) -> AuditEvent:
        return AuditEventBuilder._extraction(
            AuditEventType.EXPENSE_PARSE_FAILED,
            None,
            correlation_id,
            f"Could not parse expense from {source}",
            severity=AuditSeverity.ERROR,
            error_message=error_message,
            details={"source": source},
        )

    @staticmethod
    def validation_failed(extraction_id: UUID, issues: list[dict], correlation_id: UUID) -> AuditEvent:
        return AuditEventBuilder._extraction(
            AuditEventType.VALIDATION_FAILED,
            extraction_id,
            correlation_id,
            f"Validation failed with {len(issues)} issues",
            severity=AuditSeverity.WARNING,
            details={"issues": issues},
        )

    @staticmethod
    def user_confirmed(
        extraction_id: UUID,
        user_id: str,
        item_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEventBuilder._extraction(
            AuditEventType.USER_CONFIRMED,
            extraction_id,
            correlation_id,
            "User confirmed parsed expense",
            user_id=user_id,
            details={"item_count": item_count},
            is_user_action=True,
        )

    @staticmethod
    def user_rejected(
        extraction_id: UUID,
        user_id: str,
        reason: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEventBuilder._extraction(
            AuditEventType.USER_REJECTED,
            extraction_id,
            correlation_id,
            "User rejected parsed expense",
            user_id=user_id,
            details={"reason": reason or "No reason provided"},
            is_user_action=True,
        )

    @staticmethod
    def provider_failed(
        provider: str,
        error_message: str,
        overloaded: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PROVIDER_FAILED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"Model provider failed: {provider}",
            error_message=error_message,
            details={"provider": provider, "overloaded": overloaded},
        )

    @staticmethod
    def transaction_saved(
        transaction_id: UUID,
        user_id: str,
        item: str,
        amount: str,
        currency: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_SAVED,
            entity_type="transaction",
            entity_id=str(transaction_id),
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Transaction saved: {item} - {amount} {currency}",
            details={"item": item, "amount": amount, "currency": currency},
        )

    @staticmethod
    def save_failed(
        entity_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SAVE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type=entity_type,
            correlation_id=correlation_id,
            description=f"Failed to save {entity_type}",
            error_message=error_message,
        )

    @staticmethod
    def record_changed(
        event_type: AuditEventType,
        record_id: Optional[str],
        kind: str,
        user_id: Optional[str],
        details: Optional[dict] = None,
    ) -> AuditEvent:
        verb = {
            AuditEventType.RECORD_CREATED: "created",
            AuditEventType.RECORD_UPDATED: "updated",
            AuditEventType.RECORD_DELETED: "deleted",
            AuditEventType.TRANSACTION_UPDATED: "updated",
            AuditEventType.TRANSACTION_DELETED: "deleted",
        }.get(event_type, "changed")
        return AuditEvent(
            event_type=event_type,
            entity_type=kind,
            entity_id=record_id,
            user_id=user_id,
            description=f"{kind.capitalize()} {verb}",
            details=details or {},
            is_user_action=True,
        )

    @staticmethod
    def budget_updated(user_id: str, category: str, amount: str, currency: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_UPDATED,
            entity_type="budget",
            entity_id=category,
            user_id=user_id,
            description=f"Budget for {category} set to {amount} {currency}",
            details={"amount": amount, "currency": currency},
            is_user_action=True,
        )

    @staticmethod
    def query_executed(
        query_id: UUID,
        query_type: str,
        result_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.QUERY_EXECUTED,
            entity_type="query",
            entity_id=str(query_id),
            correlation_id=correlation_id,
            description=f"{query_type} query returned {result_count} result(s)",
            details={"query_type": query_type, "result_count": result_count},
        )

    @staticmethod
    def query_failed(question: str, error_message: str, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.QUERY_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="query",
            correlation_id=correlation_id,
            description="Query could not be answered",
            error_message=error_message,
            details={"question": question[:200]},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"External service error: {service}",
            error_message=error_message,
            details={"service": service},
        )
