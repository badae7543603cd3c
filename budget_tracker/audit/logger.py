"""
Audit Logger

DESIGN DECISION: Every significant action is written twice, once to the
structured local log and once to audit storage, so users can see the
history of their expenses, subscriptions and questions.

CRITICAL: A failing audit write never breaks the action being audited.
Every `log_*` method returns True when the event was persisted (or no
storage is configured) and False otherwise.
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from budget_tracker.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from budget_tracker.services.storage import AuditStorageInterface


def configure_logging(json_output: bool = True) -> None:
    """Configure structlog; JSON lines by default, a console renderer for debugging."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()

_LEVELS = {
    AuditSeverity.DEBUG: "debug",
    AuditSeverity.INFO: "info",
    AuditSeverity.WARNING: "warning",
    AuditSeverity.ERROR: "error",
    AuditSeverity.CRITICAL: "critical",
}


class AuditLogger:
    """
    Central audit logging service.

    Without storage, events only go to the local log.
    """

    def __init__(self, storage: Optional[AuditStorageInterface] = None):
        self._storage = storage
        self._logger = structlog.get_logger("budget_tracker.audit")

    async def log(self, event: AuditEvent) -> bool:
        emit = getattr(self._logger, _LEVELS.get(event.severity, "info"))
        emit("audit_event", **event.to_log_dict())

        if self._storage is None:
            return True
        try:
            return await self._storage.append_event(event)
        except Exception as e:
            self._logger.error("audit_storage_failed", error=str(e), event_id=str(event.event_id))
            return False

    async def log_expense_parsed(
        self,
        extraction_id: UUID,
        source: str,
        item_count: int,
        model_name: Optional[str],
        correlation_id: UUID,
    ) -> bool:
        return await self.log(AuditEventBuilder.expense_parsed(
            extraction_id, source, item_count, model_name, correlation_id
        ))

    async def log_expense_parse_failed(self, source: str, error_message: str, correlation_id: UUID) -> bool:
        return await self.log(AuditEventBuilder.expense_parse_failed(source, error_message, correlation_id))

    async def log_provider_failed(
        self,
        provider: str,
        error_message: str,
        overloaded: bool,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """One model in the fallback chain failed; the chain moves on."""
        return await self.log(AuditEventBuilder.provider_failed(
            provider, error_message, overloaded, correlation_id
        ))

    async def log_validation_failed(
        self,
        extraction_id: UUID,
        issues: list[dict],
        correlation_id: UUID,
    ) -> bool:
        return await self.log(AuditEventBuilder.validation_failed(extraction_id, issues, correlation_id))

    async def log_user_confirmed(
        self,
        extraction_id: UUID,
        user_id: str,
        item_count: int,
        correlation_id: UUID,
    ) -> bool:
        return await self.log(AuditEventBuilder.user_confirmed(
            extraction_id, user_id, item_count, correlation_id
        ))

    async def log_user_rejected(
        self,
        extraction_id: UUID,
        user_id: str,
        reason: Optional[str],
        correlation_id: UUID,
    ) -> bool:
        return await self.log(AuditEventBuilder.user_rejected(extraction_id, user_id, reason, correlation_id))

    async def log_transaction_saved(
        self,
        transaction_id: UUID,
        user_id: str,
        item: str,
        amount: str,
        currency: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        return await self.log(AuditEventBuilder.transaction_saved(
            transaction_id, user_id, item, amount, currency, correlation_id
        ))

    async def log_save_failed(
        self,
        entity_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        return await self.log(AuditEventBuilder.save_failed(entity_type, error_message, correlation_id))

    async def log_record_changed(
        self,
        event_type: AuditEventType,
        record_id: Optional[str],
        kind: str,
        user_id: Optional[str],
        details: Optional[dict] = None,
    ) -> bool:
        """Creation, update or deletion of a subscription, income record or transaction."""
        return await self.log(AuditEventBuilder.record_changed(event_type, record_id, kind, user_id, details))

    async def log_budget_updated(self, user_id: str, category: str, amount: str, currency: str) -> bool:
        return await self.log(AuditEventBuilder.budget_updated(user_id, category, amount, currency))

    async def log_query_executed(
        self,
        query_id: UUID,
        query_type: str,
        result_count: int,
        correlation_id: UUID,
    ) -> bool:
        return await self.log(AuditEventBuilder.query_executed(
            query_id, query_type, result_count, correlation_id
        ))

    async def log_query_failed(self, question: str, error_message: str, correlation_id: UUID) -> bool:
        return await self.log(AuditEventBuilder.query_failed(question, error_message, correlation_id))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        return await self.log(AuditEventBuilder.system_error(error_type, error_message, details, correlation_id))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        return await self.log(AuditEventBuilder.external_service_error(service, error_message, correlation_id))


def create_correlation_id() -> UUID:
    """
    New correlation ID for one user action (a receipt, a recording, a question).

    Pass it through every operation the action triggers.
    """
    return uuid4()
