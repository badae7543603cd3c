"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the storage backend because:
1. Users can view and fix their data directly in Sheets
2. No database setup required
3. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions (we handle this with careful ordering)
- Limited query capabilities (we filter in Python)

Recurring records are read with get_all_records() and passed through the
lenient RecurringRecord model, so hand-edited rows never break reports.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional
from uuid import UUID, uuid4

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from budget_tracker.config import GoogleSheetsSettings, get_settings
from budget_tracker.models.audit import (
    AUDIT_SHEET_COLUMNS,
    AuditEvent,
    AuditEventType,
    AuditSeverity,
)
from budget_tracker.models.expense import (
    Budget,
    ExpenseCategory,
    ExpenseSource,
    Transaction,
)
from budget_tracker.models.recurring import RecordKind, RecurringRecord
from budget_tracker.services.storage.interface import (
    AuditStorageInterface,
    BudgetStorageInterface,
    ConnectionError,
    NotFoundError,
    RecurringRecordStorageInterface,
    StorageError,
    TransactionStorageInterface,
    filter_transactions,
)


logger = structlog.get_logger(__name__)

TRANSACTION_COLUMNS = [
    "id",
    "user_id",
    "item",
    "amount",
    "currency",
    "category",
    "expense_date",
    "source",
    "receipt_url",
    "extraction_id",
    "created_at",
]

BUDGET_COLUMNS = ["user_id", "category", "amount", "currency"]

# Subscriptions keep their exclusive bound under its historical name
RECURRING_COLUMNS = {
    RecordKind.SUBSCRIPTION: [
        "id", "user_id", "name", "amount", "currency", "frequency",
        "start_date", "next_billing_date", "active", "created_at",
    ],
    RecordKind.INCOME: [
        "id", "user_id", "name", "amount", "currency", "frequency",
        "start_date", "end_date", "active", "created_at",
    ],
}

AUDIT_COLUMNS = list(AUDIT_SHEET_COLUMNS)

_sheets_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @property
    def settings(self) -> GoogleSheetsSettings:
        return self._settings

    @_sheets_retry
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(self._settings.spreadsheet_id)
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_sheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get a worksheet, creating it with a header row if missing."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        return sheet


class GoogleSheetsTransactionStorage(TransactionStorageInterface):
    """Transactions stored one per row."""

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(
            self._client.settings.transactions_sheet_name,
            TRANSACTION_COLUMNS,
        )

    def _transaction_to_row(self, txn: Transaction) -> list:
        return [
            str(txn.id),
            txn.user_id,
            txn.item,
            str(txn.amount),
            txn.currency,
            txn.category.value,
            txn.expense_date.isoformat(),
            txn.source.value,
            txn.receipt_url or "",
            str(txn.extraction_id) if txn.extraction_id else "",
            txn.created_at.isoformat(),
        ]

    def _row_to_transaction(self, row: list) -> Transaction:
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return Transaction(
            id=UUID(safe_get(0)),
            user_id=safe_get(1),
            item=safe_get(2),
            amount=Decimal(safe_get(3, "0")),
            currency=safe_get(4, "USD"),
            category=safe_get(5),
            expense_date=date.fromisoformat(safe_get(6)),
            source=ExpenseSource(safe_get(7, ExpenseSource.MANUAL.value)),
            receipt_url=safe_get(8) or None,
            extraction_id=UUID(safe_get(9)) if safe_get(9) else None,
            created_at=datetime.fromisoformat(safe_get(10)) if safe_get(10) else datetime.utcnow(),
        )

    @_sheets_retry
    async def save_transactions(self, transactions: list[Transaction]) -> int:
        if not transactions:
            return 0
        try:
            sheet = self._sheet()
            sheet.append_rows(
                [self._transaction_to_row(t) for t in transactions],
                value_input_option="RAW",
            )
            return len(transactions)
        except Exception as e:
            raise StorageError(f"Failed to save transactions: {e}")

    async def _all_transactions(self) -> list[Transaction]:
        try:
            all_rows = self._sheet().get_all_values()[1:]  # Skip header
        except Exception as e:
            raise StorageError(f"Failed to read transactions: {e}")

        transactions = []
        for row in all_rows:
            if not row or not row[0]:
                continue
            try:
                transactions.append(self._row_to_transaction(row))
            except (ValueError, ArithmeticError) as e:
                logger.warning("transaction_row_skipped", row_id=row[0], error=str(e))
        return transactions

    async def list_transactions(
        self,
        user_id: str,
        category: Optional[ExpenseCategory] = None,
        item: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[Transaction]:
        return filter_transactions(
            await self._all_transactions(),
            user_id=user_id,
            category=category,
            item=item,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )

    async def transaction_exists(
        self,
        user_id: str,
        item: str,
        amount: Decimal,
        expense_date: date,
    ) -> bool:
        same_day = await self.list_transactions(
            user_id=user_id,
            date_from=expense_date,
            date_to=expense_date,
        )
        return any(
            t.item.lower() == item.lower() and t.amount == amount
            for t in same_day
        )

    def _find_row(self, sheet: gspread.Worksheet, transaction_id: UUID) -> Optional[tuple[int, list]]:
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if row and row[0] == str(transaction_id):
                return idx, row
        return None

    async def update_transaction(self, transaction_id: UUID, patch: Mapping[str, Any]) -> Transaction:
        try:
            sheet = self._sheet()
            found = self._find_row(sheet, transaction_id)
        except Exception as e:
            raise StorageError(f"Failed to read transactions: {e}")
        if found is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        idx, row = found
        updated = self._row_to_transaction(row).with_patch(patch)
        try:
            sheet.update(range_name=f"A{idx}", values=[self._transaction_to_row(updated)])
        except Exception as e:
            raise StorageError(f"Failed to update transaction: {e}")
        return updated

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        try:
            sheet = self._sheet()
            found = self._find_row(sheet, transaction_id)
            if found is None:
                return False
            sheet.delete_rows(found[0])
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete transaction: {e}")


class GoogleSheetsBudgetStorage(BudgetStorageInterface):
    """Budgets keyed by (user_id, category); setting one overwrites its row."""

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(
            self._client.settings.budgets_sheet_name,
            BUDGET_COLUMNS,
            rows=200,
        )

    @_sheets_retry
    async def set_budget(self, budget: Budget) -> bool:
        row = [budget.user_id, budget.category.value, str(budget.amount), budget.currency]
        try:
            sheet = self._sheet()
            for idx, existing in enumerate(sheet.get_all_values()[1:], start=2):
                if existing[:2] == row[:2]:
                    sheet.update(range_name=f"A{idx}:D{idx}", values=[row])
                    return True
            sheet.append_row(row, value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to save budget: {e}")

    async def list_budgets(self, user_id: str) -> list[Budget]:
        try:
            records = self._sheet().get_all_records()
        except Exception as e:
            raise StorageError(f"Failed to read budgets: {e}")

        budgets = []
        for rec in records:
            if str(rec.get("user_id")) != user_id:
                continue
            try:
                budgets.append(Budget(
                    user_id=user_id,
                    category=rec.get("category"),
                    amount=Decimal(str(rec.get("amount") or 0)),
                    currency=rec.get("currency") or "USD",
                ))
            except (ValueError, ArithmeticError) as e:
                logger.warning("budget_row_skipped", category=rec.get("category"), error=str(e))
        return budgets


class GoogleSheetsRecurringRecordStorage(RecurringRecordStorageInterface):
    """Subscriptions or income, one sheet per kind."""

    def __init__(self, kind: RecordKind, client: Optional[GoogleSheetsClient] = None):
        self.kind = kind
        self._client = client or GoogleSheetsClient()
        self._columns = RECURRING_COLUMNS[kind]

    def _sheet(self) -> gspread.Worksheet:
        settings = self._client.settings
        title = (
            settings.subscriptions_sheet_name
            if self.kind == RecordKind.SUBSCRIPTION
            else settings.income_sheet_name
        )
        return self._client.get_sheet(title, self._columns, rows=500)

    def _record_to_row(self, record: RecurringRecord) -> list:
        values = record.model_dump()
        values["next_billing_date"] = record.end_date
        return [_cell(values.get(column)) for column in self._columns]

    def _find_row(self, sheet: gspread.Worksheet, record_id: str) -> Optional[int]:
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if row and row[0] == record_id:
                return idx
        return None

    async def list_by_user(self, user_id: str) -> list[RecurringRecord]:
        try:
            rows = self._sheet().get_all_records()
        except Exception as e:
            raise StorageError(f"Failed to read {self.kind.value} records: {e}")

        records = []
        for row in rows:
            rec = RecurringRecord.coerce({**row, "kind": self.kind})
            if rec is not None and rec.user_id == user_id:
                records.append(rec)
        return records

    @_sheets_retry
    async def create(self, record: RecurringRecord) -> RecurringRecord:
        stored = record.model_copy(update={
            "id": record.id or str(uuid4()),
            "kind": self.kind,
            "created_at": record.created_at or datetime.utcnow(),
        })
        try:
            self._sheet().append_row(self._record_to_row(stored), value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to save {self.kind.value}: {e}")
        return stored

    async def update(self, record_id: str, patch: Mapping[str, Any]) -> RecurringRecord:
        current = next(
            (r for r in await self._all_records() if r.id == record_id),
            None,
        )
        if current is None:
            raise NotFoundError(f"{self.kind.value.capitalize()} not found: {record_id}")

        updated = current.with_patch(patch)
        try:
            sheet = self._sheet()
            idx = self._find_row(sheet, record_id)
            if idx is None:
                raise NotFoundError(f"{self.kind.value.capitalize()} not found: {record_id}")
            row = self._record_to_row(updated)
            sheet.update(range_name=f"A{idx}", values=[row])
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update {self.kind.value}: {e}")
        return updated

    async def delete(self, record_id: str) -> bool:
        try:
            sheet = self._sheet()
            idx = self._find_row(sheet, record_id)
            if idx is None:
                return False
            sheet.delete_rows(idx)
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete {self.kind.value}: {e}")

    async def _all_records(self) -> list[RecurringRecord]:
        try:
            rows = self._sheet().get_all_records()
        except Exception as e:
            raise StorageError(f"Failed to read {self.kind.value} records: {e}")
        coerced = (RecurringRecord.coerce({**row, "kind": self.kind}) for row in rows)
        return [rec for rec in coerced if rec is not None]


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(
            self._client.settings.audit_sheet_name,
            AUDIT_COLUMNS,
            rows=5000,  # More rows for audit log
        )

    def _row_to_event(self, row: list) -> AuditEvent:
        cells = {column: str(value) for column, value in zip(AUDIT_COLUMNS, row) if value != ""}
        correlation_id = cells.get("correlation_id")
        details_json = cells.get("details_json")

        return AuditEvent(
            event_id=UUID(cells.get("event_id", "")),
            timestamp=datetime.fromisoformat(cells.get("timestamp", "")),
            event_type=AuditEventType(cells.get("event_type", "")),
            severity=AuditSeverity(cells.get("severity", AuditSeverity.INFO.value)),
            entity_type=cells.get("entity_type"),
            entity_id=cells.get("entity_id"),
            user_id=cells.get("user_id"),
            correlation_id=UUID(correlation_id) if correlation_id else None,
            description=cells.get("description", ""),
            details=json.loads(details_json) if details_json else {},
            error_message=cells.get("error_message"),
            is_user_action=cells.get("is_user_action", "").lower() == "true",
        )

    @_sheets_retry
    async def append_event(self, event: AuditEvent) -> bool:
        try:
            self._sheet().append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            # Audit logging should not break the main flow
            logger.warning("audit_event_write_failed", event_id=str(event.event_id), error=str(e))
            return False

    async def _all_events(self) -> list[AuditEvent]:
        try:
            all_rows = self._sheet().get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events = []
        for row in all_rows:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except ValueError:
                continue
        return events

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in await self._all_events() if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        events = await self._all_events()
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
