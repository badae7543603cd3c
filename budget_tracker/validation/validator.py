"""
Two-Stage Validation Pipeline

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- At least one item
- Positive amounts, non-empty names
- Expense date present

STAGE 2 - SEMANTIC VALIDATION:
- Future date detection
- Very old date detection
- Absurd amount detection
- Duplicate detection (needs storage)

IMPORTANT: Validation NEVER silently fixes issues.
It reports them for human review.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Optional

import structlog

from budget_tracker.config import AppSettings
from budget_tracker.models.expense import (
    ParsedExpense,
    ValidationIssue,
    ValidationResult,
)
from budget_tracker.services.storage import StorageError, TransactionStorageInterface


logger = structlog.get_logger(__name__)


class ExpenseValidator:
    """
    Validates parsed expenses through a two-stage pipeline.

    Stage 1: Schema validation (can run without storage)
    Stage 2: Semantic validation (may need storage for duplicate checks)
    """

    def __init__(
        self,
        transaction_storage: Optional[TransactionStorageInterface] = None,
        settings: Optional[AppSettings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        """
        Args:
            transaction_storage: Storage interface for duplicate checking.
                         If None, duplicate checking is skipped.
            settings: Thresholds. Defaults to the environment.
            today: Clock, injectable for tests
        """
        self._storage = transaction_storage
        self._settings = settings or AppSettings()
        self._today = today or date.today

    def _validate_schema(
        self,
        parsed: ParsedExpense,
    ) -> tuple[bool, list[ValidationIssue]]:
        """Stage 1. Returns (is_valid, issues)."""
        issues = []

        if not parsed.items:
            issues.append(ValidationIssue(
                field="items",
                issue_type="empty",
                message="No purchased items could be read",
                severity="error",
                suggested_fix="Try a clearer photo or type the expense in",
            ))

        for idx, item in enumerate(parsed.items):
            if item.amount <= 0:
                issues.append(ValidationIssue(
                    field=f"items[{idx}].amount",
                    issue_type="invalid_value",
                    message=f"Amount for '{item.item}' must be greater than zero",
                    severity="error",
                    suggested_fix="Check if the amount was read correctly",
                ))

        if parsed.expense_date is None:
            issues.append(ValidationIssue(
                field="expense_date",
                issue_type="missing",
                message="Expense date is missing",
                severity="warning",
                suggested_fix="You'll need to enter the date manually",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def _validate_semantic(
        self,
        parsed: ParsedExpense,
    ) -> tuple[bool, list[ValidationIssue]]:
        """Stage 2. Returns (is_valid, issues)."""
        issues = []
        today = self._today()

        max_future_date = today + timedelta(days=self._settings.future_date_tolerance_days)
        if parsed.expense_date and parsed.expense_date > max_future_date:
            issues.append(ValidationIssue(
                field="expense_date",
                issue_type="future_date",
                message=f"Expense date ({parsed.expense_date}) is in the future",
                severity="warning",
                suggested_fix="Please verify the date is correct",
            ))

        min_reasonable_date = today - timedelta(days=self._settings.receipt_max_past_days)
        if parsed.expense_date and parsed.expense_date < min_reasonable_date:
            issues.append(ValidationIssue(
                field="expense_date",
                issue_type="suspicious_date",
                message=f"Expense date ({parsed.expense_date}) seems unusually old",
                severity="warning",
                suggested_fix="Please verify the date was read correctly",
            ))

        max_amount = Decimal(str(self._settings.max_expense_amount))
        for idx, item in enumerate(parsed.items):
            if item.amount > max_amount:
                issues.append(ValidationIssue(
                    field=f"items[{idx}].amount",
                    issue_type="suspicious_value",
                    message=f"Amount for '{item.item}' ({item.amount:,.2f}) seems unusually high",
                    severity="warning",
                    suggested_fix="Please verify this amount is correct",
                ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    async def _check_duplicates(
        self,
        parsed: ParsedExpense,
        user_id: Optional[str],
    ) -> list[ValidationIssue]:
        """Flag items that match a stored transaction on name, amount and date."""
        issues = []

        if self._storage is None or user_id is None or parsed.expense_date is None:
            return issues

        for idx, item in enumerate(parsed.items):
            try:
                is_duplicate = await self._storage.transaction_exists(
                    user_id=user_id,
                    item=item.item,
                    amount=item.amount,
                    expense_date=parsed.expense_date,
                )
            except StorageError as e:
                # Don't fail validation due to storage errors
                logger.warning("duplicate_check_failed", error=str(e))
                return issues

            if is_duplicate:
                issues.append(ValidationIssue(
                    field=f"items[{idx}]",
                    issue_type="potential_duplicate",
                    message=(
                        f"'{item.item}' for {item.amount} on "
                        f"{parsed.expense_date} may already be recorded"
                    ),
                    severity="warning",
                    suggested_fix="Please verify this isn't a duplicate entry",
                ))

        return issues

    async def validate(
        self,
        parsed: ParsedExpense,
        user_id: Optional[str] = None,
        check_duplicates: bool = True,
    ) -> ValidationResult:
        """
        Run full two-stage validation pipeline.

        Args:
            parsed: The parsed expense to validate
            user_id: Owner, needed for the duplicate check
            check_duplicates: Whether to check for duplicates (requires storage)
        """
        all_issues = []

        schema_valid, schema_issues = self._validate_schema(parsed)
        all_issues.extend(schema_issues)

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(parsed)
            all_issues.extend(semantic_issues)

            if check_duplicates:
                all_issues.extend(await self._check_duplicates(parsed, user_id))

        warnings = [issue.message for issue in all_issues if issue.severity == "warning"]

        return ValidationResult(
            extraction_id=parsed.extraction_id,
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            is_valid=schema_valid and semantic_valid,
            can_proceed_with_review=bool(parsed.items) and schema_valid,
            issues=all_issues,
            warnings=warnings,
        )

    def get_user_friendly_summary(
        self,
        result: ValidationResult,
    ) -> str:
        """Summary of validation results for the review screen."""
        if result.is_valid and not result.warnings:
            return "All checks passed! Please review the details below."

        lines = []

        if not result.schema_valid:
            lines.append("Some required information could not be read:")
            for issue in result.issues:
                if issue.severity == "error":
                    lines.append(f"   - {issue.message}")
                    if issue.suggested_fix:
                        lines.append(f"     {issue.suggested_fix}")

        if result.warnings:
            lines.append("")
            lines.append("Please verify the following:")
            for warning in result.warnings:
                lines.append(f"   - {warning}")

        lines.append("")
        if result.can_proceed_with_review:
            lines.append("You can still proceed, but please review carefully.")
        else:
            lines.append("Please fix the issues above before continuing.")

        return "\n".join(lines)
