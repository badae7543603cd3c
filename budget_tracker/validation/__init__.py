"""Validation package."""

from budget_tracker.validation.validator import ExpenseValidator

__all__ = ["ExpenseValidator"]
