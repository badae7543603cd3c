"""
Budget Tracker - Source Package

Personal budgeting core: expenses logged from receipts, voice or text,
rolled up into budgets, subscriptions, income streams and answers to
natural-language questions.

DESIGN PRINCIPLES:
1. Period accounting is pure and never fails on bad record data
2. AI parses, the user confirms, storage persists
3. Every external call sits behind a narrow, swappable interface
4. Every step is auditable
"""

__version__ = "1.0.0"
