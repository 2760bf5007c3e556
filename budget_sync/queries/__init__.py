"""Derived reads package."""

from budget_sync.queries.summary import (
    Alert,
    AlertKind,
    AlertLevel,
    BalanceSummary,
    BudgetUsage,
    TransactionFilter,
    budget_usage,
    calculate_balance,
    category_spending,
    check_alerts,
    filter_transactions,
    period_start,
    total_budget_remaining,
)

__all__ = [
    # Result models
    "Alert",
    "AlertKind",
    "AlertLevel",
    "BalanceSummary",
    "BudgetUsage",
    "TransactionFilter",
    # Functions
    "budget_usage",
    "calculate_balance",
    "category_spending",
    "check_alerts",
    "filter_transactions",
    "period_start",
    "total_budget_remaining",
]
