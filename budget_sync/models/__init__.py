"""
Data Models Package

This package contains all Pydantic models used in Budget Sync.
All data flowing through the system must conform to these schemas.
"""

from budget_sync.models.budget import (
    DEFAULT_EXPENSE_CATEGORIES,
    DEFAULT_INCOME_CATEGORIES,
    DEVICE_LOCAL_SETTINGS_FIELDS,
    AppState,
    Budget,
    BudgetPeriod,
    BudgetSettings,
    CategorySet,
    EntityType,
    ExportSnapshot,
    Transaction,
    TransactionType,
    new_device_id,
    new_transaction_id,
    utcnow,
)
from budget_sync.models.sync import (
    EntitySyncOutcome,
    SyncLogEntry,
    SyncLogEntryBuilder,
    SyncOperation,
    SyncResult,
    SyncStatus,
)
from budget_sync.models.validation import ValidationIssue, ValidationResult

__all__ = [
    # Budget models
    "DEFAULT_EXPENSE_CATEGORIES",
    "DEFAULT_INCOME_CATEGORIES",
    "DEVICE_LOCAL_SETTINGS_FIELDS",
    "AppState",
    "Budget",
    "BudgetPeriod",
    "BudgetSettings",
    "CategorySet",
    "EntityType",
    "ExportSnapshot",
    "Transaction",
    "TransactionType",
    "new_device_id",
    "new_transaction_id",
    "utcnow",
    # Sync models
    "EntitySyncOutcome",
    "SyncLogEntry",
    "SyncLogEntryBuilder",
    "SyncOperation",
    "SyncResult",
    "SyncStatus",
    # Validation models
    "ValidationIssue",
    "ValidationResult",
]
