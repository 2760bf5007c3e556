"""Sync package: snapshot merge and the reconciler."""

from budget_sync.sync.merge import (
    effective_timestamp,
    merge_budgets,
    merge_categories,
    merge_settings,
    merge_state,
    merge_transactions,
    pick_newer,
)
from budget_sync.sync.reconciler import SyncError, SyncReconciler

__all__ = [
    # Merge
    "effective_timestamp",
    "merge_budgets",
    "merge_categories",
    "merge_settings",
    "merge_state",
    "merge_transactions",
    "pick_newer",
    # Reconciler
    "SyncError",
    "SyncReconciler",
]
