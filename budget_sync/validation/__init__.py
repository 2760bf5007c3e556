"""Validation package."""

from budget_sync.validation.snapshot import (
    SnapshotValidationError,
    SnapshotValidator,
)

__all__ = ["SnapshotValidationError", "SnapshotValidator"]
