"""Sync logging package."""

from budget_sync.audit.logger import SyncLogger, configure_logging

__all__ = ["SyncLogger", "configure_logging"]
