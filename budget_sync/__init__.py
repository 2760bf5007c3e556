"""
Budget Sync - Source Package

The headless core of a personal budget tracker: transactions, budgets,
settings and categories kept in a local store and reconciled with a
cloud backend.

DESIGN PRINCIPLES:
1. Local data is never lost because the cloud is unavailable
2. One explicit state object, owned by the controller
3. Sync is idempotent - retrying is always safe
4. Every sync attempt is logged
5. Storage backends are swappable
"""

__version__ = "1.0.0"
__author__ = "Budget Sync Team"
