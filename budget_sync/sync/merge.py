"""
Snapshot Merge

Pure functions: two snapshots in, one converged snapshot out. Nothing
here touches storage.

Rules, per keyed collection:
1. Keys on one side only are kept unchanged.
2. Keys on both sides keep the record with the later effective timestamp.
3. A record without a usable timestamp is treated as the oldest. Ties,
   or no usable timestamp on either side, keep the local record.
4. Output is local order first, then remote-only records in remote order.

DESIGN DECISION: A transaction without `updated_at` uses its calendar
date (midnight UTC) as the effective timestamp. Older clients never wrote
a modification time, and this keeps their data converging the same way.

TRADEOFFS:
- An edit that does not change the date can lose to an older remote copy
  that has a later date. Records written by this package always carry
  `updated_at`, so the risk is limited to legacy data.
- Deletes are not propagated. A record deleted on one device comes back
  from the other side on the next sync.
"""

from datetime import datetime, time, timezone
from typing import Optional, TypeVar

from budget_sync.models.budget import (
    DEVICE_LOCAL_SETTINGS_FIELDS,
    AppState,
    Budget,
    BudgetSettings,
    CategorySet,
    Transaction,
)


R = TypeVar("R", Transaction, Budget)


def _aware(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def effective_timestamp(record: R) -> Optional[datetime]:
    """The timestamp conflicts are decided on, or None if unknown."""
    if record.updated_at is not None:
        return _aware(record.updated_at)
    if isinstance(record, Transaction):
        return datetime.combine(record.date, time.min, tzinfo=timezone.utc)
    return None


def pick_newer(local: R, remote: R) -> R:
    """
    Later effective timestamp wins.

    An unknown timestamp counts as the oldest. Ties, and records with no
    timestamp on either side, stay local.
    """
    local_ts = effective_timestamp(local)
    remote_ts = effective_timestamp(remote)
    if remote_ts is None:
        return local
    if local_ts is None:
        return remote
    return remote if remote_ts > local_ts else local


def merge_transactions(
    local: list[Transaction],
    remote: Optional[list[Transaction]],
) -> list[Transaction]:
    if not remote:
        return list(local)

    remote_by_id = {t.id: t for t in remote}
    local_ids = set()
    merged = []

    for transaction in local:
        local_ids.add(transaction.id)
        other = remote_by_id.get(transaction.id)
        merged.append(transaction if other is None else pick_newer(transaction, other))

    for transaction in remote:
        if transaction.id not in local_ids:
            local_ids.add(transaction.id)
            merged.append(transaction)

    return merged


def merge_budgets(
    local: dict[str, Budget],
    remote: Optional[dict[str, Budget]],
) -> dict[str, Budget]:
    if not remote:
        return dict(local)

    merged = {}
    for category, budget in local.items():
        other = remote.get(category)
        merged[category] = budget if other is None else pick_newer(budget, other)

    for category, budget in remote.items():
        if category not in merged:
            merged[category] = budget

    return merged


def merge_settings(
    local: BudgetSettings,
    remote: Optional[BudgetSettings],
) -> BudgetSettings:
    """Remote replaces local wholesale, except for device-local fields."""
    if remote is None:
        return local
    keep = {name: getattr(local, name) for name in DEVICE_LOCAL_SETTINGS_FIELDS}
    return remote.model_copy(update=keep)


def merge_categories(
    local: CategorySet,
    remote: Optional[CategorySet],
) -> CategorySet:
    if remote is None:
        return local.model_copy(deep=True)
    return local.union(remote)


def merge_state(local: AppState, remote: AppState) -> AppState:
    """Merge every entity. Used when both sides are fully known."""
    return AppState(
        transactions=merge_transactions(local.transactions, remote.transactions),
        budgets=merge_budgets(local.budgets, remote.budgets),
        settings=merge_settings(local.settings, remote.settings),
        categories=merge_categories(local.categories, remote.categories),
    )
