"""
Core Data Models for Budget Sync

These models define the strict schemas for all data flowing through the system.
They are designed to:
1. Enforce type safety at runtime
2. Accept the loosely-typed JSON written by older versions of the app
3. Be serializable for local storage, cloud storage and export files

DESIGN DECISION: Every mutable record carries an explicit `updated_at`.
Sync conflicts are resolved on it; see budget_sync.sync.merge for the
fallback used when it is missing.
"""

import random
import string
import time
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Direction of money flow."""
    INCOME = "income"
    EXPENSE = "expense"


class BudgetPeriod(str, Enum):
    """Window a budget amount applies to."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EntityType(str, Enum):
    """
    The four synchronized collections.

    Order matters: the reconciler processes entities in this order.
    """
    TRANSACTIONS = "transactions"
    BUDGETS = "budgets"
    SETTINGS = "settings"
    CATEGORIES = "categories"


DEFAULT_EXPENSE_CATEGORIES = [
    "Groceries",
    "Utilities",
    "Entertainment",
    "Transportation",
    "Healthcare",
    "Shopping",
    "Dining",
    "Bills",
    "Other",
]

DEFAULT_INCOME_CATEGORIES = [
    "Salary",
    "Freelance",
    "Investment",
    "Gift",
    "Other",
]

# Settings fields that belong to this device and never come from the cloud
DEVICE_LOCAL_SETTINGS_FIELDS = frozenset({"device_id"})


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_transaction_id() -> str:
    """Milliseconds since the epoch, as a string."""
    return str(int(time.time() * 1000))


def new_device_id() -> str:
    """Opaque device token: device_<epoch ms>_<9 random base36 chars>."""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(random.choices(alphabet, k=9))
    return f"device_{int(time.time() * 1000)}_{suffix}"


# =============================================================================
# RECORDS
# =============================================================================

class Transaction(BaseModel):
    """
    A single income or expense entry.

    `date` is the calendar date the money moved; `updated_at` is when the
    record itself was last changed. They are not the same thing.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    id: str = Field(
        default_factory=new_transaction_id,
        min_length=1,
        description="Identifier, unique within one device's collection"
    )
    type: TransactionType
    amount: Decimal = Field(
        ...,
        ge=0,
        description="Amount, never negative; the sign comes from `type`"
    )
    category: str = Field(
        ...,
        min_length=1,
        max_length=100,
    )
    description: Optional[str] = Field(
        default=None,
        max_length=500,
    )
    date: date
    updated_at: Optional[datetime] = Field(
        default=None,
        description="Last modification time, if known"
    )

    @field_validator("date", mode="before")
    @classmethod
    def parse_loose_date(cls, v: Any) -> Any:
        """Older clients stored full ISO timestamps; keep the date part."""
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and "T" in v:
            return v.split("T", 1)[0]
        return v

    @field_validator("description", mode="before")
    @classmethod
    def blank_description_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class Budget(BaseModel):
    """Spending limit for one expense category; the category is the dict key."""
    model_config = ConfigDict(extra="ignore")

    amount: Decimal = Field(
        ...,
        ge=0,
        description="Budgeted amount for one period"
    )
    period: BudgetPeriod = Field(
        default=BudgetPeriod.MONTHLY,
    )
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def accept_bare_amount(cls, data: Any) -> Any:
        """Some stores kept budgets as `category -> amount`."""
        if isinstance(data, (int, float, str, Decimal)):
            return {"amount": data}
        return data


class BudgetSettings(BaseModel):
    """
    User preferences. Exactly one per device.

    Accepts the camelCase keys the web client wrote.
    """
    model_config = ConfigDict(extra="ignore")

    low_balance_threshold: Decimal = Field(
        default=Decimal("100"),
        validation_alias=AliasChoices("low_balance_threshold", "lowBalanceThreshold"),
        description="Warn when the balance drops below this"
    )
    overspending_alert_percent: int = Field(
        default=80,
        ge=0,
        validation_alias=AliasChoices(
            "overspending_alert_percent",
            "overspendingAlertPercent",
            "overspendingAlert",
        ),
        description="Warn when a budget is this % spent"
    )
    notifications_enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "notifications_enabled",
            "notificationsEnabled",
            "enableNotifications",
        ),
    )
    device_id: Optional[str] = Field(
        default=None,
        description="Owning device; never overwritten by sync"
    )
    updated_at: Optional[datetime] = None


class CategorySet(BaseModel):
    """Known category names per transaction type. Append-only."""

    expense: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXPENSE_CATEGORIES)
    )
    income: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INCOME_CATEGORIES)
    )

    @field_validator("expense", "income")
    @classmethod
    def dedupe(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for name in v:
            name = name.strip()
            if name and name not in seen:
                seen.append(name)
        return seen

    def for_type(self, transaction_type: TransactionType) -> list[str]:
        if transaction_type == TransactionType.INCOME:
            return self.income
        return self.expense

    def union(self, other: "CategorySet") -> "CategorySet":
        """Per-type union, keeping this set's order first."""
        return CategorySet(
            expense=self.expense + other.expense,
            income=self.income + other.income,
        )


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState(BaseModel):
    """
    Everything the app knows, in one object.

    The controller owns the canonical instance; the reconciler and the
    reports only ever receive snapshots of it.
    """

    transactions: list[Transaction] = Field(default_factory=list)
    budgets: dict[str, Budget] = Field(default_factory=dict)
    settings: BudgetSettings = Field(default_factory=BudgetSettings)
    categories: CategorySet = Field(default_factory=CategorySet)

    @model_validator(mode="after")
    def unique_transaction_ids(self) -> "AppState":
        ids = [t.id for t in self.transactions]
        if len(ids) != len(set(ids)):
            raise ValueError("Transaction ids must be unique")
        return self

    def snapshot(self) -> "AppState":
        return self.model_copy(deep=True)

    def collection(self, entity: EntityType) -> Any:
        return getattr(self, entity.value)

    def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        for transaction in self.transactions:
            if transaction.id == transaction_id:
                return transaction
        return None

    def upsert_transaction(self, transaction: Transaction) -> None:
        """Replace by id, or insert newest-first."""
        for idx, existing in enumerate(self.transactions):
            if existing.id == transaction.id:
                self.transactions[idx] = transaction
                return
        self.transactions.insert(0, transaction)

    def remove_transaction(self, transaction_id: str) -> bool:
        before = len(self.transactions)
        self.transactions = [t for t in self.transactions if t.id != transaction_id]
        return len(self.transactions) != before

    def set_budget(self, category: str, budget: Budget) -> None:
        self.budgets[category] = budget

    def remove_budget(self, category: str) -> bool:
        return self.budgets.pop(category, None) is not None

    def replace_settings(self, settings: BudgetSettings) -> None:
        self.settings = settings

    def add_category(self, transaction_type: TransactionType, name: str) -> None:
        names = self.categories.for_type(transaction_type)
        if name not in names:
            names.append(name)


class ExportSnapshot(BaseModel):
    """
    Full-state export file.

    Reads files written by the web client, which used
    `exportDate` or `backupDate` and sometimes omitted categories.
    """
    model_config = ConfigDict(populate_by_name=True)

    transactions: list[Transaction]
    budgets: dict[str, Budget]
    settings: BudgetSettings
    categories: Optional[CategorySet] = None
    exported_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("exportedAt", "exported_at", "exportDate", "backupDate"),
        serialization_alias="exportedAt",
    )

    @classmethod
    def from_state(cls, state: AppState) -> "ExportSnapshot":
        copy = state.snapshot()
        return cls(
            transactions=copy.transactions,
            budgets=copy.budgets,
            settings=copy.settings,
            categories=copy.categories,
        )

    def to_state(self, fallback_categories: Optional[CategorySet] = None) -> AppState:
        categories = self.categories or fallback_categories or CategorySet()
        return AppState(
            transactions=[t.model_copy() for t in self.transactions],
            budgets={k: v.model_copy() for k, v in self.budgets.items()},
            settings=self.settings.model_copy(),
            categories=categories.model_copy(deep=True),
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)
