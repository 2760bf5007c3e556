"""
Shared fixtures and fakes.

No real network or cloud calls in tests: the remote store is an
in-memory fake with failure injection, and Google Sheets is a fake
spreadsheet that speaks the small part of the gspread API we use.
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import gspread
import pytest
from gspread.utils import a1_to_rowcol

from budget_sync.config import SyncSettings
from budget_sync.models import (
    Budget,
    BudgetSettings,
    CategorySet,
    EntityType,
    Transaction,
    TransactionType,
)
from budget_sync.services.storage import (
    LocalStore,
    MemoryBackend,
    RemoteStoreInterface,
    StorageConnectionError,
    StorageError,
)


class FakeRemoteStore(RemoteStoreInterface):
    """
    In-memory remote store.

    Failure injection:
    - fail_register: registration raises StorageError
    - fail_download / fail_upload: entities whose calls raise StorageError
    - connection_failures: next N calls raise StorageConnectionError
    - gate: when set, register_device waits on it (holds a sync in flight)
    """

    def __init__(self):
        self.transactions: dict[str, Transaction] = {}
        self.budgets: dict[str, Budget] = {}
        self.settings: Optional[BudgetSettings] = None
        self.categories: Optional[CategorySet] = None

        self.fail_register = False
        self.fail_download: set[EntityType] = set()
        self.fail_upload: set[EntityType] = set()
        self.connection_failures = 0
        self.gate: Optional[asyncio.Event] = None

        self.register_calls = 0
        self.upload_calls: list[EntityType] = []

    def _maybe_drop_connection(self) -> None:
        if self.connection_failures > 0:
            self.connection_failures -= 1
            raise StorageConnectionError("connection reset")

    async def register_device(self, device_id, device_name=None, device_type=None) -> str:
        self.register_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_drop_connection()
        if self.fail_register:
            raise StorageError("unauthorized")
        return "user-1"

    async def upload(self, entity, collection) -> int:
        self._maybe_drop_connection()
        if entity in self.fail_upload:
            raise StorageError(f"{entity.value} upload rejected")
        self.upload_calls.append(entity)

        if entity == EntityType.TRANSACTIONS:
            for t in collection:
                self.transactions[t.id] = t.model_copy()
            return len(collection)
        if entity == EntityType.BUDGETS:
            for category, budget in collection.items():
                self.budgets[category] = budget.model_copy()
            return len(collection)
        if entity == EntityType.SETTINGS:
            self.settings = collection.model_copy()
        else:
            self.categories = collection.model_copy(deep=True)
        return 1

    async def download(self, entity):
        self._maybe_drop_connection()
        if entity in self.fail_download:
            raise StorageError(f"{entity.value} download failed")

        if entity == EntityType.TRANSACTIONS:
            return [t.model_copy() for t in self.transactions.values()] or None
        if entity == EntityType.BUDGETS:
            return {k: v.model_copy() for k, v in self.budgets.items()} or None
        if entity == EntityType.SETTINGS:
            return self.settings.model_copy() if self.settings else None
        return self.categories.model_copy(deep=True) if self.categories else None


class RaisingBackend(MemoryBackend):
    """Memory backend that can be told to fail reads or writes."""

    def __init__(self, fail_reads: bool = False, fail_writes: bool = False):
        super().__init__()
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    def get(self, key):
        if self.fail_reads:
            raise OSError("storage unavailable")
        return super().get(key)

    def set(self, key, value):
        if self.fail_writes:
            raise OSError("quota exceeded")
        super().set(key, value)


class FakeWorksheet:
    """The subset of gspread.Worksheet used by the Google Sheets store."""

    def __init__(self, title: str):
        self.title = title
        self.rows: list[list[str]] = []

    def get_all_values(self):
        return [list(row) for row in self.rows]

    def append_row(self, values, value_input_option=None):
        self.rows.append([str(v) for v in values])

    def append_rows(self, values, value_input_option=None):
        for row in values:
            self.append_row(row)

    def batch_update(self, data, value_input_option=None):
        for update in data:
            start = update["range"].split(":")[0]
            row_number, col = a1_to_rowcol(start)
            for offset, value in enumerate(update["values"][0]):
                self.update_cell(row_number, col + offset, value)

    def update_cell(self, row, col, value):
        target = self.rows[row - 1]
        while len(target) < col:
            target.append("")
        target[col - 1] = str(value)


class FakeSpreadsheet:
    def __init__(self):
        self.sheets: dict[str, FakeWorksheet] = {}

    def worksheet(self, title):
        if title not in self.sheets:
            raise gspread.WorksheetNotFound(title)
        return self.sheets[title]

    def add_worksheet(self, title, rows, cols):
        self.sheets[title] = FakeWorksheet(title)
        return self.sheets[title]


@pytest.fixture
def local_store():
    return LocalStore(MemoryBackend())


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def sync_settings():
    return SyncSettings(max_retries=3, retry_delay_seconds=0)


@pytest.fixture
def fake_spreadsheet():
    return FakeSpreadsheet()


@pytest.fixture
def make_transaction():
    def _make(
        id: str,
        amount="10",
        category="Food",
        on: str = "2024-01-01",
        type: TransactionType = TransactionType.EXPENSE,
        updated_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        return Transaction(
            id=id,
            type=type,
            amount=Decimal(amount),
            category=category,
            date=date.fromisoformat(on),
            updated_at=updated_at,
            description=description,
        )
    return _make


def ts(day: int, hour: int = 0) -> datetime:
    """Aware UTC datetime in January 2024."""
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


@pytest.fixture
def at():
    return ts


@pytest.fixture
def raising_backend():
    return RaisingBackend
