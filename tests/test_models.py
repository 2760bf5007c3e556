"""
Tests for Budget Sync

Test strategy:
1. Unit tests for individual components (models, merge, queries, validators)
2. Integration tests for sync flows (with fake remote stores)
3. No real API calls in tests (SQLite in memory, fake spreadsheets)
"""

import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from budget_sync.models import (
    AppState,
    Budget,
    BudgetPeriod,
    BudgetSettings,
    CategorySet,
    EntityType,
    ExportSnapshot,
    SyncLogEntry,
    SyncLogEntryBuilder,
    SyncOperation,
    SyncResult,
    SyncStatus,
    Transaction,
    TransactionType,
    new_device_id,
    new_transaction_id,
)


class TestBudgetModels:
    """Tests for the record models."""

    def test_transaction_creation(self):
        """Test Transaction model creation."""
        t = Transaction(
            id="t1",
            type=TransactionType.EXPENSE,
            amount=Decimal("20.50"),
            category="Groceries",
            date=date(2024, 1, 1),
        )
        assert t.amount == Decimal("20.50")
        assert t.updated_at is None
        assert t.description is None

    def test_transaction_rejects_negative_amount(self):
        """Test that negative amounts are rejected."""
        with pytest.raises(ValueError):
            Transaction(
                id="t1",
                type="expense",
                amount=Decimal("-1"),
                category="Groceries",
                date="2024-01-01",
            )

    def test_transaction_rejects_unknown_type(self):
        with pytest.raises(ValueError):
            Transaction(id="t1", type="refund", amount=1, category="X", date="2024-01-01")

    def test_transaction_accepts_iso_timestamp_as_date(self):
        """Older clients stored full timestamps in `date`."""
        t = Transaction(
            id="t1",
            type="income",
            amount=100,
            category="Salary",
            date="2024-03-05T10:30:00.000Z",
        )
        assert t.date == date(2024, 3, 5)

    def test_blank_description_becomes_none(self):
        t = Transaction(
            id="t1", type="expense", amount=1, category="X",
            date="2024-01-01", description="   ",
        )
        assert t.description is None

    def test_generated_ids(self):
        assert new_transaction_id().isdigit()
        device_id = new_device_id()
        assert device_id.startswith("device_")
        assert len(device_id.split("_")[2]) == 9

    def test_budget_defaults_to_monthly(self):
        budget = Budget(amount=Decimal("300"))
        assert budget.period == BudgetPeriod.MONTHLY

    def test_budget_accepts_bare_amount(self):
        budget = Budget.model_validate(250)
        assert budget.amount == Decimal("250")

    def test_settings_defaults(self):
        settings = BudgetSettings()
        assert settings.low_balance_threshold == Decimal("100")
        assert settings.overspending_alert_percent == 80
        assert settings.notifications_enabled is False

    def test_settings_accepts_camel_case(self):
        """Settings written by the web client use camelCase keys."""
        settings = BudgetSettings.model_validate({
            "lowBalanceThreshold": 50,
            "overspendingAlert": 90,
            "enableNotifications": True,
        })
        assert settings.low_balance_threshold == Decimal("50")
        assert settings.overspending_alert_percent == 90
        assert settings.notifications_enabled is True

    def test_category_set_defaults_and_dedupe(self):
        categories = CategorySet(expense=["Food", " Food ", "Rent", ""], income=["Salary"])
        assert categories.expense == ["Food", "Rent"]
        assert "Groceries" in CategorySet().expense

    def test_category_union_keeps_order(self):
        a = CategorySet(expense=["Food", "Rent"], income=["Salary"])
        b = CategorySet(expense=["Rent", "Pets"], income=["Gift"])
        merged = a.union(b)
        assert merged.expense == ["Food", "Rent", "Pets"]
        assert merged.income == ["Salary", "Gift"]


class TestAppState:
    """Tests for the state container."""

    def test_rejects_duplicate_transaction_ids(self, make_transaction):
        with pytest.raises(ValueError):
            AppState(transactions=[make_transaction("t1"), make_transaction("t1")])

    def test_upsert_inserts_newest_first_and_replaces(self, make_transaction):
        state = AppState(transactions=[make_transaction("t1")])
        state.upsert_transaction(make_transaction("t2"))
        assert [t.id for t in state.transactions] == ["t2", "t1"]

        state.upsert_transaction(make_transaction("t1", amount="99"))
        assert [t.id for t in state.transactions] == ["t2", "t1"]
        assert state.find_transaction("t1").amount == Decimal("99")

    def test_remove(self, make_transaction):
        state = AppState(transactions=[make_transaction("t1")])
        assert state.remove_transaction("t1") is True
        assert state.remove_transaction("t1") is False

        state.set_budget("Food", Budget(amount=10))
        assert state.remove_budget("Food") is True
        assert state.remove_budget("Food") is False

    def test_snapshot_is_independent(self, make_transaction):
        state = AppState(transactions=[make_transaction("t1")])
        copy = state.snapshot()
        copy.upsert_transaction(make_transaction("t2"))
        copy.categories.expense.append("New")
        assert len(state.transactions) == 1
        assert "New" not in state.categories.expense

    def test_collection_by_entity(self):
        state = AppState()
        assert state.collection(EntityType.BUDGETS) == {}
        assert isinstance(state.collection(EntityType.SETTINGS), BudgetSettings)


class TestExportSnapshot:
    """Tests for the export file model."""

    def test_json_uses_exported_at(self, make_transaction):
        state = AppState(transactions=[make_transaction("t1")])
        data = json.loads(ExportSnapshot.from_state(state).to_json())
        assert set(data) == {"transactions", "budgets", "settings", "categories", "exportedAt"}

    def test_reads_legacy_backup_file(self):
        """Older backups used `backupDate` and had no categories."""
        snapshot = ExportSnapshot.model_validate({
            "transactions": [],
            "budgets": {"Food": {"amount": 100, "period": "weekly"}},
            "settings": {"lowBalanceThreshold": 10},
            "backupDate": "2024-02-01T00:00:00Z",
        })
        assert snapshot.exported_at == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert snapshot.categories is None

        fallback = CategorySet(expense=["Mine"], income=[])
        state = snapshot.to_state(fallback_categories=fallback)
        assert state.categories.expense == ["Mine"]
        assert state.budgets["Food"].period == BudgetPeriod.WEEKLY


class TestSyncModels:
    """Tests for sync log and result models."""

    def test_phase_success(self):
        entry = SyncLogEntryBuilder.phase(
            SyncOperation.UPLOAD,
            {EntityType.TRANSACTIONS: 3, EntityType.SETTINGS: 1},
            {},
            "device_1",
        )
        assert entry.status == SyncStatus.SUCCESS
        assert entry.record_count == 4
        assert entry.entity == "all"
        assert entry.error_message is None

    def test_phase_partial(self):
        entry = SyncLogEntryBuilder.phase(
            SyncOperation.DOWNLOAD,
            {EntityType.TRANSACTIONS: 3},
            {EntityType.BUDGETS: "timeout"},
            "device_1",
        )
        assert entry.status == SyncStatus.PARTIAL
        assert entry.error_message == "budgets: timeout"

    def test_phase_error(self):
        entry = SyncLogEntryBuilder.phase(
            SyncOperation.DOWNLOAD,
            {},
            {EntityType.BUDGETS: "a", EntityType.SETTINGS: "b"},
            None,
        )
        assert entry.status == SyncStatus.ERROR
        assert entry.error_message == "budgets: a; settings: b"

    def test_sheets_row_layout(self):
        entry = SyncLogEntry(
            operation=SyncOperation.UPLOAD,
            status=SyncStatus.SUCCESS,
            record_count=2,
            device_id="device_1",
        )
        row = entry.to_sheets_row("user-1")
        assert row[1] == "user-1"
        assert row[3:7] == ["upload", "all", "2", "success"]
        assert row[8] == "device_1"

    def test_failed_result(self):
        result = SyncResult.failed("offline")
        assert not result.success
        assert result.merged_state is None
        assert result.summary() == "Sync error: offline"
