"""Tests for the application controller."""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from budget_sync.audit import SyncLogger
from budget_sync.controller import BudgetApp, create_app
from budget_sync.config import LocalBackend, RemoteBackend, Settings
from budget_sync.models import (
    BudgetPeriod,
    EntityType,
    SyncStatus,
    TransactionType,
)
from budget_sync.services.storage import LocalStore, MemoryBackend, NotFoundError
from budget_sync.sync import SyncError, SyncReconciler
from budget_sync.validation import SnapshotValidationError


@pytest.fixture
def app(local_store):
    app = BudgetApp(local=local_store)
    app.load()
    return app


@pytest.fixture
def synced_app(local_store, remote, sync_settings):
    sync_logger = SyncLogger()
    reconciler = SyncReconciler(
        remote=remote,
        local=local_store,
        sync_logger=sync_logger,
        settings=sync_settings,
    )
    app = BudgetApp(
        local=local_store,
        reconciler=reconciler,
        sync_logger=sync_logger,
        sync_settings=sync_settings,
    )
    app.load()
    return app


def _add_expense(app, amount="10", category="Groceries", on=date(2024, 1, 1), description=None):
    return app.add_transaction(TransactionType.EXPENSE, Decimal(amount), category, on, description)


class TestLoadAndMutations:
    """Every mutation is written through to the local store."""

    def test_load_assigns_device_id(self, app, local_store):
        assert app.device_id.startswith("device_")
        assert app.state.settings.device_id == app.device_id
        assert local_store.load(EntityType.SETTINGS).device_id == app.device_id

    def test_add_transaction_writes_through(self, app, local_store):
        transaction = _add_expense(app)

        assert transaction.updated_at is not None
        assert local_store.load(EntityType.TRANSACTIONS) == [transaction]

    def test_rapid_adds_get_unique_ids(self, app):
        ids = {_add_expense(app).id for _ in range(5)}
        assert len(ids) == 5

    def test_add_rejects_negative_amount(self, app):
        with pytest.raises(ValueError):
            _add_expense(app, amount="-5")
        assert app.state.transactions == []

    def test_edit_replaces_by_id(self, app):
        original = _add_expense(app)
        edited = app.edit_transaction(original.model_copy(update={"amount": Decimal("99")}))

        assert app.state.find_transaction(original.id).amount == Decimal("99")
        assert edited.updated_at >= original.updated_at

    def test_edit_unknown_raises(self, app):
        ghost = _add_expense(app).model_copy(update={"id": "missing"})
        with pytest.raises(NotFoundError):
            app.edit_transaction(ghost)

    def test_delete(self, app, local_store):
        transaction = _add_expense(app)
        assert app.delete_transaction(transaction.id) is True
        assert app.delete_transaction(transaction.id) is False
        assert local_store.load(EntityType.TRANSACTIONS) == []

    def test_budgets(self, app, local_store):
        app.set_budget("Groceries", Decimal("300"), BudgetPeriod.WEEKLY)
        assert local_store.load(EntityType.BUDGETS)["Groceries"].period == BudgetPeriod.WEEKLY

        assert app.remove_budget("Groceries") is True
        assert app.remove_budget("Groceries") is False
        assert local_store.load(EntityType.BUDGETS) == {}

    def test_update_settings_keeps_device_id(self, app, local_store):
        settings = app.update_settings(low_balance_threshold=Decimal("20"), device_id="hijack")

        assert settings.low_balance_threshold == Decimal("20")
        assert settings.device_id == app.device_id
        assert settings.updated_at is not None
        assert local_store.load(EntityType.SETTINGS) == settings

    def test_update_settings_rejects_unknown_names(self, app):
        with pytest.raises(ValueError):
            app.update_settings(theme="dark")

    def test_add_category(self, app):
        app.add_category(TransactionType.INCOME, "  Bonus ")
        assert "Bonus" in app.state.categories.income

        with pytest.raises(ValueError):
            app.add_category(TransactionType.INCOME, "Bonus")
        with pytest.raises(ValueError):
            app.add_category(TransactionType.EXPENSE, "   ")

    def test_state_survives_restart(self, local_store):
        first = BudgetApp(local=local_store)
        first.load()
        _add_expense(first)
        first.set_budget("Groceries", Decimal("100"))

        second = BudgetApp(local=local_store)
        second.load()

        assert second.state == first.state
        assert second.device_id == first.device_id


class TestDerivedReads:
    def test_reads_delegate_to_queries(self, app):
        app.add_transaction(TransactionType.INCOME, Decimal("500"), "Salary", date.today())
        _add_expense(app, amount="90", on=date.today())
        app.set_budget("Groceries", Decimal("100"))

        assert app.balance().balance == Decimal("410")
        assert app.category_spending("Groceries") == Decimal("90")
        assert app.total_budget_remaining() == Decimal("10")
        assert [a.kind.value for a in app.alerts()] == ["budget_warning"]
        assert len(app.filter_transactions()) == 2


class TestImportExport:
    """Snapshots replace all data, after validation and confirmation."""

    def test_round_trip_into_fresh_store(self, app):
        _add_expense(app, description="milk")
        app.set_budget("Groceries", Decimal("250"), BudgetPeriod.YEARLY)
        app.update_settings(notifications_enabled=True)
        app.add_category(TransactionType.EXPENSE, "Pets")
        exported = app.export_json()

        fresh = BudgetApp(local=LocalStore(MemoryBackend()))
        fresh.load()
        assert fresh.import_json(exported) is True

        before, after = app.state, fresh.state
        assert after.transactions == before.transactions
        assert after.budgets == before.budgets
        assert after.categories == before.categories
        assert after.settings.model_dump(exclude={"device_id"}) == before.settings.model_dump(exclude={"device_id"})
        assert after.settings.device_id == fresh.device_id

    def test_invalid_import_changes_nothing(self, app):
        _add_expense(app)
        before = app.state

        with pytest.raises(SnapshotValidationError):
            app.import_json('{"transactions": "nope"}')

        assert app.state == before

    def test_declined_import_changes_nothing(self, app):
        exported = app.export_json()
        _add_expense(app)
        before = app.state

        assert app.import_json(exported, confirm=lambda snapshot: False) is False
        assert app.state == before

    def test_clear_all_data_keeps_device_id(self, app, local_store):
        _add_expense(app)
        app.set_budget("Groceries", Decimal("10"))
        device_id = app.device_id

        app.clear_all_data()

        assert app.state.transactions == []
        assert app.state.budgets == {}
        assert app.state.settings.device_id == device_id
        assert local_store.get_or_create_device_id() == device_id


class TestControllerSync:
    """Sync adoption, journaling and scheduling."""

    @pytest.mark.asyncio
    async def test_sync_without_remote_is_an_error(self, app):
        result = await app.sync()
        assert result.status == SyncStatus.ERROR
        with pytest.raises(SyncError):
            await app.sync(raise_on_error=True)

    @pytest.mark.asyncio
    async def test_sync_adopts_merged_state(self, synced_app, remote, make_transaction):
        remote.transactions["r1"] = make_transaction("r1")
        local = _add_expense(synced_app)

        result = await synced_app.sync()

        assert result.success
        assert [t.id for t in synced_app.state.transactions] == [local.id, "r1"]
        assert set(remote.transactions) == {local.id, "r1"}

    @pytest.mark.asyncio
    async def test_mutation_during_sync_is_not_lost(self, synced_app, remote, local_store, make_transaction):
        remote.transactions["r1"] = make_transaction("r1")
        remote.gate = asyncio.Event()

        sync_call = asyncio.create_task(synced_app.sync())
        await asyncio.sleep(0)
        assert synced_app.is_syncing

        added = _add_expense(synced_app)
        remote.gate.set()
        await sync_call

        ids = {t.id for t in synced_app.state.transactions}
        assert ids == {"r1", added.id}
        assert {t.id for t in local_store.load(EntityType.TRANSACTIONS)} == ids
        assert added.id not in remote.transactions

        await synced_app.sync()
        assert added.id in remote.transactions

    @pytest.mark.asyncio
    async def test_timeout_returns_error_and_sync_finishes(self, synced_app, remote, make_transaction):
        remote.transactions["r1"] = make_transaction("r1")
        remote.gate = asyncio.Event()

        result = await synced_app.sync(timeout=0.01)
        assert result.status == SyncStatus.ERROR
        assert synced_app.is_syncing

        remote.gate.set()
        final = await synced_app.sync()
        assert final.success
        assert [t.id for t in synced_app.state.transactions] == ["r1"]

    @pytest.mark.asyncio
    async def test_auto_sync_runs_until_stopped(self, synced_app, remote):
        synced_app.start_auto_sync(interval=0.01)
        for _ in range(50):
            if remote.register_calls >= 2:
                break
            await asyncio.sleep(0.01)
        await synced_app.stop_auto_sync()

        calls = remote.register_calls
        assert calls >= 2
        await asyncio.sleep(0.05)
        assert remote.register_calls == calls

    @pytest.mark.asyncio
    async def test_sync_status_lists_recent_entries(self, synced_app):
        await synced_app.sync()
        entries = await synced_app.sync_status()
        assert [e.operation.value for e in entries] == ["upload", "download"]


class TestCreateApp:
    def test_local_only_app(self, monkeypatch):
        monkeypatch.setenv("BUDGET_LOCAL_BACKEND", LocalBackend.MEMORY.value)
        monkeypatch.setenv("BUDGET_REMOTE_BACKEND", RemoteBackend.NONE.value)

        app = create_app(Settings())

        assert not app.sync_enabled
        assert app.device_id is not None

    @pytest.mark.asyncio
    async def test_database_app_syncs(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BUDGET_LOCAL_BACKEND", LocalBackend.MEMORY.value)
        monkeypatch.setenv("BUDGET_REMOTE_BACKEND", RemoteBackend.DATABASE.value)
        monkeypatch.setenv("BUDGET_REMOTE_DATABASE_URL", f"sqlite:///{tmp_path / 'remote.db'}")
        monkeypatch.setenv("BUDGET_REMOTE_CREATE_SCHEMA", "true")
        monkeypatch.setenv("BUDGET_SYNC_RETRY_DELAY_SECONDS", "0")

        app = create_app(Settings())
        _add_expense(app)
        result = await app.sync()

        assert result.success, result.summary()
        assert len(await app.sync_status()) == 2
