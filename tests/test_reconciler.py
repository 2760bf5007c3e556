"""Integration tests for the sync reconciler, against the fake remote."""

import asyncio
from decimal import Decimal

import pytest

from budget_sync.audit import SyncLogger
from budget_sync.models import (
    AppState,
    Budget,
    BudgetSettings,
    CategorySet,
    EntityType,
    SyncOperation,
    SyncStatus,
)
from budget_sync.sync import SyncReconciler


@pytest.fixture
def sync_logger():
    return SyncLogger()


@pytest.fixture
def reconciler(remote, local_store, sync_logger, sync_settings):
    return SyncReconciler(
        remote=remote,
        local=local_store,
        sync_logger=sync_logger,
        settings=sync_settings,
    )


def _state(*transactions, **kwargs) -> AppState:
    kwargs.setdefault("settings", BudgetSettings(device_id="device_1"))
    return AppState(transactions=list(transactions), **kwargs)


class TestSuccessfulSync:
    """Happy path: both sides converge."""

    @pytest.mark.asyncio
    async def test_both_sides_converge(self, reconciler, remote, local_store, make_transaction):
        remote.transactions["t2"] = make_transaction("t2", amount="10", on="2024-01-02")
        local = _state(make_transaction("t1", amount="20"))

        result = await reconciler.sync(local)

        assert result.success
        assert [t.id for t in result.merged_state.transactions] == ["t1", "t2"]
        assert [t.id for t in local_store.load(EntityType.TRANSACTIONS)] == ["t1", "t2"]
        assert set(remote.transactions) == {"t1", "t2"}

    @pytest.mark.asyncio
    async def test_caller_state_is_not_mutated(self, reconciler, remote, make_transaction):
        remote.transactions["t2"] = make_transaction("t2")
        local = _state(make_transaction("t1"))

        await reconciler.sync(local)

        assert [t.id for t in local.transactions] == ["t1"]

    @pytest.mark.asyncio
    async def test_remote_settings_keep_local_device_id(self, reconciler, remote):
        remote.settings = BudgetSettings(low_balance_threshold=5, device_id="device_other")
        result = await reconciler.sync(_state())

        assert result.merged_state.settings.low_balance_threshold == Decimal("5")
        assert result.merged_state.settings.device_id == "device_1"

    @pytest.mark.asyncio
    async def test_categories_are_unioned(self, reconciler, remote):
        remote.categories = CategorySet(expense=["Pets"], income=["Lottery"])
        result = await reconciler.sync(
            _state(categories=CategorySet(expense=["Food"], income=["Salary"]))
        )
        assert result.merged_state.categories.expense == ["Food", "Pets"]
        assert remote.categories.income == ["Salary", "Lottery"]

    @pytest.mark.asyncio
    async def test_logs_one_entry_per_phase(self, reconciler, sync_logger, make_transaction):
        await reconciler.sync(_state(make_transaction("t1")))

        upload, download = sync_logger.recent_entries
        assert download.operation == SyncOperation.DOWNLOAD
        assert upload.operation == SyncOperation.UPLOAD
        assert upload.status == SyncStatus.SUCCESS
        assert upload.record_count == 3  # 1 transaction + settings + categories
        assert upload.device_id == "device_1"


class TestSyncFailures:
    """Failures are surfaced and never lose local data."""

    @pytest.mark.asyncio
    async def test_upload_failure_then_retry_without_duplicates(
        self, reconciler, remote, local_store, make_transaction
    ):
        remote.fail_upload = {EntityType.TRANSACTIONS}
        local = _state(make_transaction("t1"), make_transaction("t2"))

        failed = await reconciler.sync(local)

        assert failed.status == SyncStatus.PARTIAL
        assert failed.failed_entities == [EntityType.TRANSACTIONS]
        assert local_store.load(EntityType.TRANSACTIONS) == failed.merged_state.transactions
        assert remote.transactions == {}

        remote.fail_upload = set()
        retried = await reconciler.sync(failed.merged_state)
        again = await reconciler.sync(retried.merged_state)

        assert retried.success and again.success
        assert sorted(remote.transactions) == ["t1", "t2"]
        assert again.merged_state.transactions == failed.merged_state.transactions

    @pytest.mark.asyncio
    async def test_download_failure_skips_that_upload(self, reconciler, remote, local_store):
        remote.budgets["Rent"] = Budget(amount=900)
        remote.fail_download = {EntityType.BUDGETS}
        local = _state(budgets={"Food": Budget(amount=100)})

        result = await reconciler.sync(local)

        assert result.status == SyncStatus.PARTIAL
        outcome = result.outcomes[EntityType.BUDGETS]
        assert not outcome.downloaded and not outcome.uploaded
        assert "download budgets" in outcome.error
        assert EntityType.BUDGETS not in remote.upload_calls
        assert list(local_store.load(EntityType.BUDGETS)) == ["Food"]
        assert list(remote.budgets) == ["Rent"]

    @pytest.mark.asyncio
    async def test_everything_failing_is_an_error(self, reconciler, remote):
        remote.fail_download = set(EntityType)
        result = await reconciler.sync(_state())
        assert result.status == SyncStatus.ERROR
        assert len(result.errors) == 4

    @pytest.mark.asyncio
    async def test_no_upload_entry_when_every_download_fails(self, reconciler, remote, sync_logger):
        remote.fail_download = set(EntityType)

        await reconciler.sync(_state())

        (entry,) = sync_logger.recent_entries
        assert entry.operation == SyncOperation.DOWNLOAD
        assert entry.status == SyncStatus.ERROR
        assert remote.upload_calls == []

    @pytest.mark.asyncio
    async def test_skipped_upload_is_not_logged_as_failure(self, reconciler, remote, sync_logger):
        remote.fail_download = {EntityType.BUDGETS}

        await reconciler.sync(_state(budgets={"Food": Budget(amount=100)}))

        upload, download = sync_logger.recent_entries
        assert download.status == SyncStatus.PARTIAL
        assert upload.operation == SyncOperation.UPLOAD
        assert upload.status == SyncStatus.SUCCESS
        assert upload.error_message is None

    @pytest.mark.asyncio
    async def test_registration_failure_leaves_local_untouched(
        self, reconciler, remote, local_store, sync_logger, make_transaction
    ):
        remote.fail_register = True

        result = await reconciler.sync(_state(make_transaction("t1")))

        assert result.status == SyncStatus.ERROR
        assert result.merged_state is None
        assert local_store.load(EntityType.TRANSACTIONS) == []
        assert sync_logger.recent_entries[0].status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, reconciler, remote):
        remote.connection_failures = 2
        result = await reconciler.sync(_state())
        assert result.success
        assert remote.register_calls == 3

    @pytest.mark.asyncio
    async def test_retries_give_up(self, reconciler, remote):
        remote.connection_failures = 10
        result = await reconciler.sync(_state())
        assert result.status == SyncStatus.ERROR
        assert remote.register_calls == 3


class TestSingleFlight:
    """Concurrent callers share one sync."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_result(self, reconciler, remote, make_transaction):
        remote.gate = asyncio.Event()
        state = _state(make_transaction("t1"))

        first = asyncio.create_task(reconciler.sync(state))
        second = asyncio.create_task(reconciler.sync(state))
        for _ in range(3):
            await asyncio.sleep(0)
        assert reconciler.in_flight

        remote.gate.set()
        r1, r2 = await asyncio.gather(first, second)

        assert r1 is r2
        assert remote.register_calls == 1
        assert not reconciler.in_flight

    @pytest.mark.asyncio
    async def test_next_call_starts_new_sync(self, reconciler, remote):
        await reconciler.sync(_state())
        await reconciler.sync(_state())
        assert remote.register_calls == 2
