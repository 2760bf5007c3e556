"""
Application Controller for Budget Sync

This module owns the canonical in-memory state and defines the flows for:
1. Mutations (write-through to the local store on every change)
2. Sync (reconcile with the cloud, on demand or on an interval)
3. Import / export of full snapshots

DESIGN DECISION: There is exactly one AppState and the controller owns it.
The reconciler receives a snapshot and hands back a merged copy; derived
reads get the state passed in. Nothing else holds a reference to it.

Mutations made while a sync is in flight are journaled. When the sync
finishes, the journal is replayed on top of the merged state, so a change
made mid-sync is never lost to the merge. The next sync uploads it.
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Callable, Optional

import structlog

from budget_sync.audit import SyncLogger, configure_logging
from budget_sync.config import RemoteBackend, Settings, SyncSettings, get_settings
from budget_sync.models.budget import (
    AppState,
    Budget,
    BudgetPeriod,
    BudgetSettings,
    EntityType,
    ExportSnapshot,
    Transaction,
    TransactionType,
    new_transaction_id,
    utcnow,
)
from budget_sync.models.sync import SyncLogEntry, SyncResult
from budget_sync.queries import (
    Alert,
    BalanceSummary,
    BudgetUsage,
    TransactionFilter,
    budget_usage,
    calculate_balance,
    category_spending,
    check_alerts,
    filter_transactions,
    total_budget_remaining,
)
from budget_sync.services.storage import (
    DatabaseRemoteStore,
    DatabaseSyncLogStorage,
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
    GoogleSheetsSyncLogStorage,
    LocalStore,
    NotFoundError,
    RemoteSchema,
    RemoteStoreInterface,
    SyncLogStorageInterface,
    create_local_store,
    create_remote_engine,
)
from budget_sync.sync import SyncError, SyncReconciler
from budget_sync.validation import SnapshotValidator


logger = structlog.get_logger(__name__)

Mutation = Callable[[AppState], None]


class BudgetApp:
    """
    Owns the app state and every operation on it.

    Every mutation:
    1. Validates its input (pydantic models raise ValueError subclasses)
    2. Stamps `updated_at`
    3. Applies to the in-memory state
    4. Writes the affected entity to the local store
    """

    def __init__(
        self,
        local: LocalStore,
        reconciler: Optional[SyncReconciler] = None,
        sync_logger: Optional[SyncLogger] = None,
        sync_settings: Optional[SyncSettings] = None,
        validator: Optional[SnapshotValidator] = None,
    ):
        self._local = local
        self._reconciler = reconciler
        self._sync_logger = sync_logger or SyncLogger()
        self._sync_settings = sync_settings or SyncSettings()
        self._validator = validator or SnapshotValidator()

        self._state = AppState()
        self._device_id: Optional[str] = None
        self._journal: Optional[list[Mutation]] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._auto_sync_task: Optional[asyncio.Task] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> AppState:
        """A copy of the current state. Changes to it are not saved."""
        return self._state.snapshot()

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    @property
    def sync_enabled(self) -> bool:
        return self._reconciler is not None

    @property
    def is_syncing(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()

    def load(self) -> AppState:
        """Load everything from the local store and resolve the device id."""
        state = self._local.load_state()
        self._device_id = self._local.get_or_create_device_id()

        if state.settings.device_id != self._device_id:
            state.settings = state.settings.model_copy(update={"device_id": self._device_id})
            self._local.save(EntityType.SETTINGS, state.settings)

        self._state = state
        logger.info("app_loaded", device_id=self._device_id)
        return self.state

    def _apply(self, entity: EntityType, mutation: Mutation) -> None:
        mutation(self._state)
        if self._journal is not None:
            self._journal.append(mutation)
        self._local.save(entity, self._state.collection(entity))

    # =========================================================================
    # Transactions
    # =========================================================================

    def _unused_transaction_id(self) -> str:
        candidate = new_transaction_id()
        # Two adds in the same millisecond would collide
        while self._state.find_transaction(candidate) is not None:
            candidate = str(int(candidate) + 1)
        return candidate

    def add_transaction(
        self,
        type: TransactionType,
        amount: Decimal,
        category: str,
        date: date,
        description: Optional[str] = None,
    ) -> Transaction:
        """Record a new income or expense. Newest transactions come first."""
        transaction = Transaction(
            id=self._unused_transaction_id(),
            type=type,
            amount=amount,
            category=category,
            description=description,
            date=date,
            updated_at=utcnow(),
        )
        self._apply(
            EntityType.TRANSACTIONS,
            lambda state: state.upsert_transaction(transaction),
        )
        logger.info("transaction_added", transaction_id=transaction.id)
        return transaction

    def edit_transaction(self, transaction: Transaction) -> Transaction:
        """
        Replace a transaction by id.

        Raises:
            NotFoundError: If no transaction has that id
        """
        if self._state.find_transaction(transaction.id) is None:
            raise NotFoundError(f"Transaction not found: {transaction.id}")

        updated = Transaction.model_validate(
            {**transaction.model_dump(), "updated_at": utcnow()}
        )
        self._apply(
            EntityType.TRANSACTIONS,
            lambda state: state.upsert_transaction(updated),
        )
        logger.info("transaction_edited", transaction_id=updated.id)
        return updated

    def delete_transaction(self, transaction_id: str) -> bool:
        """Returns False if there was nothing to delete."""
        if self._state.find_transaction(transaction_id) is None:
            return False
        self._apply(
            EntityType.TRANSACTIONS,
            lambda state: state.remove_transaction(transaction_id),
        )
        logger.info("transaction_deleted", transaction_id=transaction_id)
        return True

    # =========================================================================
    # Budgets, settings, categories
    # =========================================================================

    def set_budget(
        self,
        category: str,
        amount: Decimal,
        period: BudgetPeriod = BudgetPeriod.MONTHLY,
    ) -> Budget:
        category = category.strip()
        if not category:
            raise ValueError("Budget category must not be blank")

        budget = Budget(amount=amount, period=period, updated_at=utcnow())
        self._apply(
            EntityType.BUDGETS,
            lambda state: state.set_budget(category, budget),
        )
        logger.info("budget_set", category=category, period=budget.period.value)
        return budget

    def remove_budget(self, category: str) -> bool:
        if category not in self._state.budgets:
            return False
        self._apply(
            EntityType.BUDGETS,
            lambda state: state.remove_budget(category),
        )
        logger.info("budget_removed", category=category)
        return True

    def update_settings(self, **changes) -> BudgetSettings:
        """
        Change one or more settings. Unknown names are rejected.

        The device id cannot be changed here.
        """
        unknown = set(changes) - set(BudgetSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        settings = BudgetSettings.model_validate({
            **self._state.settings.model_dump(),
            **changes,
            "device_id": self._device_id,
            "updated_at": utcnow(),
        })
        self._apply(
            EntityType.SETTINGS,
            lambda state: state.replace_settings(settings),
        )
        logger.info("settings_updated", fields=sorted(changes))
        return settings

    def add_category(self, transaction_type: TransactionType, name: str) -> None:
        """
        Raises:
            ValueError: If the name is blank or already exists for that type
        """
        name = name.strip()
        if not name:
            raise ValueError("Category name must not be blank")
        if name in self._state.categories.for_type(transaction_type):
            raise ValueError(f"Category already exists: {name}")

        self._apply(
            EntityType.CATEGORIES,
            lambda state: state.add_category(transaction_type, name),
        )
        logger.info("category_added", type=transaction_type.value, name=name)

    # =========================================================================
    # Derived reads
    # =========================================================================

    def balance(self) -> BalanceSummary:
        return calculate_balance(self._state.transactions)

    def category_spending(
        self,
        category: str,
        period: Optional[BudgetPeriod] = None,
        today: Optional[date] = None,
    ) -> Decimal:
        """Spending this period; defaults to the category budget's period."""
        if period is None:
            budget = self._state.budgets.get(category)
            period = budget.period if budget else BudgetPeriod.MONTHLY
        return category_spending(self._state.transactions, category, period, today)

    def budget_usage(self, today: Optional[date] = None) -> list[BudgetUsage]:
        return budget_usage(self._state, today)

    def total_budget_remaining(self, today: Optional[date] = None) -> Decimal:
        return total_budget_remaining(self._state, today)

    def alerts(self, today: Optional[date] = None) -> list[Alert]:
        return check_alerts(self._state, today)

    def filter_transactions(self, criteria: Optional[TransactionFilter] = None) -> list[Transaction]:
        return filter_transactions(self._state.transactions, criteria)

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync(
        self,
        timeout: Optional[float] = None,
        raise_on_error: bool = False,
    ) -> SyncResult:
        """
        Reconcile with the cloud.

        A call made while a sync is running waits for that sync. On
        timeout the caller gets an error result and the sync keeps running
        in the background; its result is still applied when it finishes.

        Raises:
            SyncError: If raise_on_error is set and the sync did not succeed
        """
        if self._reconciler is None:
            result = SyncResult.failed("Cloud sync is not configured")
        else:
            if not self.is_syncing:
                self._journal = []
                self._sync_task = asyncio.get_running_loop().create_task(
                    self._sync_and_apply(self._state.snapshot())
                )
            task = self._sync_task

            if timeout is None:
                timeout = self._sync_settings.timeout_seconds

            try:
                if timeout is None:
                    result = await asyncio.shield(task)
                else:
                    result = await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                logger.warning("sync_timed_out", timeout=timeout)
                result = SyncResult.failed(f"Sync did not finish within {timeout}s")

        if raise_on_error and not result.success:
            raise SyncError(result.summary(), result)
        return result

    async def _sync_and_apply(self, snapshot: AppState) -> SyncResult:
        try:
            result = await self._reconciler.sync(snapshot)
        finally:
            journal, self._journal = self._journal or [], None

        if result.merged_state is not None:
            state = result.merged_state.snapshot()
            for mutation in journal:
                mutation(state)
            self._state = state
            if journal:
                self._local.save_state(state)
                logger.info("journal_replayed", mutations=len(journal))

        return result

    def start_auto_sync(self, interval: Optional[float] = None) -> None:
        """Sync every `interval` seconds until stopped. Needs a running loop."""
        if self._reconciler is None:
            logger.warning("auto_sync_unavailable", reason="no remote configured")
            return
        if self._auto_sync_task is not None and not self._auto_sync_task.done():
            return

        interval = interval or self._sync_settings.auto_sync_interval_seconds
        self._auto_sync_task = asyncio.get_running_loop().create_task(
            self._auto_sync_loop(interval)
        )
        logger.info("auto_sync_started", interval=interval)

    async def _auto_sync_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            result = await self.sync()
            if not result.success:
                logger.warning("auto_sync_failed", summary=result.summary())

    async def stop_auto_sync(self) -> None:
        task, self._auto_sync_task = self._auto_sync_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("auto_sync_stopped")

    async def sync_status(self, limit: int = 5) -> list[SyncLogEntry]:
        """Most recent sync log entries, newest first."""
        return await self._sync_logger.get_history(limit)

    # =========================================================================
    # Import / export
    # =========================================================================

    def export_snapshot(self) -> ExportSnapshot:
        return ExportSnapshot.from_state(self._state)

    def export_json(self) -> str:
        return self.export_snapshot().to_json()

    def import_snapshot(self, snapshot: ExportSnapshot) -> None:
        """Replace ALL local data with the snapshot. The device id is kept."""
        state = snapshot.to_state(fallback_categories=self._state.categories)
        state.settings = state.settings.model_copy(update={"device_id": self._device_id})

        def replace(target: AppState) -> None:
            imported = state.snapshot()
            target.transactions = imported.transactions
            target.budgets = imported.budgets
            target.settings = imported.settings
            target.categories = imported.categories

        replace(self._state)
        if self._journal is not None:
            self._journal.append(replace)
        self._local.save_state(self._state)
        logger.info("snapshot_imported", transactions=len(state.transactions))

    def import_json(
        self,
        text: str,
        confirm: Optional[Callable[[ExportSnapshot], bool]] = None,
    ) -> bool:
        """
        Validate an export file and import it.

        `confirm` sees the parsed snapshot and can decline. Nothing is
        changed unless validation passes and confirm (if given) says yes.

        Raises:
            SnapshotValidationError: If the file is rejected
        """
        snapshot = self._validator.parse(text)
        if confirm is not None and not confirm(snapshot):
            logger.info("snapshot_import_declined")
            return False
        self.import_snapshot(snapshot)
        return True

    def clear_all_data(self) -> None:
        """Reset every entity to its default. The device id survives."""
        device_id = self._device_id

        def reset(target: AppState) -> None:
            fresh = AppState(settings=BudgetSettings(device_id=device_id))
            target.transactions = fresh.transactions
            target.budgets = fresh.budgets
            target.settings = fresh.settings
            target.categories = fresh.categories

        reset(self._state)
        if self._journal is not None:
            self._journal.append(reset)
        self._local.save_state(self._state)
        logger.info("all_data_cleared")


def _create_remote(
    settings: Settings,
) -> tuple[Optional[RemoteStoreInterface], Optional[SyncLogStorageInterface]]:
    remote_settings = settings.remote

    if remote_settings.backend == RemoteBackend.DATABASE:
        engine = create_remote_engine(remote_settings)
        schema = RemoteSchema(remote_settings)
        if remote_settings.create_schema:
            schema.create_all(engine)
        remote = DatabaseRemoteStore(engine, schema)
        return remote, DatabaseSyncLogStorage(remote, engine, schema)

    if remote_settings.backend == RemoteBackend.GOOGLE_SHEETS:
        client = GoogleSheetsClient(settings.google_sheets)
        remote = GoogleSheetsRemoteStore(client)
        return remote, GoogleSheetsSyncLogStorage(remote, client)

    return None, None


def create_app(settings: Optional[Settings] = None) -> BudgetApp:
    """
    Factory function to create a loaded BudgetApp.

    The storage backends are chosen here, once. If the remote backend
    cannot be set up the app runs local-only.

    Auto-sync is not started here because it needs a running event loop;
    call `app.start_auto_sync()` when `sync.enable_auto_sync` is set.
    """
    settings = settings or get_settings()
    configure_logging(settings.app)
    sync_settings = settings.sync

    local = create_local_store(settings.local)

    try:
        remote, log_storage = _create_remote(settings)
    except Exception as e:
        # Remote not configured - continue without it
        logger.warning("remote_unavailable", error=str(e))
        remote, log_storage = None, None

    sync_logger = SyncLogger(log_storage)
    reconciler = None
    if remote is not None:
        reconciler = SyncReconciler(
            remote=remote,
            local=local,
            sync_logger=sync_logger,
            settings=sync_settings,
            device_name=sync_settings.device_name,
            device_type=sync_settings.device_type,
        )

    app = BudgetApp(
        local=local,
        reconciler=reconciler,
        sync_logger=sync_logger,
        sync_settings=sync_settings,
    )
    app.load()
    return app
