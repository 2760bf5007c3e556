"""
Sync Reconciler

Converges the local store and the remote store in one pass:

    register device -> download all -> merge -> save locally -> upload -> log

DESIGN DECISION: The reconciler works on a snapshot handed to it and
returns the merged state in a SyncResult. It never mutates the caller's
state object; the controller decides how to adopt the result.

Failure handling per entity:
- Download failed: merge against an empty remote (local data is never
  dropped), save, and do NOT upload that entity. A whole-record upload
  over a remote we could not read could overwrite newer data.
- Upload failed: local keeps the merged value. Uploads are idempotent
  upserts, so the next sync simply repeats them.

Only one sync runs at a time. Callers arriving while one is in flight
await the same task.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from budget_sync.audit import SyncLogger
from budget_sync.config import SyncSettings
from budget_sync.models.budget import AppState, EntityType, utcnow
from budget_sync.models.sync import (
    EntitySyncOutcome,
    SyncLogEntryBuilder,
    SyncOperation,
    SyncResult,
    SyncStatus,
)
from budget_sync.services.storage import (
    Collection,
    LocalStore,
    RemoteStoreInterface,
    StorageConnectionError,
    StorageError,
)
from budget_sync.sync.merge import (
    merge_budgets,
    merge_categories,
    merge_settings,
    merge_transactions,
)


logger = structlog.get_logger(__name__)


class SyncError(Exception):
    """A sync finished without converging every entity."""

    def __init__(self, message: str, result: Optional[SyncResult] = None):
        super().__init__(message)
        self.result = result


def _record_count(collection: Optional[Collection]) -> int:
    if collection is None:
        return 0
    if isinstance(collection, (list, dict)):
        return len(collection)
    return 1


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "remote_call_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


class SyncReconciler:
    """
    Merges local and remote snapshots and propagates the result.
    """

    def __init__(
        self,
        remote: RemoteStoreInterface,
        local: LocalStore,
        sync_logger: Optional[SyncLogger] = None,
        settings: Optional[SyncSettings] = None,
        device_name: Optional[str] = None,
        device_type: Optional[str] = None,
    ):
        self._remote = remote
        self._local = local
        self._sync_logger = sync_logger or SyncLogger()
        self._settings = settings or SyncSettings()
        self._device_name = device_name
        self._device_type = device_type
        self._in_flight: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self, local_state: AppState) -> asyncio.Task:
        """
        Start a sync, or return the one already running.

        The state is snapshotted immediately, so later changes to it
        are not part of this sync.
        """
        if not self.in_flight:
            self._in_flight = asyncio.get_running_loop().create_task(
                self._run(local_state.snapshot())
            )
        else:
            logger.info("sync_already_in_flight")
        return self._in_flight

    async def sync(self, local_state: AppState) -> SyncResult:
        """Run (or join) a sync and wait for its result."""
        return await asyncio.shield(self.start(local_state))

    async def _call(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Call the remote, retrying transport errors only."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_retries),
            wait=wait_fixed(self._settings.retry_delay_seconds),
            retry=retry_if_exception_type(StorageConnectionError),
            before_sleep=_log_retry,
            reraise=True,
        )
        return await retrying(func, *args)

    async def _run(self, state: AppState) -> SyncResult:
        started_at = utcnow()
        device_id = state.settings.device_id
        log = logger.bind(device_id=device_id)
        log.info("sync_started")

        try:
            await self._call(
                self._remote.register_device,
                device_id,
                self._device_name,
                self._device_type,
            )
        except StorageError as e:
            message = f"Device registration failed: {e}"
            log.error("sync_failed", error=message)
            await self._sync_logger.log(
                SyncLogEntryBuilder.failure(SyncOperation.DOWNLOAD, message, device_id)
            )
            return SyncResult.failed(message)

        # Download phase
        remote: dict[EntityType, Optional[Collection]] = {}
        download_counts: dict[EntityType, int] = {}
        download_errors: dict[EntityType, str] = {}
        for entity in EntityType:
            try:
                remote[entity] = await self._call(self._remote.download, entity)
                download_counts[entity] = _record_count(remote[entity])
            except StorageError as e:
                download_errors[entity] = str(e)
                log.warning("download_failed", entity=entity.value, error=str(e))

        await self._sync_logger.log(
            SyncLogEntryBuilder.phase(
                SyncOperation.DOWNLOAD, download_counts, download_errors, device_id
            )
        )

        # Merge and save locally
        merged = AppState(
            transactions=merge_transactions(
                state.transactions, remote.get(EntityType.TRANSACTIONS)
            ),
            budgets=merge_budgets(state.budgets, remote.get(EntityType.BUDGETS)),
            settings=merge_settings(state.settings, remote.get(EntityType.SETTINGS)),
            categories=merge_categories(
                state.categories, remote.get(EntityType.CATEGORIES)
            ),
        )
        self._local.save_state(merged)

        # Upload phase
        upload_counts: dict[EntityType, int] = {}
        upload_errors: dict[EntityType, str] = {}
        for entity in EntityType:
            if entity in download_errors:
                log.info("upload_skipped", entity=entity.value)
                continue
            try:
                upload_counts[entity] = await self._call(
                    self._remote.upload, entity, merged.collection(entity)
                )
            except StorageError as e:
                upload_errors[entity] = str(e)
                log.warning("upload_failed", entity=entity.value, error=str(e))

        # Nothing attempted means nothing to log for this phase
        if upload_counts or upload_errors:
            await self._sync_logger.log(
                SyncLogEntryBuilder.phase(
                    SyncOperation.UPLOAD, upload_counts, upload_errors, device_id
                )
            )

        result = self._build_result(
            merged, download_errors, upload_counts, upload_errors, started_at
        )
        log.info("sync_finished", status=result.status.value, errors=len(result.errors))
        return result

    def _build_result(
        self,
        merged: AppState,
        download_errors: dict[EntityType, str],
        upload_counts: dict[EntityType, int],
        upload_errors: dict[EntityType, str],
        started_at: datetime,
    ) -> SyncResult:
        outcomes = {}
        errors = []
        for entity in EntityType:
            error = None
            if entity in download_errors:
                error = f"download {entity.value}: {download_errors[entity]}"
            elif entity in upload_errors:
                error = f"upload {entity.value}: {upload_errors[entity]}"
            if error:
                errors.append(error)

            outcomes[entity] = EntitySyncOutcome(
                entity=entity,
                downloaded=entity not in download_errors,
                uploaded=entity in upload_counts,
                record_count=_record_count(merged.collection(entity)),
                error=error,
            )

        if not errors:
            status = SyncStatus.SUCCESS
        elif len(errors) < len(outcomes):
            status = SyncStatus.PARTIAL
        else:
            status = SyncStatus.ERROR

        return SyncResult(
            status=status,
            merged_state=merged,
            outcomes=outcomes,
            errors=errors,
            started_at=started_at,
            finished_at=utcnow(),
        )
