"""Services package."""

from budget_sync.services.storage import (
    CorruptDataError,
    DatabaseRemoteStore,
    DatabaseSyncLogStorage,
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
    GoogleSheetsSyncLogStorage,
    LocalStore,
    NotFoundError,
    RemoteStoreInterface,
    StorageConnectionError,
    StorageError,
    SyncLogStorageInterface,
    create_local_store,
)

__all__ = [
    # Storage services
    "CorruptDataError",
    "DatabaseRemoteStore",
    "DatabaseSyncLogStorage",
    "GoogleSheetsClient",
    "GoogleSheetsRemoteStore",
    "GoogleSheetsSyncLogStorage",
    "LocalStore",
    "NotFoundError",
    "RemoteStoreInterface",
    "StorageConnectionError",
    "StorageError",
    "SyncLogStorageInterface",
    "create_local_store",
]
