"""
Storage Services Package

Provides the local store, the abstract remote interfaces and two remote
implementations: a hosted SQL database and Google Sheets.
"""

from budget_sync.services.storage.interface import (
    Collection,
    CorruptDataError,
    NotFoundError,
    RemoteStoreInterface,
    StorageConnectionError,
    StorageError,
    SyncLogStorageInterface,
)
from budget_sync.services.storage.local import (
    JsonFileBackend,
    KeyValueBackend,
    LocalStore,
    MemoryBackend,
    create_local_store,
)
from budget_sync.services.storage.database import (
    DatabaseRemoteStore,
    DatabaseSyncLogStorage,
    RemoteSchema,
    create_remote_engine,
)
from budget_sync.services.storage.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
    GoogleSheetsSyncLogStorage,
)

__all__ = [
    # Interfaces
    "Collection",
    "RemoteStoreInterface",
    "SyncLogStorageInterface",
    # Exceptions
    "CorruptDataError",
    "NotFoundError",
    "StorageConnectionError",
    "StorageError",
    # Local store
    "JsonFileBackend",
    "KeyValueBackend",
    "LocalStore",
    "MemoryBackend",
    "create_local_store",
    # Database implementation
    "DatabaseRemoteStore",
    "DatabaseSyncLogStorage",
    "RemoteSchema",
    "create_remote_engine",
    # Google Sheets implementation
    "GoogleSheetsClient",
    "GoogleSheetsRemoteStore",
    "GoogleSheetsSyncLogStorage",
]
