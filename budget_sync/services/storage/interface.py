"""
Abstract Storage Interfaces

DESIGN DECISION: We define abstract interfaces for the remote side.
This allows us to:
1. Sync against a hosted database or a Google Sheets spreadsheet
2. Use in-memory fakes for testing
3. Keep the reconciler decoupled from any one backend

Every entity travels as a whole collection (a snapshot). Uploads are
idempotent upserts on the entity's natural key, so repeating one is
always safe.
"""

from abc import ABC, abstractmethod
from typing import Optional, Union

from budget_sync.models.budget import (
    Budget,
    BudgetSettings,
    CategorySet,
    EntityType,
    Transaction,
)
from budget_sync.models.sync import SyncLogEntry


Collection = Union[
    list[Transaction],
    dict[str, Budget],
    BudgetSettings,
    CategorySet,
]


class RemoteStoreInterface(ABC):
    """
    Abstract interface for cloud storage of the four entities.

    Data is partitioned by the remote user that a device token maps to.
    Implementations must raise StorageError (or a subclass) on failure
    and never partially apply an upload they report as failed.
    """

    @abstractmethod
    async def register_device(
        self,
        device_id: str,
        device_name: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> str:
        """
        Register this device, creating its remote user on first contact.

        Args:
            device_id: The local device token
            device_name: Human-readable device name
            device_type: 'mobile' or 'desktop'

        Returns:
            The remote user id that scopes all further calls

        Raises:
            StorageConnectionError: If the backend is unreachable
        """
        pass

    @abstractmethod
    async def upload(self, entity: EntityType, collection: Collection) -> int:
        """
        Upsert a full collection.

        Args:
            entity: Which entity the collection belongs to
            collection: The whole collection (not a delta)

        Returns:
            Number of records written

        Raises:
            StorageError: If the upload fails
        """
        pass

    @abstractmethod
    async def download(self, entity: EntityType) -> Optional[Collection]:
        """
        Fetch the full remote collection for this device's scope.

        Returns:
            The collection, or None if nothing was ever stored

        Raises:
            StorageError: If the download fails
        """
        pass


class SyncLogStorageInterface(ABC):
    """
    Abstract interface for sync log storage.

    Sync log entries are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_entry(self, entry: SyncLogEntry) -> bool:
        """
        Append a sync log entry.

        Returns:
            True if logged successfully. Must not raise.
        """
        pass

    @abstractmethod
    async def get_recent_entries(self, limit: int = 5) -> list[SyncLogEntry]:
        """
        Get the most recent sync log entries for this device's scope.

        Returns:
            List of entries (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class CorruptDataError(StorageError):
    """Stored data could not be decoded."""
    pass


class StorageConnectionError(StorageError):
    """Could not reach the storage backend. Safe to retry."""
    pass
