"""
Sync Logger

DESIGN DECISION: Every sync phase is logged twice.
1. Structured local log (for debugging)
2. The remote sync log (so every device's history is visible in the cloud)

The sync logger:
- Is async so persisting an entry shares the sync's event loop
- Gracefully handles failures (a broken sync log never fails a sync)
- Keeps the last few entries in memory for the status view
"""

import logging
from collections import deque
from typing import Optional

import structlog

from budget_sync.config.settings import AppSettings
from budget_sync.models.sync import SyncLogEntry, SyncStatus
from budget_sync.services.storage import SyncLogStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


PACKAGE_LOGGER = "budget_sync"


def configure_logging(settings: AppSettings) -> None:
    """Set the package log level from `debug_mode`."""
    level = logging.DEBUG if settings.debug_mode else logging.INFO
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
    structlog.get_logger(__name__).info(
        "logging_configured",
        environment=settings.app_environment,
        level=logging.getLevelName(level),
    )


class SyncLogger:
    """
    Central sync logging service.

    Logs entries both to:
    1. Structured local log
    2. Remote sync log storage, when one is configured
    """

    def __init__(
        self,
        storage: Optional[SyncLogStorageInterface] = None,
        history_size: int = 5,
    ):
        """
        Initialize sync logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
            history_size: How many recent entries to keep in memory.
        """
        self._storage = storage
        self._logger = structlog.get_logger()
        self._recent: deque[SyncLogEntry] = deque(maxlen=history_size)

    @property
    def recent_entries(self) -> list[SyncLogEntry]:
        """Entries logged by this process, newest first."""
        return list(reversed(self._recent))

    async def log(self, entry: SyncLogEntry) -> bool:
        """
        Log a sync entry.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = entry.to_log_dict()
        self._recent.append(entry)

        if entry.status == SyncStatus.ERROR:
            self._logger.error("sync_log_entry", **log_dict)
        elif entry.status == SyncStatus.PARTIAL:
            self._logger.warning("sync_log_entry", **log_dict)
        else:
            self._logger.info("sync_log_entry", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_entry(entry)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "sync_log_storage_failed",
                    error=str(e),
                    entry_id=str(entry.entry_id),
                )
                return False

        return True

    async def get_history(self, limit: int = 5) -> list[SyncLogEntry]:
        """
        Recent entries from storage, or from memory when storage is absent
        or unreachable.
        """
        if self._storage:
            try:
                return await self._storage.get_recent_entries(limit)
            except Exception as e:
                self._logger.warning("sync_log_read_failed", error=str(e))
        return self.recent_entries[:limit]
