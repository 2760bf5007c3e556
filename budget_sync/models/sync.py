"""
Sync Models for Budget Sync

Every reconciliation attempt is recorded in an append-only sync log.
This provides:
1. Visibility into when a device last synced, and how it went
2. Debugging information when the cloud is unreachable
3. A per-device history across all devices sharing an account

DESIGN DECISION: The sync log is write-only from the reconciler's point
of view. Nothing in the merge path ever reads it back.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from budget_sync.models.budget import AppState, EntityType, utcnow


class SyncOperation(str, Enum):
    """Direction of a sync step."""
    UPLOAD = "upload"
    DOWNLOAD = "download"


class SyncStatus(str, Enum):
    """Outcome of a sync step or of a whole sync."""
    SUCCESS = "success"
    ERROR = "error"
    PARTIAL = "partial"


class SyncLogEntry(BaseModel):
    """
    One record in the sync log.

    One entry is written per phase (download, upload) of each attempt.
    """

    entry_id: UUID = Field(
        default_factory=uuid4,
        description="Unique entry identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the phase finished (UTC)"
    )
    operation: SyncOperation
    entity: str = Field(
        default="all",
        description="Entity name, or 'all' for a whole phase"
    )
    record_count: int = Field(
        default=0,
        ge=0,
    )
    status: SyncStatus
    error_message: Optional[str] = None
    device_id: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "entry_id": str(self.entry_id),
            "timestamp": self.timestamp.isoformat(),
            "operation": self.operation.value,
            "entity": self.entity,
            "record_count": self.record_count,
            "status": self.status.value,
            "error_message": self.error_message,
            "device_id": self.device_id,
        }

    def to_sheets_row(self, user_id: str = "") -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [entry_id, user_id, timestamp, operation, entity, record_count,
         status, error_message, device_id]
        """
        return [
            str(self.entry_id),
            user_id,
            self.timestamp.isoformat(),
            self.operation.value,
            self.entity,
            str(self.record_count),
            self.status.value,
            self.error_message or "",
            self.device_id or "",
        ]


class SyncLogEntryBuilder:
    """
    Helper class to build sync log entries from per-entity outcomes.

    Usage:
        entry = SyncLogEntryBuilder.phase(SyncOperation.DOWNLOAD, outcomes, device_id)
    """

    @staticmethod
    def phase(
        operation: SyncOperation,
        counts: dict[EntityType, int],
        errors: dict[EntityType, str],
        device_id: Optional[str],
    ) -> SyncLogEntry:
        """
        Summarize one phase.

        `counts` holds entities that succeeded, `errors` those that failed.
        """
        if not errors:
            status = SyncStatus.SUCCESS
        elif counts:
            status = SyncStatus.PARTIAL
        else:
            status = SyncStatus.ERROR

        error_message = None
        if errors:
            error_message = "; ".join(
                f"{entity.value}: {message}" for entity, message in errors.items()
            )

        return SyncLogEntry(
            operation=operation,
            entity="all",
            record_count=sum(counts.values()),
            status=status,
            error_message=error_message,
            device_id=device_id,
        )

    @staticmethod
    def failure(
        operation: SyncOperation,
        error_message: str,
        device_id: Optional[str],
    ) -> SyncLogEntry:
        return SyncLogEntry(
            operation=operation,
            status=SyncStatus.ERROR,
            error_message=error_message,
            device_id=device_id,
        )


class EntitySyncOutcome(BaseModel):
    """What happened to one entity during a sync."""

    entity: EntityType
    downloaded: bool = False
    uploaded: bool = False
    record_count: int = Field(
        default=0,
        ge=0,
        description="Records in the merged collection"
    )
    error: Optional[str] = None


class SyncResult(BaseModel):
    """
    Result of one reconciliation.

    `merged_state` is set whenever the merge ran, even if an upload failed
    afterwards; it is what the local store now holds.
    """

    status: SyncStatus
    merged_state: Optional[AppState] = None
    outcomes: dict[EntityType, EntitySyncOutcome] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    @property
    def failed_entities(self) -> list[EntityType]:
        return [e for e, outcome in self.outcomes.items() if outcome.error]

    @classmethod
    def failed(cls, message: str) -> "SyncResult":
        """A sync that could not start or did not finish in time."""
        now = utcnow()
        return cls(
            status=SyncStatus.ERROR,
            errors=[message],
            started_at=now,
            finished_at=now,
        )

    def summary(self) -> str:
        if self.success:
            return "Sync completed successfully"
        return f"Sync {self.status.value}: " + "; ".join(self.errors)
