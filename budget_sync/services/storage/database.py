"""
Relational Database Remote Store

DESIGN DECISION: The cloud backend is a hosted Postgres database (Supabase
in production). We talk to it with SQLAlchemy Core rather than an ORM:
the tables are owned by the hosted project, and all we need is
"upsert these rows" and "select this user's rows".

Schema (mirrors the hosted project):
- budget_users: one row per device token
- budget_transactions: unique on (user_id, transaction_id)
- budget_budgets: unique on (user_id, category)
- budget_settings / budget_categories: one JSON row per user
- budget_sync_log: append-only

Uploads use INSERT ... ON CONFLICT DO UPDATE on the natural key, so
re-uploading the same snapshot never creates duplicates. SQLite supports
the same statement, which is what the tests run against.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from pydantic import ValidationError
from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    create_engine,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from budget_sync.config.settings import RemoteSettings
from budget_sync.models.budget import (
    Budget,
    BudgetSettings,
    CategorySet,
    EntityType,
    Transaction,
    utcnow,
)
from budget_sync.models.sync import (
    SyncLogEntry,
    SyncOperation,
    SyncStatus,
)
from budget_sync.services.storage.interface import (
    Collection,
    RemoteStoreInterface,
    StorageConnectionError,
    StorageError,
    SyncLogStorageInterface,
)


logger = structlog.get_logger(__name__)

JSONColumn = JSON().with_variant(JSONB(), "postgresql")


class RemoteSchema:
    """Table metadata for the hosted database. Names come from settings."""

    def __init__(self, settings: Optional[RemoteSettings] = None):
        settings = settings or RemoteSettings()
        self.metadata = MetaData()

        self.users = Table(
            settings.users_table,
            self.metadata,
            Column("id", Uuid, primary_key=True, default=uuid4),
            Column("device_id", String, unique=True, nullable=False),
            Column("device_name", String, nullable=True),
            Column("device_type", String, nullable=True),
            Column("created_at", DateTime(timezone=True), default=utcnow),
            Column("last_active", DateTime(timezone=True), default=utcnow),
        )
        users_fk = f"{settings.users_table}.id"

        self.transactions = Table(
            settings.transactions_table,
            self.metadata,
            Column("id", Uuid, primary_key=True, default=uuid4),
            Column("user_id", Uuid, ForeignKey(users_fk, ondelete="CASCADE"), nullable=False),
            Column("transaction_id", String, nullable=False),
            Column("type", String, nullable=False),
            Column("amount", Numeric(12, 2), nullable=False),
            Column("category", String, nullable=False),
            Column("description", Text, nullable=True),
            Column("date", Date, nullable=False),
            Column("updated_at", DateTime(timezone=True), nullable=True),
            UniqueConstraint("user_id", "transaction_id"),
        )

        self.budgets = Table(
            settings.budgets_table,
            self.metadata,
            Column("id", Uuid, primary_key=True, default=uuid4),
            Column("user_id", Uuid, ForeignKey(users_fk, ondelete="CASCADE"), nullable=False),
            Column("category", String, nullable=False),
            Column("amount", Numeric(12, 2), nullable=False),
            Column("period", String, nullable=False, default="monthly"),
            Column("updated_at", DateTime(timezone=True), nullable=True),
            UniqueConstraint("user_id", "category"),
        )

        self.settings = Table(
            settings.settings_table,
            self.metadata,
            Column("id", Uuid, primary_key=True, default=uuid4),
            Column("user_id", Uuid, ForeignKey(users_fk, ondelete="CASCADE"), unique=True, nullable=False),
            Column("settings_data", JSONColumn, nullable=False),
            Column("updated_at", DateTime(timezone=True), nullable=True),
        )

        self.categories = Table(
            settings.categories_table,
            self.metadata,
            Column("id", Uuid, primary_key=True, default=uuid4),
            Column("user_id", Uuid, ForeignKey(users_fk, ondelete="CASCADE"), unique=True, nullable=False),
            Column("categories_data", JSONColumn, nullable=False),
            Column("updated_at", DateTime(timezone=True), nullable=True),
        )

        self.sync_log = Table(
            settings.sync_log_table,
            self.metadata,
            Column("id", Uuid, primary_key=True, default=uuid4),
            Column("user_id", Uuid, ForeignKey(users_fk, ondelete="CASCADE"), nullable=True),
            Column("operation", String, nullable=False),
            Column("table_name", String, nullable=False),
            Column("record_count", Integer, default=0),
            Column("status", String, nullable=False),
            Column("error_message", Text, nullable=True),
            Column("device_id", String, nullable=True),
            Column("created_at", DateTime(timezone=True), default=utcnow),
        )

    def create_all(self, engine: Engine) -> None:
        """Create missing tables. Development and tests only."""
        self.metadata.create_all(engine)


def create_remote_engine(settings: RemoteSettings) -> Engine:
    """Create a SQLAlchemy engine using the configured database URL."""
    return create_engine(settings.database_url, pool_pre_ping=True)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _translate_error(action: str, error: SQLAlchemyError) -> StorageError:
    """Map driver errors onto our storage exceptions."""
    if isinstance(error, (OperationalError, InterfaceError, DisconnectionError)):
        return StorageConnectionError(f"Failed to {action}: {error}")
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return StorageConnectionError(f"Failed to {action}: {error}")
    return StorageError(f"Failed to {action}: {error}")


class DatabaseRemoteStore(RemoteStoreInterface):
    """
    SQLAlchemy implementation of the remote store.

    All calls after register_device() are scoped to that device's user row.
    """

    def __init__(self, engine: Engine, schema: Optional[RemoteSchema] = None):
        self._engine = engine
        self._schema = schema or RemoteSchema()
        self._user_id: Optional[UUID] = None
        self._device_id: Optional[str] = None

    @property
    def user_id(self) -> Optional[UUID]:
        return self._user_id

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    def _require_user(self) -> UUID:
        if self._user_id is None:
            raise StorageError("Device is not registered with the remote store")
        return self._user_id

    def _upsert(
        self,
        conn: Connection,
        table: Table,
        rows: list[dict[str, Any]],
        conflict_columns: list[str],
    ) -> None:
        """INSERT ... ON CONFLICT (conflict_columns) DO UPDATE every other column."""
        if not rows:
            return

        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise StorageError(f"Upsert is not supported on {dialect}")

        for row in rows:
            row.setdefault("id", uuid4())

        stmt = insert(table).values(rows)
        update_columns = {
            name: stmt.excluded[name]
            for name in rows[0]
            if name not in conflict_columns and name != "id"
        }
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_=update_columns,
        )
        conn.execute(stmt)

    async def register_device(
        self,
        device_id: str,
        device_name: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> str:
        users = self._schema.users
        now = utcnow()
        try:
            with self._engine.begin() as conn:
                existing = conn.execute(
                    select(users.c.id).where(users.c.device_id == device_id)
                ).first()

                if existing:
                    user_id = existing.id
                    conn.execute(
                        update(users)
                        .where(users.c.device_id == device_id)
                        .values(last_active=now)
                    )
                else:
                    user_id = uuid4()
                    conn.execute(
                        users.insert().values(
                            id=user_id,
                            device_id=device_id,
                            device_name=device_name,
                            device_type=device_type,
                            created_at=now,
                            last_active=now,
                        )
                    )
        except SQLAlchemyError as e:
            raise _translate_error("register device", e) from e

        self._user_id = user_id
        self._device_id = device_id
        logger.info("device_registered", device_id=device_id, user_id=str(user_id))
        return str(user_id)

    async def upload(self, entity: EntityType, collection: Collection) -> int:
        user_id = self._require_user()
        try:
            with self._engine.begin() as conn:
                if entity == EntityType.TRANSACTIONS:
                    count = self._upload_transactions(conn, user_id, collection)
                elif entity == EntityType.BUDGETS:
                    count = self._upload_budgets(conn, user_id, collection)
                elif entity == EntityType.SETTINGS:
                    count = self._upload_settings(conn, user_id, collection)
                else:
                    count = self._upload_categories(conn, user_id, collection)
        except SQLAlchemyError as e:
            raise _translate_error(f"upload {entity.value}", e) from e

        logger.info("remote_upload", entity=entity.value, record_count=count)
        return count

    def _upload_transactions(
        self, conn: Connection, user_id: UUID, transactions: list[Transaction]
    ) -> int:
        rows = [
            {
                "user_id": user_id,
                "transaction_id": t.id,
                "type": t.type.value,
                "amount": t.amount,
                "category": t.category,
                "description": t.description,
                "date": t.date,
                "updated_at": _as_utc(t.updated_at),
            }
            for t in transactions
        ]
        self._upsert(conn, self._schema.transactions, rows, ["user_id", "transaction_id"])
        return len(rows)

    def _upload_budgets(
        self, conn: Connection, user_id: UUID, budgets: dict[str, Budget]
    ) -> int:
        rows = [
            {
                "user_id": user_id,
                "category": category,
                "amount": budget.amount,
                "period": budget.period.value,
                "updated_at": _as_utc(budget.updated_at),
            }
            for category, budget in budgets.items()
        ]
        self._upsert(conn, self._schema.budgets, rows, ["user_id", "category"])
        return len(rows)

    def _upload_settings(
        self, conn: Connection, user_id: UUID, settings: BudgetSettings
    ) -> int:
        row = {
            "user_id": user_id,
            "settings_data": settings.model_dump(mode="json"),
            "updated_at": _as_utc(settings.updated_at),
        }
        self._upsert(conn, self._schema.settings, [row], ["user_id"])
        return 1

    def _upload_categories(
        self, conn: Connection, user_id: UUID, categories: CategorySet
    ) -> int:
        row = {
            "user_id": user_id,
            "categories_data": categories.model_dump(mode="json"),
            "updated_at": utcnow(),
        }
        self._upsert(conn, self._schema.categories, [row], ["user_id"])
        return 1

    async def download(self, entity: EntityType) -> Optional[Collection]:
        user_id = self._require_user()
        try:
            with self._engine.connect() as conn:
                if entity == EntityType.TRANSACTIONS:
                    result = self._download_transactions(conn, user_id)
                elif entity == EntityType.BUDGETS:
                    result = self._download_budgets(conn, user_id)
                elif entity == EntityType.SETTINGS:
                    result = self._download_settings(conn, user_id)
                else:
                    result = self._download_categories(conn, user_id)
        except SQLAlchemyError as e:
            raise _translate_error(f"download {entity.value}", e) from e

        return result

    def _download_transactions(
        self, conn: Connection, user_id: UUID
    ) -> Optional[list[Transaction]]:
        table = self._schema.transactions
        rows = conn.execute(
            select(table)
            .where(table.c.user_id == user_id)
            .order_by(table.c.date.desc())
        ).all()
        if not rows:
            return None

        # The hosted tables do not enforce client-side rules
        transactions = []
        for row in rows:
            try:
                transactions.append(Transaction(
                    id=row.transaction_id,
                    type=row.type,
                    amount=row.amount,
                    category=row.category,
                    description=row.description,
                    date=row.date,
                    updated_at=_as_utc(row.updated_at),
                ))
            except ValidationError as e:
                logger.warning(
                    "malformed_row_skipped",
                    entity=EntityType.TRANSACTIONS.value,
                    key=row.transaction_id,
                    error=str(e),
                )
        return transactions

    def _download_budgets(
        self, conn: Connection, user_id: UUID
    ) -> Optional[dict[str, Budget]]:
        table = self._schema.budgets
        rows = conn.execute(select(table).where(table.c.user_id == user_id)).all()
        if not rows:
            return None

        budgets = {}
        for row in rows:
            try:
                budgets[row.category] = Budget(
                    amount=row.amount,
                    period=row.period or "monthly",
                    updated_at=_as_utc(row.updated_at),
                )
            except ValidationError as e:
                logger.warning(
                    "malformed_row_skipped",
                    entity=EntityType.BUDGETS.value,
                    key=row.category,
                    error=str(e),
                )
        return budgets

    def _download_settings(
        self, conn: Connection, user_id: UUID
    ) -> Optional[BudgetSettings]:
        table = self._schema.settings
        row = conn.execute(
            select(table.c.settings_data).where(table.c.user_id == user_id)
        ).first()
        if row is None:
            return None
        try:
            return BudgetSettings.model_validate(row.settings_data)
        except ValidationError as e:
            raise StorageError(f"Failed to decode settings: {e}") from e

    def _download_categories(
        self, conn: Connection, user_id: UUID
    ) -> Optional[CategorySet]:
        table = self._schema.categories
        row = conn.execute(
            select(table.c.categories_data).where(table.c.user_id == user_id)
        ).first()
        if row is None:
            return None
        try:
            return CategorySet.model_validate(row.categories_data)
        except ValidationError as e:
            raise StorageError(f"Failed to decode categories: {e}") from e


class DatabaseSyncLogStorage(SyncLogStorageInterface):
    """
    SQLAlchemy implementation of sync log storage.

    Shares the remote store's engine and user scope.
    """

    def __init__(self, store: DatabaseRemoteStore, engine: Engine, schema: Optional[RemoteSchema] = None):
        self._store = store
        self._engine = engine
        self._schema = schema or RemoteSchema()

    async def append_entry(self, entry: SyncLogEntry) -> bool:
        table = self._schema.sync_log
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    table.insert().values(
                        id=entry.entry_id,
                        user_id=self._store.user_id,
                        operation=entry.operation.value,
                        table_name=entry.entity,
                        record_count=entry.record_count,
                        status=entry.status.value,
                        error_message=entry.error_message,
                        device_id=entry.device_id,
                        created_at=_as_utc(entry.timestamp),
                    )
                )
            return True
        except SQLAlchemyError as e:
            # Don't raise - sync logging should not break the sync itself
            logger.warning("sync_log_write_failed", error=str(e))
            return False

    async def get_recent_entries(self, limit: int = 5) -> list[SyncLogEntry]:
        table = self._schema.sync_log
        user_id = self._store.user_id
        if user_id is None:
            return []
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    select(table)
                    .where(table.c.user_id == user_id)
                    .order_by(table.c.created_at.desc())
                    .limit(limit)
                ).all()
        except SQLAlchemyError as e:
            raise _translate_error("read sync log", e) from e

        return [
            SyncLogEntry(
                entry_id=row.id,
                timestamp=_as_utc(row.created_at),
                operation=SyncOperation(row.operation),
                entity=row.table_name,
                record_count=row.record_count or 0,
                status=SyncStatus(row.status),
                error_message=row.error_message,
                device_id=row.device_id,
            )
            for row in rows
        ]
