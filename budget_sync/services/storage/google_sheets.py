"""
Google Sheets Remote Store

DESIGN DECISION: Google Sheets is offered as a second cloud backend because:
1. Non-technical users can view their budget directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions: an upload rewrites matching rows then appends new ones
- Limited query capabilities (we filter by user in Python)

One worksheet per entity, one header row each. Rows are keyed by
(user_id, natural key), so re-uploading updates rows in place instead
of appending duplicates.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import gspread
import structlog
from google.oauth2.service_account import Credentials
from gspread.utils import rowcol_to_a1
from tenacity import retry, stop_after_attempt, wait_exponential

from budget_sync.config import GoogleSheetsSettings, get_settings
from budget_sync.models.budget import (
    Budget,
    BudgetPeriod,
    BudgetSettings,
    CategorySet,
    EntityType,
    Transaction,
    TransactionType,
    utcnow,
)
from budget_sync.models.sync import SyncLogEntry, SyncOperation, SyncStatus
from budget_sync.services.storage.interface import (
    Collection,
    RemoteStoreInterface,
    StorageConnectionError,
    StorageError,
    SyncLogStorageInterface,
)


logger = structlog.get_logger(__name__)

USER_COLUMNS = [
    "user_id",
    "device_id",
    "device_name",
    "device_type",
    "created_at",
    "last_active",
]

TRANSACTION_COLUMNS = [
    "user_id",
    "transaction_id",
    "type",
    "amount",
    "category",
    "description",
    "date",
    "updated_at",
]

BUDGET_COLUMNS = [
    "user_id",
    "category",
    "amount",
    "period",
    "updated_at",
]

SETTINGS_COLUMNS = [
    "user_id",
    "settings_json",
    "updated_at",
]

CATEGORIES_COLUMNS = [
    "user_id",
    "categories_json",
    "updated_at",
]

SYNC_LOG_COLUMNS = [
    "entry_id",
    "user_id",
    "timestamp",
    "operation",
    "entity",
    "record_count",
    "status",
    "error_message",
    "device_id",
]


def _safe_getter(row: list):
    """Return a getter that tolerates short rows."""
    def safe_get(index: int, default: str = "") -> str:
        try:
            return row[index] if row[index] else default
        except IndexError:
            return default
    return safe_get


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _parse_datetime(value: str) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for the connection.
    A ready spreadsheet object can be injected, which skips authentication.
    """

    def __init__(
        self,
        settings: Optional[GoogleSheetsSettings] = None,
        spreadsheet: Optional[gspread.Spreadsheet] = None,
    ):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet = spreadsheet
        self._settings = settings or get_settings().google_sheets

    @property
    def settings(self) -> GoogleSheetsSettings:
        return self._settings

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_sheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with the given header row."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_entity_sheet(self, entity: EntityType) -> gspread.Worksheet:
        s = self._settings
        if entity == EntityType.TRANSACTIONS:
            return self.get_sheet(s.transactions_sheet_name, TRANSACTION_COLUMNS)
        if entity == EntityType.BUDGETS:
            return self.get_sheet(s.budgets_sheet_name, BUDGET_COLUMNS)
        if entity == EntityType.SETTINGS:
            return self.get_sheet(s.settings_sheet_name, SETTINGS_COLUMNS)
        return self.get_sheet(s.categories_sheet_name, CATEGORIES_COLUMNS)

    def get_users_sheet(self) -> gspread.Worksheet:
        return self.get_sheet(self._settings.users_sheet_name, USER_COLUMNS)

    def get_sync_log_sheet(self) -> gspread.Worksheet:
        return self.get_sheet(self._settings.sync_log_sheet_name, SYNC_LOG_COLUMNS, rows=5000)


class GoogleSheetsRemoteStore(RemoteStoreInterface):
    """
    Google Sheets implementation of the remote store.

    Settings and categories are stored as one JSON cell per user.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._user_id: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def _require_user(self) -> str:
        if self._user_id is None:
            raise StorageError("Device is not registered with the remote store")
        return self._user_id

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    def _transaction_to_row(self, user_id: str, t: Transaction) -> list:
        return [
            user_id,
            t.id,
            t.type.value,
            str(t.amount),
            t.category,
            t.description or "",
            t.date.isoformat(),
            _iso(t.updated_at),
        ]

    def _row_to_transaction(self, row: list) -> Transaction:
        safe_get = _safe_getter(row)
        return Transaction(
            id=safe_get(1),
            type=TransactionType(safe_get(2)),
            amount=Decimal(safe_get(3)),
            category=safe_get(4),
            description=safe_get(5) or None,
            date=date.fromisoformat(safe_get(6)),
            updated_at=_parse_datetime(safe_get(7)),
        )

    def _budget_to_row(self, user_id: str, category: str, b: Budget) -> list:
        return [
            user_id,
            category,
            str(b.amount),
            b.period.value,
            _iso(b.updated_at),
        ]

    def _row_to_budget(self, row: list) -> tuple[str, Budget]:
        safe_get = _safe_getter(row)
        return safe_get(1), Budget(
            amount=Decimal(safe_get(2)),
            period=BudgetPeriod(safe_get(3, BudgetPeriod.MONTHLY.value)),
            updated_at=_parse_datetime(safe_get(4)),
        )

    # -------------------------------------------------------------------------
    # Sheet helpers
    # -------------------------------------------------------------------------

    def _upsert_rows(
        self,
        sheet: gspread.Worksheet,
        rows: list[list],
        key_width: int,
    ) -> None:
        """
        Update rows whose first `key_width` cells match, append the rest.
        """
        if not rows:
            return

        existing = sheet.get_all_values()
        index = {}
        for row_number, row in enumerate(existing[1:], start=2):  # Row 1 is header
            if row and row[0]:
                index[tuple(row[:key_width])] = row_number

        updates = []
        new_rows = []
        for row in rows:
            row_number = index.get(tuple(row[:key_width]))
            if row_number is None:
                new_rows.append(row)
            else:
                updates.append({
                    "range": f"{rowcol_to_a1(row_number, 1)}:{rowcol_to_a1(row_number, len(row))}",
                    "values": [row],
                })

        if updates:
            sheet.batch_update(updates, value_input_option="RAW")
        if new_rows:
            sheet.append_rows(new_rows, value_input_option="RAW")

    def _user_rows(self, sheet: gspread.Worksheet, user_id: str) -> list[list]:
        return [row for row in sheet.get_all_values()[1:] if row and row[0] == user_id]

    # -------------------------------------------------------------------------
    # Interface
    # -------------------------------------------------------------------------

    async def register_device(
        self,
        device_id: str,
        device_name: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> str:
        try:
            sheet = self._client.get_users_sheet()
            now = utcnow().isoformat()
            all_rows = sheet.get_all_values()

            user_id = None
            for idx, row in enumerate(all_rows[1:], start=2):
                if len(row) > 1 and row[1] == device_id:
                    user_id = row[0]
                    sheet.update_cell(idx, USER_COLUMNS.index("last_active") + 1, now)
                    break

            if user_id is None:
                user_id = str(uuid4())
                sheet.append_row(
                    [user_id, device_id, device_name or "", device_type or "", now, now],
                    value_input_option="RAW",
                )
        except StorageError:
            raise
        except gspread.exceptions.APIError as e:
            raise StorageConnectionError(f"Failed to register device: {e}")
        except Exception as e:
            raise StorageError(f"Failed to register device: {e}")

        self._user_id = user_id
        logger.info("device_registered", device_id=device_id, user_id=user_id)
        return user_id

    async def upload(self, entity: EntityType, collection: Collection) -> int:
        user_id = self._require_user()
        try:
            sheet = self._client.get_entity_sheet(entity)
            if entity == EntityType.TRANSACTIONS:
                rows = [self._transaction_to_row(user_id, t) for t in collection]
                self._upsert_rows(sheet, rows, key_width=2)
            elif entity == EntityType.BUDGETS:
                rows = [
                    self._budget_to_row(user_id, category, budget)
                    for category, budget in collection.items()
                ]
                self._upsert_rows(sheet, rows, key_width=2)
            elif entity == EntityType.SETTINGS:
                rows = [[
                    user_id,
                    collection.model_dump_json(),
                    _iso(collection.updated_at),
                ]]
                self._upsert_rows(sheet, rows, key_width=1)
            else:
                rows = [[
                    user_id,
                    collection.model_dump_json(),
                    utcnow().isoformat(),
                ]]
                self._upsert_rows(sheet, rows, key_width=1)
        except StorageError:
            raise
        except gspread.exceptions.APIError as e:
            raise StorageConnectionError(f"Failed to upload {entity.value}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to upload {entity.value}: {e}")

        logger.info("remote_upload", entity=entity.value, record_count=len(rows))
        return len(rows)

    async def download(self, entity: EntityType) -> Optional[Collection]:
        user_id = self._require_user()
        try:
            sheet = self._client.get_entity_sheet(entity)
            rows = self._user_rows(sheet, user_id)
        except StorageError:
            raise
        except gspread.exceptions.APIError as e:
            raise StorageConnectionError(f"Failed to download {entity.value}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to download {entity.value}: {e}")

        if not rows:
            return None

        if entity == EntityType.TRANSACTIONS:
            transactions = []
            for row in rows:
                try:
                    transactions.append(self._row_to_transaction(row))
                except Exception as e:
                    logger.warning("malformed_row_skipped", entity=entity.value, error=str(e))
            transactions.sort(key=lambda t: t.date, reverse=True)
            return transactions

        if entity == EntityType.BUDGETS:
            budgets = {}
            for row in rows:
                try:
                    category, budget = self._row_to_budget(row)
                except Exception as e:
                    logger.warning("malformed_row_skipped", entity=entity.value, error=str(e))
                    continue
                budgets[category] = budget
            return budgets

        try:
            data = json.loads(_safe_getter(rows[0])(1, "{}"))
            if entity == EntityType.SETTINGS:
                return BudgetSettings.model_validate(data)
            return CategorySet.model_validate(data)
        except Exception as e:
            raise StorageError(f"Failed to decode {entity.value}: {e}")


class GoogleSheetsSyncLogStorage(SyncLogStorageInterface):
    """
    Google Sheets implementation of sync log storage.

    Entries are append-only.
    """

    def __init__(
        self,
        store: GoogleSheetsRemoteStore,
        client: Optional[GoogleSheetsClient] = None,
    ):
        self._store = store
        self._client = client or GoogleSheetsClient()

    def _row_to_entry(self, row: list) -> SyncLogEntry:
        safe_get = _safe_getter(row)
        return SyncLogEntry(
            entry_id=safe_get(0),
            timestamp=datetime.fromisoformat(safe_get(2)),
            operation=SyncOperation(safe_get(3)),
            entity=safe_get(4, "all"),
            record_count=int(safe_get(5, "0")),
            status=SyncStatus(safe_get(6)),
            error_message=safe_get(7) or None,
            device_id=safe_get(8) or None,
        )

    async def append_entry(self, entry: SyncLogEntry) -> bool:
        try:
            sheet = self._client.get_sync_log_sheet()
            row = entry.to_sheets_row(self._store.user_id or "")
            sheet.append_row(row, value_input_option="RAW")
            return True
        except Exception as e:
            # Don't raise - sync logging should not break the sync itself
            logger.warning("sync_log_write_failed", error=str(e))
            return False

    async def get_recent_entries(self, limit: int = 5) -> list[SyncLogEntry]:
        user_id = self._store.user_id
        if user_id is None:
            return []
        try:
            sheet = self._client.get_sync_log_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to read sync log: {e}")

        entries = []
        for row in all_rows:
            if len(row) > 1 and row[1] == user_id:
                try:
                    entries.append(self._row_to_entry(row))
                except Exception:
                    continue

        # Sort newest first
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]
