"""
Configuration Management for Budget Sync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Storage backends (local and remote) are chosen from these flags once,
at startup, instead of being detected at every call site.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LocalBackend(str, Enum):
    """Where local data lives."""
    FILE = "file"
    MEMORY = "memory"


class RemoteBackend(str, Enum):
    """Which cloud backend to sync with."""
    NONE = "none"
    DATABASE = "database"
    GOOGLE_SHEETS = "google_sheets"


class LocalStoreSettings(BaseSettings):
    """Local key-value store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_LOCAL_",
        extra="ignore"
    )

    backend: LocalBackend = Field(
        default=LocalBackend.FILE,
        description="Local storage backend"
    )
    data_dir: Path = Field(
        default=Path(".budget_data"),
        description="Directory holding one JSON file per key (file backend)"
    )
    namespace: str = Field(
        default="",
        description="Prefix applied to every storage key"
    )


class RemoteSettings(BaseSettings):
    """Cloud backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_REMOTE_",
        extra="ignore"
    )

    backend: RemoteBackend = Field(
        default=RemoteBackend.NONE,
        description="Remote backend used for sync"
    )
    database_url: str = Field(
        default="sqlite:///budget_remote.db",
        description="SQLAlchemy URL of the hosted database"
    )
    create_schema: bool = Field(
        default=False,
        description="Create missing tables on startup (development only)"
    )

    # Table names
    users_table: str = Field(default="budget_users")
    transactions_table: str = Field(default="budget_transactions")
    budgets_table: str = Field(default="budget_budgets")
    settings_table: str = Field(default="budget_settings")
    categories_table: str = Field(default="budget_categories")
    sync_log_table: str = Field(default="budget_sync_log")


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets remote backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names
    users_sheet_name: str = Field(default="Users")
    transactions_sheet_name: str = Field(default="Transactions")
    budgets_sheet_name: str = Field(default="Budgets")
    settings_sheet_name: str = Field(default="Settings")
    categories_sheet_name: str = Field(default="Categories")
    sync_log_sheet_name: str = Field(default="SyncLog")

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class SyncSettings(BaseSettings):
    """Sync scheduling and retry behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_SYNC_",
        extra="ignore"
    )

    enable_auto_sync: bool = Field(
        default=False,
        description="Run sync periodically in the background"
    )
    auto_sync_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between automatic syncs"
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per remote call before giving up"
    )
    retry_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay between remote call attempts"
    )
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="How long a caller waits for a sync result"
    )
    device_name: Optional[str] = Field(
        default=None,
        description="Name this device registers under"
    )
    device_type: str = Field(
        default="desktop",
        pattern="^(mobile|desktop)$",
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def local(self) -> LocalStoreSettings:
        return LocalStoreSettings()

    @property
    def remote(self) -> RemoteSettings:
        return RemoteSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Google Sheets is only checked when it is the selected remote backend.
    """
    results = {}

    settings = get_settings()

    for name in ("local", "remote", "sync", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    if results.get("remote") and settings.remote.backend == RemoteBackend.GOOGLE_SHEETS:
        try:
            _ = settings.google_sheets
            results["google_sheets"] = True
        except Exception as e:
            results["google_sheets"] = False
            results["google_sheets_error"] = str(e)

    return results
