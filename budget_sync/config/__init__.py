"""Configuration package."""

from budget_sync.config.settings import (
    AppSettings,
    GoogleSheetsSettings,
    LocalBackend,
    LocalStoreSettings,
    RemoteBackend,
    RemoteSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GoogleSheetsSettings",
    "LocalBackend",
    "LocalStoreSettings",
    "RemoteBackend",
    "RemoteSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
