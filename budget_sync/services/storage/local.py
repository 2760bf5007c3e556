"""
Local Key-Value Store

DESIGN DECISION: Local storage must never take the app down.
- Missing keys load as empty defaults
- Corrupt or unreadable values load as empty defaults (logged)
- A backend that stops accepting writes is swapped for an in-memory
  fallback for the rest of the process

TRADEOFFS:
- No transactions across entities: saving the full state writes one key
  at a time, so a crash can leave entities out of step. The next sync
  brings them back together.
- The in-memory fallback is lost on exit.

Values are JSON documents, one per key, so the layout matches what the
browser client kept in localStorage.
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from budget_sync.config.settings import LocalBackend, LocalStoreSettings
from budget_sync.models.budget import (
    AppState,
    Budget,
    BudgetSettings,
    CategorySet,
    EntityType,
    Transaction,
    new_device_id,
)
from budget_sync.services.storage.interface import Collection, CorruptDataError


logger = structlog.get_logger(__name__)

DEVICE_ID_KEY = "budget_device_id"


# =============================================================================
# BACKENDS
# =============================================================================

class KeyValueBackend(ABC):
    """Raw string storage. Implementations may raise on any call."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every key."""
        pass


class MemoryBackend(KeyValueBackend):
    """Process-local storage. Used for tests and as the fallback."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._data


class JsonFileBackend(KeyValueBackend):
    """
    One `<key>.json` file per key inside a directory.

    Writes go to a temporary file first and are moved into place, so a
    single value is never half-written.
    """

    def __init__(self, data_dir: Path):
        self._dir = Path(data_dir)

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    def ensure_writable(self) -> None:
        """Create the directory and prove we can write to it."""
        self._dir.mkdir(parents=True, exist_ok=True)
        probe = self._dir / ".probe"
        probe.write_text("ok", encoding="utf-8")
        probe.unlink()

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def clear(self) -> None:
        if not self._dir.exists():
            return
        for path in self._dir.glob("*.json"):
            path.unlink(missing_ok=True)


# =============================================================================
# ENCODING
# =============================================================================

def default_collection(entity: EntityType) -> Collection:
    """The empty value an entity loads as when nothing usable is stored."""
    if entity == EntityType.TRANSACTIONS:
        return []
    if entity == EntityType.BUDGETS:
        return {}
    if entity == EntityType.SETTINGS:
        return BudgetSettings()
    return CategorySet()


def encode_collection(entity: EntityType, collection: Collection) -> Any:
    """Convert a collection to plain JSON-compatible data."""
    if entity == EntityType.TRANSACTIONS:
        return [t.model_dump(mode="json") for t in collection]
    if entity == EntityType.BUDGETS:
        return {k: v.model_dump(mode="json") for k, v in collection.items()}
    return collection.model_dump(mode="json")


def decode_collection(entity: EntityType, data: Any) -> Collection:
    """
    Convert plain data back to a collection.

    Invalid records inside a list/dict are dropped (with a warning) rather
    than failing the whole collection. A wrong top-level shape raises
    CorruptDataError.
    """
    if entity == EntityType.TRANSACTIONS:
        if not isinstance(data, list):
            raise CorruptDataError(f"Expected a list of transactions, got {type(data).__name__}")
        transactions: list[Transaction] = []
        seen: set[str] = set()
        for raw in data:
            try:
                transaction = Transaction.model_validate(raw)
            except ValidationError as e:
                logger.warning("invalid_transaction_dropped", record=raw, error=str(e))
                continue
            if transaction.id in seen:
                logger.warning("duplicate_transaction_dropped", transaction_id=transaction.id)
                continue
            seen.add(transaction.id)
            transactions.append(transaction)
        return transactions

    if entity == EntityType.BUDGETS:
        if not isinstance(data, dict):
            raise CorruptDataError(f"Expected a mapping of budgets, got {type(data).__name__}")
        budgets: dict[str, Budget] = {}
        for category, raw in data.items():
            try:
                budgets[category] = Budget.model_validate(raw)
            except ValidationError as e:
                logger.warning("invalid_budget_dropped", category=category, error=str(e))
        return budgets

    if not isinstance(data, dict):
        raise CorruptDataError(f"Expected an object for {entity.value}, got {type(data).__name__}")
    try:
        if entity == EntityType.SETTINGS:
            return BudgetSettings.model_validate(data)
        return CategorySet.model_validate(data)
    except ValidationError as e:
        raise CorruptDataError(f"Invalid {entity.value}: {e}") from e


# =============================================================================
# STORE
# =============================================================================

class LocalStore:
    """
    Typed load/save of the four entities on top of a KeyValueBackend.

    None of the public methods raise because of storage problems.
    """

    def __init__(self, backend: KeyValueBackend, namespace: str = ""):
        self._primary = backend
        self._fallback: Optional[MemoryBackend] = None
        self._namespace = namespace

    @property
    def using_fallback(self) -> bool:
        return self._fallback is not None

    def _key(self, name: str) -> str:
        return f"{self._namespace}{name}"

    def _read(self, key: str) -> Optional[str]:
        if self._fallback is not None and key in self._fallback:
            return self._fallback.get(key)
        return self._primary.get(key)

    def _write(self, key: str, value: str) -> None:
        if self._fallback is None:
            try:
                self._primary.set(key, value)
                return
            except Exception as e:
                logger.warning(
                    "local_storage_unavailable",
                    key=key,
                    error=str(e),
                    fallback="memory",
                )
                self._fallback = MemoryBackend()
        self._fallback.set(key, value)

    def load(self, entity: EntityType) -> Collection:
        """Load one entity, or its default if missing or unreadable."""
        key = self._key(entity.value)
        try:
            raw = self._read(key)
        except Exception as e:
            logger.warning("local_read_failed", key=key, error=str(e))
            return default_collection(entity)

        if raw is None or raw in ("null", "undefined", ""):
            return default_collection(entity)

        try:
            return decode_collection(entity, json.loads(raw))
        except (ValueError, CorruptDataError) as e:
            logger.warning("local_data_corrupt", key=key, error=str(e))
            return default_collection(entity)

    def save(self, entity: EntityType, collection: Collection) -> None:
        """Persist one entity immediately."""
        value = json.dumps(encode_collection(entity, collection))
        self._write(self._key(entity.value), value)

    def load_state(self) -> AppState:
        state = AppState(
            transactions=self.load(EntityType.TRANSACTIONS),
            budgets=self.load(EntityType.BUDGETS),
            settings=self.load(EntityType.SETTINGS),
            categories=self.load(EntityType.CATEGORIES),
        )
        logger.info(
            "local_state_loaded",
            transactions=len(state.transactions),
            budgets=len(state.budgets),
        )
        return state

    def save_state(self, state: AppState) -> None:
        """Write every entity, one key at a time."""
        for entity in EntityType:
            self.save(entity, state.collection(entity))

    def get_or_create_device_id(self) -> str:
        key = self._key(DEVICE_ID_KEY)
        try:
            device_id = self._read(key)
        except Exception as e:
            logger.warning("local_read_failed", key=key, error=str(e))
            device_id = None
        if not device_id:
            device_id = new_device_id()
            self._write(key, device_id)
            logger.info("device_id_created", device_id=device_id)
        return device_id

    def clear(self) -> None:
        """Reset every entity to its default. The device id survives."""
        for entity in EntityType:
            self.save(entity, default_collection(entity))


def create_local_store(settings: LocalStoreSettings) -> LocalStore:
    """
    Build the local store selected by configuration.

    The file backend is probed once here; if the directory is not usable
    we start on memory instead of failing.
    """
    if settings.backend == LocalBackend.MEMORY:
        return LocalStore(MemoryBackend(), namespace=settings.namespace)

    backend = JsonFileBackend(settings.data_dir)
    try:
        backend.ensure_writable()
    except OSError as e:
        logger.warning(
            "local_storage_unavailable",
            data_dir=str(settings.data_dir),
            error=str(e),
            fallback="memory",
        )
        return LocalStore(MemoryBackend(), namespace=settings.namespace)
    return LocalStore(backend, namespace=settings.namespace)
