"""
Storage Backend Module

Provides the abstract sink the repositories flush to, and implementations for
in-memory (testing), JSON files and SQLite. The ledger persists two named
collections, "accounts" and "transactions", each a JSON-serializable list of
records. A collection is always read and written whole: repositories load it
fully into memory at startup and flush it after every mutating call.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from pathlib import Path
import json
import os
import sqlite3
import tempfile
import threading

from .errors import PersistenceError
from .logging_config import get_logger


ACCOUNTS_COLLECTION = "accounts"
TRANSACTIONS_COLLECTION = "transactions"


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def load_collection(self, name: str) -> Optional[List[Dict[str, Any]]]:
        """
        Load a whole collection.

        Returns:
            The stored records, or None if the collection was never written

        Raises:
            PersistenceError: If the sink cannot be read or holds malformed data
        """
        pass

    @abstractmethod
    def save_collection(self, name: str, records: List[Dict[str, Any]]) -> None:
        """
        Replace a whole collection.

        Raises:
            PersistenceError: If the sink cannot be written
        """
        pass

    def has_collection(self, name: str) -> bool:
        """Check if a collection has ever been written"""
        return self.load_collection(name) is not None

    def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def load_collection(self, name: str) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            records = self._data.get(name)
            if records is None:
                return None
            # Deep copy to prevent external mutation
            return json.loads(json.dumps(records))

    def save_collection(self, name: str, records: List[Dict[str, Any]]) -> None:
        with self._lock:
            try:
                self._data[name] = json.loads(json.dumps(records, default=str))
            except (TypeError, ValueError) as e:
                raise PersistenceError(f"Collection {name} is not serializable: {e}")

    def get_all_data(self) -> Dict[str, List[Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data))


class JsonFileStorage(StorageInterface):
    """One pretty-printed JSON array per collection inside a data directory"""

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)
        self._lock = threading.RLock()
        self.logger = get_logger("card_ledger.storage")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create data directory {self.data_dir}: {e}")
        self.logger.debug(f"JSON storage at {self.data_dir}")

    def path_for(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def load_collection(self, name: str) -> Optional[List[Dict[str, Any]]]:
        path = self.path_for(name)
        with self._lock:
            if not path.exists():
                return None
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except OSError as e:
                raise PersistenceError(f"Cannot read {path}: {e}")
            except json.JSONDecodeError as e:
                raise PersistenceError(f"Malformed JSON in {path}: {e}")

        if not isinstance(data, list):
            raise PersistenceError(f"Expected a JSON array in {path}")
        return [record for record in data if isinstance(record, dict)]

    def save_collection(self, name: str, records: List[Dict[str, Any]]) -> None:
        path = self.path_for(name)
        with self._lock:
            try:
                fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{name}.", suffix=".tmp")
            except OSError as e:
                raise PersistenceError(f"Cannot write {path}: {e}")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(records, f, indent=2, ensure_ascii=False, default=str)
                # Atomic swap so a crash never leaves a half-written file
                os.replace(tmp_path, path)
            except (OSError, TypeError, ValueError) as e:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise PersistenceError(f"Cannot write {path}: {e}")


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation, one row per collection"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        try:
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS collections (
                    name TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open SQLite database {self.db_path}: {e}")

    def load_collection(self, name: str) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            try:
                cursor = self._connection.execute(
                    "SELECT data FROM collections WHERE name = ?", (name,)
                )
                row = cursor.fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot read collection {name}: {e}")
        if row is None:
            return None
        try:
            data = json.loads(row['data'])
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Malformed JSON in collection {name}: {e}")
        if not isinstance(data, list):
            raise PersistenceError(f"Expected a JSON array in collection {name}")
        return data

    def save_collection(self, name: str, records: List[Dict[str, Any]]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                data_json = json.dumps(records, default=str)
                self._connection.execute("""
                    INSERT OR REPLACE INTO collections (name, data, updated_at)
                    VALUES (?, ?, ?)
                """, (name, data_json, now))
                self._connection.commit()
            except (sqlite3.Error, TypeError, ValueError) as e:
                raise PersistenceError(f"Cannot write collection {name}: {e}")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config) -> StorageInterface:
    """
    Build the storage backend described by a LedgerConfig.

    Wraps it in EncryptedStorage when encryption is enabled.
    """
    backend = config.storage_backend.lower()
    if backend == "memory":
        storage: StorageInterface = InMemoryStorage()
    elif backend == "json":
        storage = JsonFileStorage(config.data_dir)
    elif backend == "sqlite":
        storage = SQLiteStorage(config.sqlite_path)
    else:
        raise ValueError(f"Unknown storage backend: {config.storage_backend}")

    if config.encryption_enabled:
        from .encryption import create_encrypted_storage
        storage = create_encrypted_storage(storage, config)

    return storage
