"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by id within a
table. Approval instances rely on compare_and_swap for exactly-once state
transitions and audit entries on insert for gap-free sequencing;
RetryingStorage adds bounded retries for transient I/O.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Tuple, Union
from datetime import datetime, timezone
import sqlite3
import json
import re
import threading
import time
import logging
from dataclasses import dataclass, asdict
from pathlib import Path

from .errors import StorageUnavailableError


logger = logging.getLogger("itsm_approvals.storage")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result


def _matches(record: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    """Top-level field equality; a None expectation matches a missing field"""
    return all(record.get(key) == value for key, value in expected.items())


def _identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table or field name: {name!r}")
    return name


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Create or overwrite a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, or None if absent"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """All records of a table in insertion order"""

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a new record; returns False if the id is already taken"""

    @abstractmethod
    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """
        Atomically replace a record if its current fields equal ``expected``.

        Returns True if the write happened, False if the record is missing or
        any expected field differs.
        """

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value, in insertion order"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Remove all records from a table"""

    def close(self) -> None:
        """Release backend resources"""


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, str]:
        return self._tables.setdefault(table, {})

    # Records are held as JSON text so callers never share mutable state
    # with the store and both backends round-trip values identically.

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        encoded = json.dumps(data, default=str)
        with self._lock:
            self._table(table)[record_id] = encoded

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            encoded = self._table(table).get(record_id)
        return json.loads(encoded) if encoded is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            encoded = list(self._table(table).values())
        return [json.loads(e) for e in encoded]

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        encoded = json.dumps(data, default=str)
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                return False
            rows[record_id] = encoded
            return True

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        encoded = json.dumps(data, default=str)
        with self._lock:
            rows = self._table(table)
            current = rows.get(record_id)
            if current is None or not _matches(json.loads(current), expected):
                return False
            rows[record_id] = encoded
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._tables[table] = {}


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    One table per record type with the JSON document in ``data``. Filters
    and compare-and-swap expectations are evaluated inside SQLite with
    ``json_extract``, so a swap is a single conditional UPDATE and is atomic
    across processes sharing the database file.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, timeout=5.0)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables = set()

        # WAL lets readers in other processes proceed during a write
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> str:
        """Create the table on first use and return its quoted name"""
        quoted = f'"{_identifier(table)}"'
        if table in self._tables:
            return quoted
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {quoted} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.commit()
            self._tables.add(table)
        return quoted

    @staticmethod
    def _where(filters: Dict[str, Any]) -> Tuple[List[str], List[Any]]:
        conditions, params = [], []
        for key, value in filters.items():
            path = f"json_extract(data, '$.{_identifier(key)}')"
            if value is None:
                conditions.append(f"{path} IS NULL")
            else:
                conditions.append(f"{path} = ?")
                params.append(value)
        return conditions, params

    def _write(self, sql: str, params: List[Any]) -> int:
        with self._lock:
            cursor = self._connection.execute(sql, params)
            self._connection.commit()
            return cursor.rowcount

    def _select(self, sql: str, params: List[Any]) -> List[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(sql, params).fetchall()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        table = self._ensure_table(table)
        # Upsert keeps the rowid, so load_all order stays insertion order
        self._write(f"""
            INSERT INTO {table} (id, data, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
        """, [record_id, json.dumps(data, default=str), self._now()])

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        table = self._ensure_table(table)
        rows = self._select(f"SELECT data FROM {table} WHERE id = ?", [record_id])
        return json.loads(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        table = self._ensure_table(table)
        return self._write(
            f"INSERT OR IGNORE INTO {table} (id, data, updated_at) VALUES (?, ?, ?)",
            [record_id, json.dumps(data, default=str), self._now()]
        ) > 0

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        table = self._ensure_table(table)
        conditions, params = self._where(expected)
        where = " AND ".join(["id = ?"] + conditions)
        return self._write(
            f"UPDATE {table} SET data = ?, updated_at = ? WHERE {where}",
            [json.dumps(data, default=str), self._now(), record_id] + params
        ) == 1

    def exists(self, table: str, record_id: str) -> bool:
        table = self._ensure_table(table)
        return bool(self._select(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", [record_id]))

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        table = self._ensure_table(table)
        conditions, params = self._where(filters)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self._select(f"SELECT data FROM {table} {where} ORDER BY rowid", params)
        return [json.loads(row['data']) for row in rows]

    def count(self, table: str) -> int:
        table = self._ensure_table(table)
        return self._select(f"SELECT COUNT(*) AS n FROM {table}", [])[0]['n']

    def clear_table(self, table: str) -> None:
        table = self._ensure_table(table)
        self._write(f"DELETE FROM {table}", [])

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


TRANSIENT_ERRORS = (sqlite3.OperationalError, OSError)


class RetryingStorage(StorageInterface):
    """
    Wraps a backend and retries transient I/O failures with exponential backoff.

    Once the attempts are exhausted the failure surfaces as
    StorageUnavailableError. Logical outcomes (a failed compare_and_swap,
    a missing record) are never retried.
    """

    def __init__(self, backend: StorageInterface, attempts: int = 3,
                 backoff_seconds: float = 0.05,
                 sleep: Callable[[float], None] = time.sleep):
        self.backend = backend
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _call(self, operation: str, func: Callable, *args):
        delay = self.backoff_seconds
        for attempt in range(1, self.attempts + 1):
            try:
                return func(*args)
            except TRANSIENT_ERRORS as e:
                if attempt == self.attempts:
                    logger.error(f"Storage {operation} failed after {attempt} attempts: {e}")
                    raise StorageUnavailableError(
                        "Storage is temporarily unavailable",
                        details={'operation': operation, 'attempts': attempt}
                    ) from e
                logger.warning(f"Storage {operation} failed (attempt {attempt}/{self.attempts}), retrying in {delay}s: {e}")
                self._sleep(delay)
                delay *= 2

    def save(self, table, record_id, data):
        return self._call('save', self.backend.save, table, record_id, data)

    def load(self, table, record_id):
        return self._call('load', self.backend.load, table, record_id)

    def load_all(self, table):
        return self._call('load_all', self.backend.load_all, table)

    def insert(self, table, record_id, data):
        return self._call('insert', self.backend.insert, table, record_id, data)

    def compare_and_swap(self, table, record_id, expected, data):
        return self._call('compare_and_swap', self.backend.compare_and_swap,
                          table, record_id, expected, data)

    def exists(self, table, record_id):
        return self._call('exists', self.backend.exists, table, record_id)

    def find(self, table, filters):
        return self._call('find', self.backend.find, table, filters)

    def count(self, table):
        return self._call('count', self.backend.count, table)

    def clear_table(self, table):
        return self._call('clear_table', self.backend.clear_table, table)

    def close(self):
        self.backend.close()


def create_storage(backend: str = "memory", sqlite_path: Union[str, Path] = "approvals.db",
                   retry_attempts: int = 3, retry_backoff_seconds: float = 0.05) -> StorageInterface:
    """Build the configured backend wrapped with retries"""
    if backend == "sqlite":
        inner: StorageInterface = SQLiteStorage(sqlite_path)
    elif backend == "memory":
        inner = InMemoryStorage()
    else:
        raise ValueError(f"Unknown storage backend: {backend}")
    return RetryingStorage(inner, attempts=retry_attempts, backoff_seconds=retry_backoff_seconds)
