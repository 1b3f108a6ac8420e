"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents keyed by numeric id.
All monetary values stored as Decimal strings, dates as ISO strings.

Writes made inside atomic() are all-or-nothing and other threads do not see
them before the transaction ends. Nested atomic blocks join
the outermost transaction. Row locks from lock() are taken before a
transaction starts and are acquired in ascending id order.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


RecordId = Union[int, str]

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _to_json_value(value: Any) -> Any:
    """Normalize a Python value to its stored JSON form"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _normalize(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    normalized = {}
    for key, value in (values or {}).items():
        if not _FIELD_NAME.match(key):
            raise ValueError(f"Invalid field name: {key!r}")
        normalized[key] = _to_json_value(value)
    return normalized


def _matches(record: Dict[str, Any], filters: Dict[str, Any],
             less_than: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if record.get(key) != value:
            return False
    for key, value in less_than.items():
        current = record.get(key)
        if current is None or not current < value:
            return False
    return True


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        return {key: _to_json_value(value) for key, value in result.items()}


class RecordLocks:
    """Per-record re-entrant locks, always acquired lowest id first"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}

    def _lock_for(self, table: str, record_id: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault((table, record_id), threading.RLock())

    @contextmanager
    def hold(self, table: str, record_ids: Iterable[RecordId]):
        ordered = sorted({int(record_id) for record_id in record_ids})
        locks = [self._lock_for(table, str(record_id)) for record_id in ordered]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    _record_locks: RecordLocks

    @abstractmethod
    def save(self, table: str, record_id: RecordId, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: RecordId) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: RecordId) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def next_id(self, table: str) -> int:
        """Allocate the next numeric id for a table"""
        pass

    @abstractmethod
    def update_where(self, table: str, filters: Dict[str, Any], values: Dict[str, Any],
                     less_than: Optional[Dict[str, Any]] = None,
                     record_ids: Optional[Iterable[RecordId]] = None) -> int:
        """
        Set-based update of every matching record

        Args:
            table: Table to update
            filters: Field equality conditions
            values: Field values to set on matching records
            less_than: Field upper bounds (exclusive), compared on stored values
            record_ids: Optional restriction to these record ids

        Returns:
            Number of records changed
        """
        pass

    @abstractmethod
    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every matching record and return how many were removed"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise

    @contextmanager
    def lock(self, table: str, record_ids: Iterable[RecordId]):
        """Hold row locks on the given records for the duration of the block"""
        with self._record_locks.hold(table, record_ids):
            yield


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._local = threading.local()
        self._record_locks = RecordLocks()

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _remember(self, table: str, key: str) -> None:
        """Record the pre-transaction value of a row in the undo journal"""
        journal = getattr(self._local, "journal", None)
        if journal is None or (table, key) in journal:
            return
        current = self._ensure_table(table).get(key)
        journal[(table, key)] = None if current is None else self._copy(current)

    def save(self, table: str, record_id: RecordId, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        key = str(record_id)
        with self._lock:
            self._remember(table, key)
            self._ensure_table(table)[key] = self._copy(data)

    def load(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._ensure_table(table).get(str(record_id))
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [self._copy(record) for record in self._ensure_table(table).values()]

    def delete(self, table: str, record_id: RecordId) -> bool:
        """Delete a record from memory"""
        key = str(record_id)
        with self._lock:
            rows = self._ensure_table(table)
            if key in rows:
                self._remember(table, key)
                del rows[key]
                return True
            return False

    def exists(self, table: str, record_id: RecordId) -> bool:
        """Check if a record exists"""
        with self._lock:
            return str(record_id) in self._ensure_table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        filters = _normalize(filters)
        with self._lock:
            return [
                self._copy(record)
                for record in self._ensure_table(table).values()
                if _matches(record, filters, {})
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._ensure_table(table))

    def next_id(self, table: str) -> int:
        """Allocate the next numeric id for a table"""
        with self._lock:
            value = self._sequences.get(table, 0) + 1
            self._sequences[table] = value
            return value

    def update_where(self, table: str, filters: Dict[str, Any], values: Dict[str, Any],
                     less_than: Optional[Dict[str, Any]] = None,
                     record_ids: Optional[Iterable[RecordId]] = None) -> int:
        """Set-based update of every matching record"""
        filters = _normalize(filters)
        bounds = _normalize(less_than)
        changes = self._copy(_normalize(values))
        wanted = None if record_ids is None else {str(record_id) for record_id in record_ids}

        with self._lock:
            changed = 0
            for key, record in self._ensure_table(table).items():
                if wanted is not None and key not in wanted:
                    continue
                if _matches(record, filters, bounds):
                    self._remember(table, key)
                    record.update(changes)
                    changed += 1
            return changed

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every matching record"""
        filters = _normalize(filters)
        with self._lock:
            rows = self._ensure_table(table)
            doomed = [key for key, record in rows.items() if _matches(record, filters, {})]
            for key in doomed:
                self._remember(table, key)
                del rows[key]
            return len(doomed)

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            for key in list(self._ensure_table(table)):
                self._remember(table, key)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Start a transaction; other threads wait until it ends"""
        self._lock.acquire()
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            self._local.journal = {}
        self._local.depth = depth + 1

    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            return
        try:
            self._local.depth = depth - 1
            if depth == 1:
                self._local.journal = None
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Undo every write made since the outermost begin_transaction()"""
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            return
        try:
            self._local.depth = depth - 1
            if depth > 1:
                return

            journal = self._local.journal
            self._local.journal = None
            for (table, key), previous in journal.items():
                rows = self._ensure_table(table)
                if previous is None:
                    rows.pop(key, None)
                else:
                    rows[key] = previous
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly by begin_transaction()
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tables = set()
        self._record_locks = RecordLocks()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if not _FIELD_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        with self._lock:
            if table in self._tables:
                return
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            # Create index on timestamps for better query performance
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    @staticmethod
    def _where(filters: Dict[str, Any], less_than: Dict[str, Any],
               record_ids: Optional[Iterable[RecordId]]) -> Tuple[str, List[Any]]:
        """Build a WHERE clause over JSON document fields"""
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            conditions.append("json_extract(data, ?) IS ?")
            params.extend([f"$.{key}", value])
        for key, value in less_than.items():
            conditions.append("json_extract(data, ?) < ?")
            params.extend([f"$.{key}", value])
        if record_ids is not None:
            ids = [str(record_id) for record_id in record_ids]
            if ids:
                conditions.append(f"id IN ({', '.join('?' for _ in ids)})")
                params.extend(ids)
            else:
                conditions.append("0")
        return (" AND ".join(conditions) or "1"), params

    def save(self, table: str, record_id: RecordId, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            key = str(record_id)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (key, data_json, key, now, now))

    def load(self, table: str, record_id: RecordId) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (str(record_id),))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: RecordId) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (str(record_id),))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: RecordId) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (str(record_id),))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSON field extraction"""
        where, params = self._where(_normalize(filters), {}, None)
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE {where} ORDER BY created_at, rowid
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def next_id(self, table: str) -> int:
        """Allocate the next numeric id for a table"""
        with self._lock:
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            self._connection.execute(
                "INSERT OR IGNORE INTO _sequences (name, value) VALUES (?, 0)", (table,)
            )
            self._connection.execute(
                "UPDATE _sequences SET value = value + 1 WHERE name = ?", (table,)
            )
            cursor = self._connection.execute(
                "SELECT value FROM _sequences WHERE name = ?", (table,)
            )
            return int(cursor.fetchone()['value'])

    def update_where(self, table: str, filters: Dict[str, Any], values: Dict[str, Any],
                     less_than: Optional[Dict[str, Any]] = None,
                     record_ids: Optional[Iterable[RecordId]] = None) -> int:
        """Set-based update of every matching record in one statement"""
        changes = _normalize(values)
        if not changes:
            return 0
        where, params = self._where(_normalize(filters), _normalize(less_than), record_ids)

        assignments = []
        set_params: List[Any] = []
        for key, value in changes.items():
            assignments.append("?, ?")
            set_params.extend([f"$.{key}", value])

        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                UPDATE {table}
                SET data = json_set(data, {', '.join(assignments)}), updated_at = ?
                WHERE {where}
            """, set_params + [datetime.now(timezone.utc).isoformat()] + params)
            return cursor.rowcount

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every matching record"""
        where, params = self._where(_normalize(filters), {}, None)
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE {where}", params)
            return cursor.rowcount

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a transaction; the connection stays with this thread until it ends"""
        self._lock.acquire()
        if self._tx_depth == 0:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error:
                self._lock.release()
                raise
        self._tx_depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._tx_depth == 0:
            return
        try:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error:
                    self._connection.execute("ROLLBACK")
                    self._tables.clear()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._tx_depth == 0:
            return
        try:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._connection.execute("ROLLBACK")
                # Tables created inside the transaction are gone again
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """Create a storage backend from a database URL"""
    if database_url in ("memory://", ":memory:"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
