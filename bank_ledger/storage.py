"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

An open transaction holds the backend lock until it commits or rolls back,
so other threads only ever read committed state.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterator, Sequence, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageUnavailable, Timeout


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class UniqueViolation(Exception):
    """A save would duplicate the key of a unique index"""


_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _lock_wait(timeout: Optional[float]) -> float:
    """Translate an optional timeout into Lock.acquire's convention"""
    if timeout is None:
        return -1
    return max(timeout, 0.0)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        """Declare a secondary index over top-level record fields"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Start a transaction, waiting at most `timeout` seconds for the backend lock"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit current transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Rollback current transaction"""
        pass

    @contextmanager
    def atomic(self, timeout: Optional[float] = None) -> Iterator[None]:
        """Context manager for atomic operations"""
        self.begin_transaction(timeout)
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    A transaction keeps an undo log holding the prior value of each row it
    touches, so rollback costs time in proportion to the rows written.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._unique: Dict[str, List[Tuple[str, ...]]] = {}
        self._undo: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self._depth = 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        # First touch inside a transaction keeps the committed row
        if self._depth and (table, record_id) not in self._undo:
            self._undo[(table, record_id)] = self._data.get(table, {}).get(record_id)

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        for fields in self._unique.get(table, []):
            key = tuple(data.get(f) for f in fields)
            # Missing values never collide, as in SQL
            if None in key:
                continue
            for other_id, other in self._data[table].items():
                if other_id != record_id and tuple(other.get(f) for f in fields) == key:
                    raise UniqueViolation(f"{table}: duplicate {dict(zip(fields, key))}")

    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        """Only unique indexes matter here; they are enforced on save"""
        with self._lock:
            if unique and tuple(fields) not in self._unique.get(table, []):
                self._unique.setdefault(table, []).append(tuple(fields))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            record = json.loads(json.dumps(data, default=str))
            self._check_unique(table, record_id, record)
            self._remember(table, record_id)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                # Deep copy to prevent external mutation
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            for record_id in list(self._data.get(table, {})):
                self._remember(table, record_id)
            self._data[table] = {}

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Take the storage lock for the lifetime of the transaction"""
        if not self._lock.acquire(timeout=_lock_wait(timeout)):
            raise Timeout("Timed out waiting for in-memory storage lock")
        self._depth += 1

    def commit(self) -> None:
        """Drop the undo log and release the lock"""
        self._depth -= 1
        if self._depth == 0:
            self._undo.clear()
        self._lock.release()

    def rollback(self) -> None:
        """Put back every row the transaction touched and release the lock"""
        self._depth -= 1
        if self._depth == 0:
            for (table, record_id), previous in self._undo.items():
                rows = self._data.setdefault(table, {})
                if previous is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = previous
            self._undo.clear()
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        self._depth = 0
        self._tables = set()
        self._indexes: Dict[str, List[Tuple[Tuple[str, ...], bool]]] = {}

        try:
            # Set isolation_level to 'DEFERRED' to enable manual transaction control
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
            self._connection.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open SQLite database {self.db_path}: {e}")

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and translate driver errors into StorageUnavailable"""
        with self._lock:
            if self._connection is None:
                raise StorageUnavailable("SQLite storage is closed")
            try:
                yield self._connection
            except sqlite3.IntegrityError as e:
                raise UniqueViolation(str(e))
            except sqlite3.Error as e:
                raise StorageUnavailable(f"SQLite error: {e}")

    def _commit_unless_in_transaction(self, conn: sqlite3.Connection) -> None:
        if not self._in_transaction:
            conn.commit()

    def _ensure_table(self, conn: sqlite3.Connection, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        # Create index on timestamps for better query performance
        conn.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        for fields, unique in self._indexes.get(table, []):
            columns = ", ".join(f"json_extract(data, '$.{field}')" for field in fields)
            conn.execute(
                f"CREATE {'UNIQUE ' if unique else ''}INDEX IF NOT EXISTS "
                f"idx_{table}_{'_'.join(fields)} ON {table}({columns})"
            )
        self._commit_unless_in_transaction(conn)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard() as conn:
            self._ensure_table(conn, table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert on the primary key only, so unique indexes still reject duplicates
            conn.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

            self._commit_unless_in_transaction(conn)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._guard() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._guard() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        """Expression index over json_extract of each field"""
        for field in fields:
            if not _FIELD_NAME.match(field):
                raise ValueError(f"Invalid index field: {field}")
        with self._guard() as conn:
            definitions = self._indexes.setdefault(table, [])
            if (tuple(fields), unique) not in definitions:
                definitions.append((tuple(fields), unique))
            self._tables.discard(table)
            self._ensure_table(conn, table)

    def find_query(self, table: str, filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """SQL and parameters for find(); the expressions match create_index()"""
        clauses = []
        params: List[Any] = []
        for key, value in filters.items():
            if not _FIELD_NAME.match(key):
                raise ValueError(f"Invalid filter field: {key}")
            expression = f"json_extract(data, '$.{key}')"
            if value is None:
                clauses.append(f"{expression} IS NULL")
            else:
                clauses.append(f"{expression} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return f"SELECT data FROM {table}{where} ORDER BY created_at", params

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level fields equal the filters"""
        with self._guard() as conn:
            self._ensure_table(conn, table)
            sql, params = self.find_query(table, filters)
            cursor = conn.execute(sql, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._guard() as conn:
            self._ensure_table(conn, table)
            cursor = conn.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._guard() as conn:
            self._ensure_table(conn, table)
            conn.execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction(conn)

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Take the connection lock for the lifetime of the transaction"""
        if not self._lock.acquire(timeout=_lock_wait(timeout)):
            raise Timeout("Timed out waiting for SQLite storage lock")
        if self._connection is None:
            self._lock.release()
            raise StorageUnavailable("SQLite storage is closed")
        self._depth += 1
        # SQLite with isolation_level='DEFERRED' starts the transaction on the first write
        self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._in_transaction = False
                try:
                    self._connection.commit()
                except sqlite3.Error as e:
                    self._connection.rollback()
                    raise StorageUnavailable(f"SQLite commit failed: {e}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._in_transaction = False
                # Tables created inside the transaction are gone too
                self._tables.clear()
                if self._connection is not None:
                    self._connection.rollback()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config) -> StorageInterface:
    """Build the storage backend selected by configuration"""
    if config.storage_backend == "memory":
        return InMemoryStorage()
    if config.storage_backend == "sqlite":
        return SQLiteStorage(config.database_path)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
