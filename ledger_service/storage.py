"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (single-node persistence) and PostgreSQL (shared durable store).
All monetary values stored as Decimal strings.

Atomic units nest and serialise on a per-handle re-entrant lock; only the
outermost unit commits or rolls back. PostgreSQL also takes row locks so that
separate processes sharing the database cannot interleave a read-modify-write.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Any, Tuple, Type, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StoreFailure


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
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    # Backend exceptions translated into StoreFailure
    backend_errors: Tuple[Type[BaseException], ...] = ()

    def __init__(self, lock_timeout: Optional[float] = None):
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._depth = 0
        self._in_transaction = False

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
        """Load all records from a table in insertion order"""
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

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def lock_records(self, table: str, record_ids: Iterable[str]) -> None:
        """
        Lock records for the rest of the current atomic unit.

        The handle lock held by atomic() already excludes every other writer
        on this handle, so the default is a no-op. Backends shared between
        processes override this with row-level locks taken in sorted id order.
        """
        if self._depth == 0:
            raise RuntimeError("lock_records() must be called inside atomic()")

    def _acquire(self) -> None:
        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not self._lock.acquire(timeout=timeout):
            raise StoreFailure(
                f"Timed out after {self.lock_timeout}s waiting for storage lock",
                {"lock_timeout_seconds": self.lock_timeout}
            )

    def _on_backend_error(self) -> None:
        """Hook run after a backend error outside a transaction"""
        pass

    @contextmanager
    def _guard(self, operation: str):
        """Translate backend exceptions into StoreFailure"""
        try:
            yield
        except StoreFailure:
            raise
        except self.backend_errors as e:
            if not self._in_transaction:
                self._on_backend_error()
            raise StoreFailure(f"Storage {operation} failed: {e}") from e

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Nested calls join the outermost unit. Any exception rolls the whole
        unit back; the handle lock is always released on exit.
        """
        self._acquire()
        self._depth += 1
        outermost = self._depth == 1
        try:
            if outermost:
                self.begin_transaction()
            try:
                yield self
            except BaseException:
                if outermost:
                    self.rollback()
                raise
            if outermost:
                try:
                    self.commit()
                except BaseException:
                    self.rollback()
                    raise
        finally:
            self._depth -= 1
            self._lock.release()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: Optional[float] = None):
        super().__init__(lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        # Previous value per (table, id) written in the current unit; None means absent
        self._undo: Optional[Dict[str, Dict[str, Optional[Dict[str, Any]]]]] = None
        self._orders: Dict[str, List[str]] = {}

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
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
                if all(key in record and record[key] == value for key, value in filters.items()):
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
            self._ensure_table(table)
            if self._undo is not None and table not in self._orders:
                touched = self._undo.get(table, {})
                self._orders[table] = [
                    record_id for record_id in self._data[table]
                    if record_id not in touched or touched[record_id] is not None
                ]
            for record_id in self._data[table]:
                self._remember(table, record_id)
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        """Keep the value a record had before the current unit first wrote it"""
        if self._undo is None:
            return
        touched = self._undo.setdefault(table, {})
        if record_id not in touched:
            # Stored records are replaced on save, never mutated, so a reference is enough
            touched[record_id] = self._data[table].get(record_id)

    def begin_transaction(self) -> None:
        """Start an undo log for the records this unit writes"""
        with self._lock:
            self._undo = {}
            self._orders = {}
            self._in_transaction = True

    def commit(self) -> None:
        """Discard the undo log"""
        with self._lock:
            self._undo = None
            self._orders = {}
            self._in_transaction = False

    def rollback(self) -> None:
        """Restore every record written since begin"""
        with self._lock:
            for table, touched in (self._undo or {}).items():
                rows = self._data.setdefault(table, {})
                for record_id, previous in touched.items():
                    if previous is None:
                        rows.pop(record_id, None)
                    else:
                        rows[record_id] = previous
                # Records brought back after a clear keep their original order
                if table in self._orders:
                    self._data[table] = {record_id: rows[record_id] for record_id in self._orders[table]}
            self._undo = None
            self._orders = {}
            self._in_transaction = False

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    backend_errors = (sqlite3.Error,)

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: Optional[float] = None):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        self._tables: set = set()
        # isolation_level='DEFERRED' lets sqlite3 open transactions on first write
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level='DEFERRED',
            timeout=lock_timeout if lock_timeout is not None else 5.0
        )
        self._connection.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock, self._guard("open"):
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = FULL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
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
        if not self._in_transaction:
            self._connection.commit()
            self._tables.add(table)

    def _maybe_commit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._guard("save"):
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # UPSERT keeps rowid stable, so rowid order is insertion order
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._guard("load"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, self._guard("load_all"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._guard("exists"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, self._guard("count"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._guard("clear_table"):
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock, self._guard("begin"):
            if not self._in_transaction:
                self._connection.execute("BEGIN IMMEDIATE")
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock, self._guard("commit"):
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock, self._guard("rollback"):
            if self._in_transaction:
                self._in_transaction = False
                self._connection.rollback()

    def _on_backend_error(self) -> None:
        if self._connection is not None and self._connection.in_transaction:
            self._connection.rollback()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str, lock_timeout: Optional[float] = None):
        super().__init__(lock_timeout)
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.backend_errors = (psycopg2.Error,)
        self.connection_string = connection_string
        self._connection = None
        self._tables: set = set()
        with self._guard("connect"):
            self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    @contextmanager
    def _cursor(self, operation: str):
        with self._lock, self._guard(operation):
            cursor = self._connection.cursor()
            try:
                yield cursor
            finally:
                cursor.close()

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._cursor("create_table") as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    seq BIGSERIAL,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            self._maybe_commit()
        if not self._in_transaction:
            # DDL inside a transaction may still be rolled back
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        data_json = json.dumps(data, default=str)

        with self._cursor("save") as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, data_json, now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        self._ensure_table(table)
        with self._cursor("load") as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            self._maybe_commit()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        with self._cursor("load_all") as cursor:
            cursor.execute(f"SELECT data FROM {table} ORDER BY seq")
            rows = cursor.fetchall()
            self._maybe_commit()
            return [dict(row['data']) for row in rows]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        with self._cursor("exists") as cursor:
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            found = cursor.fetchone() is not None
            self._maybe_commit()
            return found

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        self._ensure_table(table)
        with self._cursor("find") as cursor:
            if not filters:
                cursor.execute(f"SELECT data FROM {table} ORDER BY seq")
            else:
                conditions = []
                params = []
                for key, value in filters.items():
                    conditions.append("data ->> %s = %s")
                    params.extend([key, str(value)])

                where_clause = " AND ".join(conditions)
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE {where_clause}
                    ORDER BY seq
                """, params)
            rows = cursor.fetchall()
            self._maybe_commit()
            return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        with self._cursor("count") as cursor:
            cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
            total = cursor.fetchone()['count']
            self._maybe_commit()
            return total

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        self._ensure_table(table)
        with self._cursor("clear_table") as cursor:
            cursor.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def lock_records(self, table: str, record_ids: Iterable[str]) -> None:
        """Take row locks in sorted id order so concurrent lockers cannot deadlock"""
        super().lock_records(table, record_ids)
        self._ensure_table(table)
        with self._cursor("lock_records") as cursor:
            for record_id in sorted(set(record_ids)):
                cursor.execute(f"SELECT id FROM {table} WHERE id = %s FOR UPDATE", (record_id,))

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # PostgreSQL transactions start automatically
                self._in_transaction = True
                if self.lock_timeout is not None:
                    with self._cursor("begin") as cursor:
                        cursor.execute("SET LOCAL lock_timeout = %s", (f"{int(self.lock_timeout * 1000)}ms",))

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock, self._guard("commit"):
            if self._in_transaction:
                self._in_transaction = False
                self._connection.commit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock, self._guard("rollback"):
            if self._in_transaction:
                self._in_transaction = False
                self._connection.rollback()

    def _on_backend_error(self) -> None:
        if self._connection is not None and not self._connection.closed:
            self._connection.rollback()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, lock_timeout: Optional[float] = None) -> StorageInterface:
    """
    Select a storage backend from a database URL.

    ``:memory:`` or ``memory://`` gives InMemoryStorage, ``sqlite:///path``
    gives SQLiteStorage and ``postgresql://...`` gives PostgreSQLStorage.
    """
    if database_url in (":memory:", "memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=lock_timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] or ":memory:"
        return SQLiteStorage(path, lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
