"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (persistence) and PostgreSQL. Every backend offers an
atomic unit of work: writes made inside ``atomic()`` become visible together
at commit or not at all. Records are only ever added with ``insert`` or
changed with the conditional ``save_if_version``, so balance changes are
compare-and-swap operations rather than blind overwrites.

Units nest. A nested unit that fails marks the enclosing unit rollback-only:
the outermost commit then discards everything and raises StorageError, even
if the caller caught the nested failure.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


class StorageError(Exception):
    """Base class for storage backend failures"""


class ConcurrencyConflictError(StorageError):
    """Raised when a conditional write finds a different record version"""


class DuplicateRecordError(StorageError):
    """Raised when inserting a record whose id already exists"""


ROLLBACK_ONLY_MESSAGE = "Transaction rolled back: a nested unit of work failed"


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
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
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

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising DuplicateRecordError if the id exists"""
        pass

    @abstractmethod
    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        """
        Overwrite a record only if its stored ``version`` equals
        ``expected_version``, raising ConcurrencyConflictError otherwise
        """
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
    def count(self, table: str) -> int:
        """Count records in table"""
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


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Writes inside a transaction are staged per thread and validated at
    commit under the storage lock: conditional writes must still see their
    expected version and inserts must still be unique, otherwise nothing
    from the unit is applied. Reads inside a transaction see the thread's
    own staged writes on top of committed data.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @staticmethod
    def _copy(data: Any) -> Any:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    @property
    def _pending(self) -> Optional[List[Tuple]]:
        return getattr(self._local, 'pending', None)

    @property
    def in_transaction(self) -> bool:
        return self._pending is not None

    @staticmethod
    def _apply(tables: Dict[str, Dict[str, Dict[str, Any]]], op: Tuple) -> None:
        """Apply a single write operation to ``tables``, checking its precondition"""
        kind, table, record_id, data, expected_version = op
        rows = tables.setdefault(table, {})

        if kind == 'insert':
            if record_id in rows:
                raise DuplicateRecordError(f"{table}:{record_id} already exists")
        else:
            current = rows.get(record_id)
            if current is None or current.get('version') != expected_version:
                raise ConcurrencyConflictError(
                    f"{table}:{record_id} changed (expected version {expected_version})"
                )
        rows[record_id] = data

    def _table_view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows of ``table`` with this thread's staged writes applied"""
        with self._lock:
            view = dict(self._data.get(table, {}))
        for _, op_table, record_id, data, _ in self._pending or ():
            if op_table == table:
                view[record_id] = data
        return view

    def _write(self, op: Tuple) -> None:
        if not self.in_transaction:
            with self._lock:
                self._apply(self._data, op)
            return

        # Check the precondition against this unit's view so that errors
        # surface at the call site; commit re-validates against fresh data
        table = op[1]
        self._apply({table: self._table_view(table)}, op)
        self._pending.append(op)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into memory"""
        self._write(('insert', table, record_id, self._copy(data), None))

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        """Conditionally overwrite a record in memory"""
        self._write(('cas', table, record_id, self._copy(data), expected_version))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._table_view(table).get(record_id)
        if record:
            return self._copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [self._copy(record) for record in self._table_view(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._table_view(table)

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._table_view(table))

    def begin_transaction(self) -> None:
        """Start staging writes for the current thread"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            self._local.pending = []
            self._local.rollback_only = False
        self._local.depth = depth + 1

    def commit(self) -> None:
        """Validate and apply staged writes as one unit"""
        pending = self._pending
        if pending is None:
            return

        self._local.depth -= 1
        if self._local.depth > 0:
            return
        self._local.pending = None
        if self._local.rollback_only:
            raise StorageError(ROLLBACK_ONLY_MESSAGE)

        with self._lock:
            touched = {op[1] for op in pending}
            working = {table: dict(self._data.get(table, {})) for table in touched}
            for op in pending:
                self._apply(working, op)
            self._data.update(working)

    def rollback(self) -> None:
        """Discard staged writes, or mark the enclosing unit rollback-only"""
        if self._pending is None:
            return

        self._local.depth -= 1
        if self._local.depth > 0:
            self._local.rollback_only = True
            return
        self._local.pending = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    A unit of work runs as a ``BEGIN IMMEDIATE`` transaction and owns the
    connection lock until it commits or rolls back, so other threads queue
    behind it the same way a second SQLite writer would.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into SQLite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(f"{table}:{record_id} already exists") from e

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        """Conditionally overwrite a record in SQLite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND json_extract(data, '$.version') = ?
            """, (json.dumps(data, default=str), now, record_id, expected_version))
            if cursor.rowcount == 0:
                raise ConcurrencyConflictError(
                    f"{table}:{record_id} changed (expected version {expected_version})"
                )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
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
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def _abort(self) -> None:
        self._rollback_only = False
        # DDL issued inside the unit is rolled back too
        self._tables.clear()
        self._connection.execute("ROLLBACK")

    def begin_transaction(self) -> None:
        """Start a database transaction and hold the connection until it ends"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                self._lock.release()
                raise StorageError(f"Could not begin transaction: {e}") from e
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        self._depth -= 1
        try:
            if self._depth > 0:
                return
            if self._rollback_only:
                self._abort()
                raise StorageError(ROLLBACK_ONLY_MESSAGE)
            try:
                self._connection.execute("COMMIT")
            except sqlite3.Error as e:
                self._abort()
                raise StorageError(f"Commit failed: {e}") from e
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction, or mark the enclosing unit rollback-only"""
        if self._depth == 0:
            return
        self._depth -= 1
        try:
            if self._depth > 0:
                self._rollback_only = True
            else:
                self._abort()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support.

    Connections come from a thread-safe pool. A unit of work checks out one
    connection for the current thread and keeps it until commit or
    rollback; statements outside a unit borrow a connection for a single
    autocommitted statement. Concurrent units are isolated by PostgreSQL's
    row locks and the version check in ``save_if_version``.
    """

    def __init__(self, connection_string: str, min_connections: int = 1,
                 max_connections: int = 20):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            min_connections,
            max_connections,
            connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._local = threading.local()
        self._schema_lock = threading.Lock()
        self._tables = set()

    def _checkout(self):
        connection = self._pool.getconn()
        # Statements autocommit; units of work issue BEGIN explicitly
        connection.autocommit = True
        return connection

    def _release(self, connection) -> None:
        self._pool.putconn(connection, close=bool(connection.closed))

    @property
    def _unit_connection(self):
        return getattr(self._local, 'connection', None)

    @contextmanager
    def _cursor(self):
        """Cursor on the thread's unit connection, or on a borrowed one"""
        connection = self._unit_connection
        borrowed = connection is None
        if borrowed:
            connection = self._checkout()
        try:
            with connection.cursor() as cursor:
                yield cursor
        finally:
            if borrowed:
                self._release(connection)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._schema_lock:
            if table in self._tables:
                return
            # DDL runs on its own autocommitted connection so a unit's
            # rollback never drops a table other threads rely on
            connection = self._checkout()
            try:
                with connection.cursor() as cursor:
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
            finally:
                self._release(connection)
            self._tables.add(table)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into PostgreSQL"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                """, (record_id, json.dumps(data, default=str), now, now))
            except self.psycopg2.IntegrityError as e:
                raise DuplicateRecordError(f"{table}:{record_id} already exists") from e

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        """Conditionally overwrite a record in PostgreSQL"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute(f"""
                UPDATE {table} SET data = %s, updated_at = %s
                WHERE id = %s AND (data ->> 'version')::bigint = %s
            """, (json.dumps(data, default=str), now, record_id, expected_version))
            if cursor.rowcount == 0:
                raise ConcurrencyConflictError(
                    f"{table}:{record_id} changed (expected version {expected_version})"
                )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} ORDER BY seq")
            return [dict(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Check out a connection for this thread and start a transaction on it"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            connection = self._checkout()
            try:
                with connection.cursor() as cursor:
                    cursor.execute("BEGIN ISOLATION LEVEL READ COMMITTED")
            except self.psycopg2.Error as e:
                self._release(connection)
                raise StorageError(f"Could not begin transaction: {e}") from e
            self._local.connection = connection
            self._local.rollback_only = False
        self._local.depth = depth + 1

    def _finish(self, statement: str) -> None:
        connection = self._local.connection
        self._local.connection = None
        try:
            with connection.cursor() as cursor:
                cursor.execute(statement)
        finally:
            self._release(connection)

    def commit(self) -> None:
        """Commit current transaction"""
        if self._unit_connection is None:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            return
        if self._local.rollback_only:
            self._finish("ROLLBACK")
            raise StorageError(ROLLBACK_ONLY_MESSAGE)
        try:
            self._finish("COMMIT")
        except self.psycopg2.Error as e:
            raise StorageError(f"Commit failed: {e}") from e

    def rollback(self) -> None:
        """Rollback current transaction, or mark the enclosing unit rollback-only"""
        if self._unit_connection is None:
            return
        self._local.depth -= 1
        if self._local.depth > 0:
            self._local.rollback_only = True
            return
        self._finish("ROLLBACK")

    def close(self) -> None:
        """Close all pooled PostgreSQL connections"""
        self._pool.closeall()


def create_storage(storage_type: str = "memory", database_url: Optional[str] = None,
                   pool_size: int = 20) -> StorageInterface:
    """Factory function to create storage instances from configuration values"""
    storage_type = storage_type.lower()
    if storage_type == "postgresql":
        if not database_url:
            raise ValueError("database_url is required for PostgreSQL storage")
        return PostgreSQLStorage(database_url, max_connections=pool_size)
    if storage_type == "sqlite":
        return SQLiteStorage(database_url or ":memory:")
    if storage_type == "memory":
        return InMemoryStorage()
    raise ValueError(f"Unknown storage type: {storage_type}")
