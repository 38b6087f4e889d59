"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (single-writer persistence) and PostgreSQL (row locks and
advisory locks). Records are JSON documents keyed by id.

Every backend supports:
    - units of work via ``atomic()``; nested calls join the outer unit
    - unique indexes over record fields (a record with any None field is
      not indexed)
    - exclusive record leases via ``load_for_update`` and named locks via
      ``advisory_lock``, both held until the unit commits or rolls back
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple, Iterable
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import json
import threading

from .errors import StorageError, DuplicateKeyError, LockTimeoutError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp written by ``StorageRecord.to_dict``"""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat a naive datetime as UTC so it compares with stored timestamps"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, lock_timeout: Optional[float] = None):
        self.lock_timeout = lock_timeout
        self._unique_indexes: Dict[str, Dict[str, Tuple[str, ...]]] = {}
        self._local = threading.local()

    def register_unique_index(self, table: str, name: str, fields: Iterable[str]) -> None:
        """Declare that no two records in table share values for fields"""
        self._unique_indexes.setdefault(table, {})[name] = tuple(fields)

    @staticmethod
    def _index_key(data: Dict[str, Any], fields: Tuple[str, ...]) -> Optional[Tuple]:
        values = tuple(data.get(f) for f in fields)
        if any(v is None for v in values):
            return None
        return values

    @property
    def in_transaction(self) -> bool:
        """True while the calling thread is inside ``atomic()``"""
        return getattr(self._local, 'depth', 0) > 0

    def _require_transaction(self, operation: str) -> None:
        if not self.in_transaction:
            raise StorageError(f"{operation} requires an open unit of work")

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or update a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising DuplicateKeyError on any key collision"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record holding an exclusive lease until the unit ends"""
        pass

    @abstractmethod
    def advisory_lock(self, scope: str, key: str) -> None:
        """Acquire a named lock held until the unit ends"""
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
        """Find records whose fields equal the given values"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the unit of work and release its locks"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard the unit of work and release its locks"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        depth = getattr(self._local, 'depth', 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth = depth
            return

        self.begin_transaction()
        self._local.depth = 1
        try:
            yield
            self._local.depth = 0
            self.commit()
        except BaseException:
            # Interrupts and generator exits must release leases too
            self._local.depth = 0
            self.rollback()
            raise


class LockManager:
    """
    Keyed exclusive locks owned by units of work

    A key's lock exists only while some unit holds or waits for it, so the
    map stays bounded by the number of in-flight units.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[Tuple, List[Any]] = {}

    def acquire(self, key: Tuple, held: List[Tuple]) -> None:
        """Acquire key for the unit owning held; re-acquiring is a no-op"""
        if key in held:
            return
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        timeout = -1 if self.timeout is None else self.timeout
        if not entry[0].acquire(timeout=timeout):
            self._forget(key)
            raise LockTimeoutError(f"Timed out waiting for lock {key!r}")
        held.append(key)

    def release_all(self, held: List[Tuple]) -> None:
        while held:
            key = held.pop()
            self._locks[key][0].release()
            self._forget(key)

    def _forget(self, key: Tuple) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class _UnitOfWork:
    """Pending writes and held locks of one thread's unit of work"""

    def __init__(self):
        self.writes: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.inserts: set = set()
        self.held_locks: List[Tuple] = []


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes inside a unit of work are buffered per thread and applied on
    commit, so other threads never observe uncommitted state and rollback
    simply drops the buffer.
    """

    def __init__(self, lock_timeout: Optional[float] = None):
        super().__init__(lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._locks = LockManager(lock_timeout)

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _unit(self) -> Optional[_UnitOfWork]:
        return getattr(self._local, 'unit', None)

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's pending writes"""
        with self._lock:
            rows = dict(self._data.get(table, {}))
        unit = self._unit()
        if unit is not None and table in unit.writes:
            rows.update(unit.writes[table])
        return rows

    def _check_unique(self, table: str, record_id: str, record: Dict[str, Any],
                      rows: Dict[str, Dict[str, Any]]) -> None:
        for name, fields in self._unique_indexes.get(table, {}).items():
            key = self._index_key(record, fields)
            if key is None:
                continue
            for other_id, other in rows.items():
                if other_id != record_id and self._index_key(other, fields) == key:
                    raise DuplicateKeyError(table, name)

    def _write(self, table: str, record_id: str, record: Dict[str, Any], is_insert: bool) -> None:
        unit = self._unit()
        if unit is not None:
            unit.writes.setdefault(table, {})[record_id] = record
            if is_insert:
                unit.inserts.add((table, record_id))
            return
        with self._lock:
            self._data.setdefault(table, {})[record_id] = record

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = self._copy(data)
        with self._lock:
            self._check_unique(table, record_id, record, self._view(table))
            self._write(table, record_id, record, is_insert=False)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into memory"""
        record = self._copy(data)
        with self._lock:
            view = self._view(table)
            if record_id in view:
                raise DuplicateKeyError(table, "primary")
            self._check_unique(table, record_id, record, view)
            self._write(table, record_id, record, is_insert=True)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._view(table).get(record_id)
        if record is not None:
            return self._copy(record)
        return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Lease a record for the rest of the unit of work"""
        self._require_transaction("load_for_update")
        self._locks.acquire((table, record_id), self._unit().held_locks)
        return self.load(table, record_id)

    def advisory_lock(self, scope: str, key: str) -> None:
        """Acquire a named lock for the rest of the unit of work"""
        self._require_transaction("advisory_lock")
        self._locks.acquire(("advisory", scope, key), self._unit().held_locks)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [self._copy(record) for record in self._view(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        results = []
        for record in self._view(table).values():
            if all(record.get(key) == value for key, value in filters.items()):
                results.append(self._copy(record))
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._view(table))

    def begin_transaction(self) -> None:
        """Open a write buffer for the calling thread"""
        self._local.unit = _UnitOfWork()

    def commit(self) -> None:
        """Apply the buffered writes, then release locks"""
        unit = self._unit()
        if unit is None:
            return
        with self._lock:
            # Keys may have been taken by units that committed after our checks
            for table, writes in unit.writes.items():
                committed = self._data.get(table, {})
                merged = dict(committed)
                merged.update(writes)
                for record_id, record in writes.items():
                    if (table, record_id) in unit.inserts and record_id in committed:
                        raise DuplicateKeyError(table, "primary")
                    self._check_unique(table, record_id, record, merged)
            for table, writes in unit.writes.items():
                self._data.setdefault(table, {}).update(writes)
        self._local.unit = None
        self._locks.release_all(unit.held_locks)

    def rollback(self) -> None:
        """Drop the buffered writes and release locks"""
        unit = self._unit()
        self._local.unit = None
        if unit is not None:
            self._locks.release_all(unit.held_locks)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    SQLite allows a single writer, so a unit of work holds the connection
    exclusively from BEGIN IMMEDIATE to COMMIT/ROLLBACK. That serialization
    already covers record leases and named locks.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: Optional[float] = None):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue BEGIN/COMMIT themselves
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=lock_timeout if lock_timeout is not None else 5.0
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table and its unique indexes exist"""
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
        for name, fields in self._unique_indexes.get(table, {}).items():
            columns = ", ".join(f"json_extract(data, '$.{f}')" for f in fields)
            condition = " AND ".join(f"json_extract(data, '$.{f}') IS NOT NULL" for f in fields)
            self._connection.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{name}
                ON {table}({columns}) WHERE {condition}
            """)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(table, "unique", str(e)) from e

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
                raise DuplicateKeyError(table, "unique", str(e)) from e

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

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record; the open unit already excludes other writers"""
        self._require_transaction("load_for_update")
        return self.load(table, record_id)

    def advisory_lock(self, scope: str, key: str) -> None:
        """Named locks are subsumed by the unit's exclusive hold"""
        self._require_transaction("advisory_lock")

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if value is None:
                conditions.append("json_extract(data, ?) IS NULL")
                params.append(f"$.{key}")
            else:
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause}
                ORDER BY created_at, rowid
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

    def begin_transaction(self) -> None:
        """Take the connection and start an immediate write transaction"""
        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not self._lock.acquire(timeout=timeout):
            raise LockTimeoutError("Timed out waiting for the SQLite writer")
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            self._lock.release()
            raise LockTimeoutError(str(e)) from e

    def commit(self) -> None:
        """Commit current transaction"""
        self._connection.execute("COMMIT")
        self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            self._connection.execute("ROLLBACK")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with row-level and advisory locking"""

    def __init__(self, connection_string: str, lock_timeout: Optional[float] = None):
        super().__init__(lock_timeout)
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._lock = threading.RLock()
        self._connections: List[Any] = []
        self._tables: set = set()

    def _conn(self):
        """Connection owned by the calling thread"""
        conn = getattr(self._local, 'connection', None)
        if conn is None or conn.closed:
            conn = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            conn.autocommit = False  # We handle transactions manually
            self._local.connection = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _cursor(self):
        conn = self._conn()
        cursor = conn.cursor()
        try:
            yield cursor
            if not self.in_transaction:
                conn.commit()
        except Exception:
            if not self.in_transaction:
                conn.rollback()
            raise
        finally:
            cursor.close()

    def register_unique_index(self, table: str, name: str, fields: Iterable[str]) -> None:
        super().register_unique_index(table, name, fields)
        with self._lock:
            self._tables.discard(table)

    def _ensure_table(self, table: str) -> None:
        """Create table and indexes once, outside any unit of work"""
        if table in self._tables:
            return
        with self._lock:
            if table in self._tables:
                return
            conn = self.psycopg2.connect(self.connection_string)
            conn.autocommit = True
            try:
                cursor = conn.cursor()
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        created_at TIMESTAMPTZ DEFAULT NOW(),
                        updated_at TIMESTAMPTZ DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                    ON {table}(created_at)
                """)
                for name, fields in self._unique_indexes.get(table, {}).items():
                    columns = ", ".join(f"(data->>'{f}')" for f in fields)
                    condition = " AND ".join(f"(data->>'{f}') IS NOT NULL" for f in fields)
                    cursor.execute(f"""
                        CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{name}
                        ON {table} ({columns}) WHERE {condition}
                    """)
                cursor.close()
            finally:
                conn.close()
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), now, now))
            except self.psycopg2.IntegrityError as e:
                raise DuplicateKeyError(table, e.diag.constraint_name or "unique", str(e)) from e

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; a key collision leaves the unit usable"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute("SAVEPOINT scrooge_insert")
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                """, (record_id, json.dumps(data, default=str), now, now))
            except self.psycopg2.IntegrityError as e:
                cursor.execute("ROLLBACK TO SAVEPOINT scrooge_insert")
                raise DuplicateKeyError(table, e.diag.constraint_name or "unique", str(e)) from e
            cursor.execute("RELEASE SAVEPOINT scrooge_insert")

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"""
                SELECT data FROM {table} WHERE id = %s
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record with SELECT ... FOR UPDATE"""
        self._require_transaction("load_for_update")
        self._ensure_table(table)
        with self._cursor() as cursor:
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE id = %s FOR UPDATE
                """, (record_id,))
            except self.psycopg2.errors.LockNotAvailable as e:
                raise LockTimeoutError(f"Timed out leasing {table}:{record_id}") from e
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def advisory_lock(self, scope: str, key: str) -> None:
        """Take a transaction-scoped advisory lock on (scope, key)"""
        self._require_transaction("advisory_lock")
        with self._cursor() as cursor:
            try:
                cursor.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s), hashtext(%s))",
                    (scope, key)
                )
            except self.psycopg2.errors.LockNotAvailable as e:
                raise LockTimeoutError(f"Timed out waiting for lock {scope}:{key}") from e

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"""
                SELECT 1 FROM {table} WHERE id = %s LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        self._ensure_table(table)
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if value is None:
                conditions.append("data ->> %s IS NULL")
                params.append(key)
            else:
                conditions.append("data ->> %s = %s")
                params.extend([key, str(value)])
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self._cursor() as cursor:
            cursor.execute(f"""
                SELECT data FROM {table} {where_clause}
                ORDER BY created_at, id
            """, params)
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Start a transaction on this thread's connection"""
        conn = self._conn()
        if self.lock_timeout is not None:
            cursor = conn.cursor()
            try:
                cursor.execute(f"SET LOCAL lock_timeout = '{int(self.lock_timeout * 1000)}ms'")
            finally:
                cursor.close()

    def commit(self) -> None:
        """Commit current transaction"""
        self._conn().commit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        self._conn().rollback()

    def close(self) -> None:
        """Close all PostgreSQL connections"""
        with self._lock:
            for conn in self._connections:
                if not conn.closed:
                    conn.close()
            self._connections = []


def create_storage(database_url: str = "memory://", lock_timeout: Optional[float] = None) -> StorageInterface:
    """
    Factory function to create a storage backend from a URL

    Args:
        database_url: memory://, sqlite:///path/to.db, sqlite://:memory: or postgresql://...
        lock_timeout: Seconds to wait for leases and named locks (None waits forever)

    Returns:
        Storage backend instance
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
