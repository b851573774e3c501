"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (persistence) and PostgreSQL (production). All monetary
values are stored as Decimal strings.

Every backend offers a unit of work (``atomic()``) that is nestable through
savepoints, row locks held until the outermost unit of work ends, and
atomic named counters used for business sequence numbers.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Callable, TypeVar
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import time
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .config import get_config
from .errors import ConcurrencyConflict, ServiceUnavailable
from .logging_config import get_logger, log_action


logger = get_logger("minibank.storage")

T = TypeVar("T")

COUNTER_TABLE = "sequence_counters"


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
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, lock_timeout: Optional[float] = None,
                 max_retry_attempts: Optional[int] = None,
                 retry_backoff: Optional[float] = None):
        cfg = get_config()
        self.lock_timeout = cfg.lock_timeout_seconds if lock_timeout is None else lock_timeout
        self.max_retry_attempts = cfg.max_retry_attempts if max_retry_attempts is None else max_retry_attempts
        self.retry_backoff = cfg.retry_backoff_seconds if retry_backoff is None else retry_backoff

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
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
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

    # Unit of work

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a unit of work, or a savepoint when one is already open"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the innermost unit of work"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the innermost unit of work"""
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """True when the calling thread has an open unit of work"""
        pass

    @abstractmethod
    def lock_record(self, table: str, record_id: str) -> None:
        """
        Acquire an exclusive lock on a row until the outermost unit of work ends.

        Raises:
            RuntimeError: If called outside a unit of work
            ConcurrencyConflict: If the lock cannot be acquired in time
        """
        pass

    # Counters

    @abstractmethod
    def increment_counter(self, name: str, prefix: str = "") -> int:
        """Atomically increment a named counter and return the new value"""
        pass

    @abstractmethod
    def get_counter(self, name: str) -> int:
        """Current value of a named counter (0 when unknown)"""
        pass

    @abstractmethod
    def set_counter(self, name: str, value: int, prefix: str = "") -> None:
        """Set a named counter to an explicit value"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        # A failed commit cleans up after itself
        self.commit()

    def run_in_transaction(self, operation: Callable[[], T],
                           max_attempts: Optional[int] = None) -> T:
        """
        Run ``operation`` inside a unit of work, retrying on ConcurrencyConflict.

        Retries only happen at the outermost level; a nested call joins the
        caller's unit of work and lets conflicts propagate.

        Raises:
            ServiceUnavailable: If every attempt hit a concurrency conflict
        """
        if self.in_transaction:
            with self.atomic():
                return operation()

        attempts = max_attempts or self.max_retry_attempts
        last_error: Optional[ConcurrencyConflict] = None
        for attempt in range(1, attempts + 1):
            try:
                with self.atomic():
                    return operation()
            except ConcurrencyConflict as e:
                last_error = e
                log_action(logger, "warning", "Concurrency conflict, retrying unit of work",
                           action="retry_transaction",
                           extra={"attempt": attempt, "max_attempts": attempts, "error": str(e)})
                if attempt < attempts:
                    time.sleep(self.retry_backoff * attempt)

        raise ServiceUnavailable(
            f"Operation failed after {attempts} attempts: {last_error}"
        ) from last_error


class _UnitOfWork:
    """Per-thread unit-of-work bookkeeping for InMemoryStorage"""

    def __init__(self):
        self.depth = 0
        self.undo: List[tuple] = []
        self.savepoints: List[int] = []
        self.held_locks: List[tuple] = []


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Writes made inside a unit of work are recorded in an undo log and reverted
    on rollback. Row locks are plain locks keyed by (table, id) and are held
    until the outermost unit of work of the owning thread ends. Counters are
    updated under their own lock and are not part of the undo log, so a
    rollback can leave gaps in a sequence.
    """

    def __init__(self, lock_timeout: Optional[float] = None,
                 max_retry_attempts: Optional[int] = None,
                 retry_backoff: Optional[float] = None):
        super().__init__(lock_timeout, max_retry_attempts, retry_backoff)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._row_locks: Dict[tuple, list] = {}
        self._counters: Dict[str, Dict[str, Any]] = {}
        self._counter_lock = threading.Lock()
        self._local = threading.local()

    def _uow(self) -> _UnitOfWork:
        uow = getattr(self._local, 'uow', None)
        if uow is None:
            uow = _UnitOfWork()
            self._local.uow = uow
        return uow

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        """Record the prior version of a row in the undo log"""
        uow = self._uow()
        if uow.depth == 0:
            return
        previous = self._data[table].get(record_id)
        if previous is not None:
            previous = json.loads(json.dumps(previous))
        uow.undo.append((table, record_id, previous))

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

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._remember(table, record_id)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._uow().depth > 0

    def begin_transaction(self) -> None:
        uow = self._uow()
        if uow.depth > 0:
            uow.savepoints.append(len(uow.undo))
        uow.depth += 1

    def commit(self) -> None:
        uow = self._uow()
        if uow.depth == 0:
            raise RuntimeError("No unit of work to commit")
        uow.depth -= 1
        if uow.depth > 0:
            # Releasing a savepoint keeps its undo entries for the outer level
            uow.savepoints.pop()
            return
        uow.undo.clear()
        self._release_locks(uow)

    def rollback(self) -> None:
        uow = self._uow()
        if uow.depth == 0:
            raise RuntimeError("No unit of work to roll back")
        mark = uow.savepoints.pop() if uow.depth > 1 else 0
        with self._lock:
            while len(uow.undo) > mark:
                table, record_id, previous = uow.undo.pop()
                if previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
        uow.depth -= 1
        if uow.depth == 0:
            self._release_locks(uow)

    def lock_record(self, table: str, record_id: str) -> None:
        uow = self._uow()
        if uow.depth == 0:
            raise RuntimeError("lock_record requires an open unit of work")
        key = (table, record_id)
        if key in uow.held_locks:
            return
        # Entries are [lock, holders and waiters]; dropped when unused
        with self._lock:
            entry = self._row_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        if not entry[0].acquire(timeout=self.lock_timeout):
            self._drop_row_lock_user(key, entry)
            raise ConcurrencyConflict(f"Timed out waiting for lock on {table}/{record_id}")
        uow.held_locks.append(key)

    def _drop_row_lock_user(self, key: tuple, entry: list) -> None:
        with self._lock:
            entry[1] -= 1
            if entry[1] == 0:
                del self._row_locks[key]

    def _release_locks(self, uow: _UnitOfWork) -> None:
        while uow.held_locks:
            key = uow.held_locks.pop()
            entry = self._row_locks[key]
            entry[0].release()
            self._drop_row_lock_user(key, entry)

    def increment_counter(self, name: str, prefix: str = "") -> int:
        with self._counter_lock:
            counter = self._counters.setdefault(name, {"name": name, "prefix": prefix, "last_value": 0})
            counter["last_value"] += 1
            return counter["last_value"]

    def get_counter(self, name: str) -> int:
        with self._counter_lock:
            counter = self._counters.get(name)
            return counter["last_value"] if counter else 0

    def set_counter(self, name: str, value: int, prefix: str = "") -> None:
        with self._counter_lock:
            self._counters[name] = {"name": name, "prefix": prefix, "last_value": value}


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    A unit of work holds the connection lock for its whole duration and runs
    inside ``BEGIN IMMEDIATE``, so it owns the database write lock; nested
    levels use savepoints. Row locks are therefore implied by the unit of work.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:",
                 lock_timeout: Optional[float] = None,
                 max_retry_attempts: Optional[int] = None,
                 retry_backoff: Optional[float] = None,
                 echo: bool = False):
        super().__init__(lock_timeout, max_retry_attempts, retry_backoff)
        self.db_path = str(db_path)
        # Autocommit mode: transactions are issued explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None,
            timeout=self.lock_timeout
        )
        self._connection.row_factory = sqlite3.Row
        if echo:
            self._connection.set_trace_callback(lambda sql: logger.debug(sql))
        self._lock = threading.RLock()
        self._depth = 0
        self._owner: Optional[int] = None

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {COUNTER_TABLE} (
                name TEXT PRIMARY KEY,
                prefix TEXT NOT NULL,
                last_value INTEGER NOT NULL
            )
        """)

    def _execute(self, sql: str, params: tuple = ()):
        """Execute a statement, mapping lock errors to ConcurrencyConflict"""
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise ConcurrencyConflict(f"SQLite lock conflict: {e}") from e
            raise

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0 and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflict("Timed out waiting for the SQLite connection")
        try:
            if self._depth == 0:
                self._execute("BEGIN IMMEDIATE")
                self._owner = threading.get_ident()
            else:
                self._execute(f"SAVEPOINT sp_{self._depth}")
        except BaseException:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        with self._lock:
            if not self.in_transaction:
                raise RuntimeError("No unit of work to commit")
            self._depth -= 1
            try:
                if self._depth == 0:
                    self._owner = None
                    try:
                        self._execute("COMMIT")
                    except BaseException:
                        if self._connection.in_transaction:
                            self._connection.execute("ROLLBACK")
                        raise
                else:
                    self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            finally:
                self._lock.release()

    def rollback(self) -> None:
        with self._lock:
            if not self.in_transaction:
                raise RuntimeError("No unit of work to roll back")
            self._depth -= 1
            try:
                if self._depth == 0:
                    self._owner = None
                    if self._connection.in_transaction:
                        self._connection.execute("ROLLBACK")
                else:
                    self._execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                    self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            finally:
                self._lock.release()

    def lock_record(self, table: str, record_id: str) -> None:
        if not self.in_transaction:
            raise RuntimeError("lock_record requires an open unit of work")
        # BEGIN IMMEDIATE already holds the database write lock

    def increment_counter(self, name: str, prefix: str = "") -> int:
        with self._lock:
            row = self._execute(f"""
                INSERT INTO {COUNTER_TABLE} (name, prefix, last_value)
                VALUES (?, ?, 1)
                ON CONFLICT(name) DO UPDATE SET last_value = last_value + 1
                RETURNING last_value
            """, (name, prefix)).fetchone()
            return row['last_value']

    def get_counter(self, name: str) -> int:
        with self._lock:
            row = self._execute(
                f"SELECT last_value FROM {COUNTER_TABLE} WHERE name = ?", (name,)
            ).fetchone()
            return row['last_value'] if row else 0

    def set_counter(self, name: str, value: int, prefix: str = "") -> None:
        with self._lock:
            self._execute(f"""
                INSERT INTO {COUNTER_TABLE} (name, prefix, last_value)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET last_value = excluded.last_value
            """, (name, prefix, value))

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


# PostgreSQL error codes treated as transient conflicts
_PG_CONFLICT_CODES = {
    "55P03",  # lock_not_available
    "40P01",  # deadlock_detected
    "40001",  # serialization_failure
}


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support.

    Row locks are transaction-scoped advisory locks bounded by ``lock_timeout``.
    """

    def __init__(self, connection_string: str,
                 lock_timeout: Optional[float] = None,
                 max_retry_attempts: Optional[int] = None,
                 retry_backoff: Optional[float] = None):
        super().__init__(lock_timeout, max_retry_attempts, retry_backoff)
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._owner: Optional[int] = None
        self._known_tables = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {COUNTER_TABLE} (
                    name TEXT PRIMARY KEY,
                    prefix TEXT NOT NULL,
                    last_value BIGINT NOT NULL
                )
            """)
            self._connection.commit()

    def _execute(self, sql: str, params: Optional[Union[tuple, list]] = None,
                 fetch: Optional[str] = None):
        """Execute a statement, mapping lock errors to ConcurrencyConflict"""
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            if fetch == "one":
                return cursor.fetchone()
            if fetch == "all":
                return cursor.fetchall()
            return cursor.rowcount
        except self.psycopg2.Error as e:
            if self._depth == 0:
                self._connection.rollback()
            if getattr(e, "pgcode", None) in _PG_CONFLICT_CODES:
                raise ConcurrencyConflict(f"PostgreSQL lock conflict: {e.pgerror or e}") from e
            raise
        finally:
            cursor.close()

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        self._autocommit()
        if self._depth == 0:
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)
            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, data_json, now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,), fetch="one")
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            rows = self._execute(f"SELECT data FROM {table} ORDER BY created_at", fetch="all")
            return [dict(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            rowcount = self._execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            self._autocommit()
            return rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,), fetch="one")
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)

            conditions = []
            params = []
            for key, value in filters.items():
                conditions.append("data ->> %s = %s")
                params.extend([key, value if isinstance(value, str) else json.dumps(value)])

            where_clause = " AND ".join(conditions)
            rows = self._execute(f"""
                SELECT data FROM {table}
                WHERE {where_clause}
                ORDER BY created_at
            """, params, fetch="all")
            return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return self._execute(f"SELECT COUNT(*) AS count FROM {table}", fetch="one")['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")
            self._autocommit()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0 and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyConflict("Timed out waiting for the PostgreSQL connection")
        try:
            if self._depth == 0:
                # psycopg2 opens the transaction implicitly on first statement
                self._execute("SET LOCAL lock_timeout = %s", (f"{int(self.lock_timeout * 1000)}ms",))
                self._owner = threading.get_ident()
            else:
                self._execute(f"SAVEPOINT sp_{self._depth}")
        except BaseException:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        with self._lock:
            if not self.in_transaction:
                raise RuntimeError("No unit of work to commit")
            self._depth -= 1
            try:
                if self._depth == 0:
                    self._owner = None
                    try:
                        self._connection.commit()
                    except self.psycopg2.Error as e:
                        self._connection.rollback()
                        if getattr(e, "pgcode", None) in _PG_CONFLICT_CODES:
                            raise ConcurrencyConflict(f"PostgreSQL commit conflict: {e}") from e
                        raise
                else:
                    self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            finally:
                self._lock.release()

    def rollback(self) -> None:
        with self._lock:
            if not self.in_transaction:
                raise RuntimeError("No unit of work to roll back")
            self._depth -= 1
            try:
                if self._depth == 0:
                    self._owner = None
                    self._connection.rollback()
                else:
                    self._execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
            finally:
                self._lock.release()

    def lock_record(self, table: str, record_id: str) -> None:
        if not self.in_transaction:
            raise RuntimeError("lock_record requires an open unit of work")
        self._execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"{table}:{record_id}",))

    def increment_counter(self, name: str, prefix: str = "") -> int:
        with self._lock:
            row = self._execute(f"""
                INSERT INTO {COUNTER_TABLE} (name, prefix, last_value)
                VALUES (%s, %s, 1)
                ON CONFLICT (name) DO UPDATE SET last_value = {COUNTER_TABLE}.last_value + 1
                RETURNING last_value
            """, (name, prefix), fetch="one")
            self._autocommit()
            return row['last_value']

    def get_counter(self, name: str) -> int:
        with self._lock:
            row = self._execute(
                f"SELECT last_value FROM {COUNTER_TABLE} WHERE name = %s", (name,), fetch="one"
            )
            return row['last_value'] if row else 0

    def set_counter(self, name: str, value: int, prefix: str = "") -> None:
        with self._lock:
            self._execute(f"""
                INSERT INTO {COUNTER_TABLE} (name, prefix, last_value)
                VALUES (%s, %s, %s)
                ON CONFLICT (name) DO UPDATE SET last_value = EXCLUDED.last_value
            """, (name, prefix, value))
            self._autocommit()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: Optional[str] = None) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported URLs: ``memory://``, ``sqlite:///path/to.db`` (``sqlite://`` for
    an in-memory database) and ``postgresql://...``.
    """
    cfg = get_config()
    url = database_url or cfg.database_url

    if url.startswith("memory://"):
        storage: StorageInterface = InMemoryStorage()
    elif url.startswith("sqlite://"):
        path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else ""
        storage = SQLiteStorage(path or ":memory:", echo=cfg.database_echo)
    elif url.startswith(("postgresql://", "postgres://")):
        storage = PostgreSQLStorage(url)
    else:
        raise ValueError(f"Unsupported database URL: {url}")

    log_action(logger, "info", "Storage backend created", action="create_storage",
               extra={"backend": type(storage).__name__})
    return storage
