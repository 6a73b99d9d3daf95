"""
Storage Backend Module

Provides the transactional row store the lifecycle engine runs on: an abstract
interface plus in-memory (testing), SQLite and PostgreSQL implementations.
Records are JSON documents keyed by id; monetary values are stored as
Decimal strings.

A unit of work is opened with ``atomic()``. Everything written inside it
commits or rolls back together, and ``load_for_update`` takes an exclusive
lock on the row that is held until the unit ends.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager
from functools import wraps
import sqlite3
import json
import logging
import threading

from .errors import StorageError

logger = logging.getLogger(__name__)


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
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


def _copy(data: Any) -> Any:
    """Deep copy through JSON so callers never share state with the store"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a record and lock it exclusively until the enclosing unit of
        work ends. Must be called inside ``atomic()``.
        """
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
        """Find records whose fields equal every filter value"""
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
    def begin_transaction(self) -> None:
        """Start the outermost unit of work for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's unit of work"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the calling thread's unit of work"""
        pass

    def _tx_local(self) -> threading.local:
        local = self.__dict__.get('_tx_state')
        if local is None:
            local = self.__dict__.setdefault('_tx_state', threading.local())
        return local

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside ``atomic()``"""
        return getattr(self._tx_local(), 'depth', 0) > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for one all-or-nothing unit of work

        Nested calls join the outermost unit; only the outermost one commits.
        Any exception rolls the whole unit back and is re-raised.
        """
        local = self._tx_local()
        depth = getattr(local, 'depth', 0)
        if depth:
            local.depth = depth + 1
            try:
                yield
            finally:
                local.depth = depth
            return

        self.begin_transaction()
        local.depth = 1
        try:
            yield
        except BaseException:
            local.depth = 0
            self.rollback()
            raise

        local.depth = 0
        try:
            self.commit()
        except Exception as e:
            logger.error(f"Commit failed, rolling back: {e}")
            self.rollback()
            if isinstance(e, StorageError):
                raise
            raise StorageError("Commit failed", {"error": str(e)}) from e

    def _require_transaction(self, operation: str) -> None:
        if not self.in_transaction:
            raise StorageError(f"{operation} must run inside atomic()")


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Row locks are per (table, id) and held by the thread that took them.
    Writes inside a unit are journaled and undone on rollback. Plain reads
    outside a unit may observe uncommitted writes; every read-modify-write
    in the engine goes through ``load_for_update`` so this never loses an
    update.
    """

    _ABSENT = object()

    def __init__(self, lock_timeout: float = 30.0):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._row_locks: Dict[Tuple[str, str], threading.RLock] = {}
        # Holders plus waiters per row; the lock entry is dropped at zero
        self._row_lock_users: Dict[Tuple[str, str], int] = {}
        self.lock_timeout = lock_timeout

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _journal(self, table: str, record_id: str) -> None:
        """Remember the pre-image of a row before the unit changes it"""
        if not self.in_transaction:
            return
        previous = self._data[table].get(record_id, self._ABSENT)
        if previous is not self._ABSENT:
            previous = _copy(previous)
        self._tx_local().journal.append((table, record_id, previous))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._journal(table, record_id)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._require_transaction("load_for_update")
        key = (table, record_id)
        with self._lock:
            row_lock = self._row_locks.setdefault(key, threading.RLock())
            self._row_lock_users[key] = self._row_lock_users.get(key, 0) + 1
        if not row_lock.acquire(timeout=self.lock_timeout):
            self._forget_row_lock(key)
            raise StorageError(
                f"Timed out waiting for lock on {table}/{record_id}",
                {"table": table, "record_id": record_id}
            )
        self._tx_local().held_locks.append((key, row_lock))
        return self.load(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._journal(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._journal(table, record_id)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        local = self._tx_local()
        local.journal = []
        local.held_locks = []

    def commit(self) -> None:
        self._finish(undo=False)

    def rollback(self) -> None:
        self._finish(undo=True)

    def _finish(self, undo: bool) -> None:
        local = self._tx_local()
        journal = getattr(local, 'journal', [])
        if undo:
            with self._lock:
                for table, record_id, previous in reversed(journal):
                    self._ensure_table(table)
                    if previous is self._ABSENT:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = previous
        for key, row_lock in reversed(getattr(local, 'held_locks', [])):
            row_lock.release()
            self._forget_row_lock(key)
        local.journal = []
        local.held_locks = []

    def _forget_row_lock(self, key: Tuple[str, str]) -> None:
        with self._lock:
            users = self._row_lock_users.get(key, 0) - 1
            if users > 0:
                self._row_lock_users[key] = users
            else:
                self._row_lock_users.pop(key, None)
                self._row_locks.pop(key, None)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


def _translate_errors(method):
    """Surface driver failures as StorageError"""
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except StorageError:
            raise
        except self.driver_errors as e:
            raise StorageError(f"{type(self).__name__}.{method.__name__} failed: {e}") from e
    return wrapper


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    One connection shared by all threads and serialized by a re-entrant lock.
    A unit of work holds that lock from ``BEGIN IMMEDIATE`` to commit or
    rollback, so it is exclusive within the process, and the immediate write
    lock makes it exclusive across processes sharing the file.
    """

    driver_errors = (sqlite3.Error,)

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 30.0):
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue BEGIN/COMMIT explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
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

    @_translate_errors
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    @_translate_errors
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        # The unit already holds the database write lock
        self._require_transaction("load_for_update")
        return self.load(table, record_id)

    @_translate_errors
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    @_translate_errors
    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
            return cursor.rowcount > 0

    @_translate_errors
    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    @_translate_errors
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at"
            )
            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(record)
            return results

    @_translate_errors
    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    @_translate_errors
    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._lock.acquire()
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            self._lock.release()
            raise StorageError(f"Could not begin transaction: {e}") from e

    def commit(self) -> None:
        try:
            self._connection.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageError(f"Commit failed: {e}") from e
        self._lock.release()

    def rollback(self) -> None:
        try:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support

    Records live in JSONB columns. ``load_for_update`` is a
    ``SELECT ... FOR UPDATE`` row lock inside the open transaction.
    """

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.driver_errors = (psycopg2.Error,)
        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._known_tables = set()
        self._connect()

    def _connect(self) -> None:
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False

    @contextmanager
    def _cursor(self):
        """Cursor that commits on its own when no unit of work is open"""
        with self._lock:
            cursor = self._connection.cursor()
            try:
                yield cursor
                if not self.in_transaction:
                    self._connection.commit()
            except Exception:
                if not self.in_transaction:
                    self._connection.rollback()
                raise
            finally:
                cursor.close()

    def _ensure_table(self, cursor, table: str) -> None:
        if table in self._known_tables:
            return
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        if not self.in_transaction:
            self._known_tables.add(table)

    @_translate_errors
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        data_json = json.dumps(data, default=str)
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, data_json, now, now))

    def _select_one(self, table: str, record_id: str, for_update: bool) -> Optional[Dict[str, Any]]:
        lock_clause = " FOR UPDATE" if for_update else ""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s{lock_clause}", (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    @_translate_errors
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._select_one(table, record_id, for_update=False)

    @_translate_errors
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._require_transaction("load_for_update")
        return self._select_one(table, record_id, for_update=True)

    @_translate_errors
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [dict(row['data']) for row in cursor.fetchall()]

    @_translate_errors
    def delete(self, table: str, record_id: str) -> bool:
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    @_translate_errors
    def exists(self, table: str, record_id: str) -> bool:
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    @_translate_errors
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            if not filters:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            else:
                cursor.execute(
                    f"SELECT data FROM {table} WHERE data @> %s::jsonb ORDER BY created_at",
                    (json.dumps(filters, default=str),)
                )
            return [dict(row['data']) for row in cursor.fetchall()]

    @_translate_errors
    def count(self, table: str) -> int:
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    @_translate_errors
    def clear_table(self, table: str) -> None:
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        # psycopg2 opens the transaction on the first statement
        self._lock.acquire()

    def commit(self) -> None:
        try:
            self._connection.commit()
        except self.psycopg2.Error as e:
            raise StorageError(f"Commit failed: {e}") from e
        self._lock.release()

    def rollback(self) -> None:
        try:
            self._connection.rollback()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, lock_timeout: float = 30.0) -> StorageInterface:
    """
    Select a backend from a URL

    ``memory://`` -> InMemoryStorage, ``sqlite:///path.db`` (or
    ``sqlite://`` for an in-memory database) -> SQLiteStorage,
    ``postgresql://...`` -> PostgreSQLStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
