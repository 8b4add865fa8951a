"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL (persistence). All monetary values stored as Decimal strings.

Every backend supports insert-only writes (uniqueness constraint), versioned
compare-and-swap updates and all-or-nothing atomic blocks.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


class DuplicateRecordError(Exception):
    """Raised by insert() when the record id already exists"""

    def __init__(self, table: str, record_id: str):
        super().__init__(f"Record {record_id} already exists in {table}")
        self.table = table
        self.record_id = record_id


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


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        # Held for the whole of an atomic() block
        self._lock = threading.RLock()
        self._depth = 0

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateRecordError if the id exists"""
        pass

    @abstractmethod
    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> bool:
        """
        Replace a record only if its stored version equals expected_version.
        Returns False when the record is missing or the version moved on.
        """
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
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def ensure_index(self, table: str, field: str) -> None:
        """Declare a field used for lookups (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        """Start (or nest into) a transaction"""
        self._depth += 1

    def commit(self) -> None:
        """Commit when the outermost transaction ends"""
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self._commit_outermost()

    def rollback(self) -> None:
        """Roll back the whole outermost transaction"""
        if self._depth == 0:
            return
        self._depth = 0
        self._rollback_outermost()

    def _commit_outermost(self) -> None:
        pass

    def _rollback_outermost(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Holds the backend lock for the whole block, so concurrent callers
        never observe or interleave with a half-written unit. Nested blocks
        join the outermost one; any exception rolls back everything.
        """
        with self._lock:
            self.begin_transaction()
            try:
                yield
            except BaseException:
                self.rollback()
                raise
            self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation with undo-log rollback"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._undo: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _remember(self, table: str, record_id: str) -> None:
        """Record the previous value of a row before a transactional write"""
        if self.in_transaction:
            self._undo.append((table, record_id, self._data[table].get(record_id)))

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._remember(table, record_id)
        self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record to memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateRecordError(table, record_id)
            self._write(table, record_id, data)

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> bool:
        """Compare-and-swap on the stored version"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or current.get('version') != expected_version:
                return False
            self._write(table, record_id, data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

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
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def _commit_outermost(self) -> None:
        self._undo.clear()

    def _rollback_outermost(self) -> None:
        # Replay the undo log newest first
        for table, record_id, previous in reversed(self._undo):
            if previous is None:
                self._data[table].pop(record_id, None)
            else:
                self._data[table][record_id] = previous
        self._undo.clear()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _autocommit(self) -> None:
        # Only commit if not in transaction
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._autocommit()
        self._tables.add(table)

    def ensure_index(self, table: str, field: str) -> None:
        """Create an expression index over a JSON field"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_{field}
                ON {table}(json_extract(data, '$.{field}'))
            """)
            self._autocommit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, relying on the primary key constraint"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), data.get('version', 0), now, now))
            except sqlite3.IntegrityError:
                raise DuplicateRecordError(table, record_id)
            self._autocommit()

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> bool:
        """Conditional UPDATE on the version column"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (json.dumps(data, default=str), data.get('version', 0), now,
                  record_id, expected_version))
            self._autocommit()
            return cursor.rowcount == 1

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
                SELECT data FROM {table} ORDER BY created_at, rowid
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

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        with self._lock:
            self._ensure_table(table)

            conditions = []
            params = []
            for key, value in filters.items():
                conditions.append(f"json_extract(data, '$.{key}') = ?")
                params.append(value)

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY created_at, rowid
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

    def _commit_outermost(self) -> None:
        self._connection.commit()

    def _rollback_outermost(self) -> None:
        self._connection.rollback()
        # DDL issued inside the transaction was rolled back too
        self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._tables = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            if self._connection:
                self._connection.close()

            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _autocommit(self) -> None:
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        cursor = self._connection.cursor()
        try:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    version BIGINT NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
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
            self._autocommit()
        finally:
            cursor.close()
        self._tables.add(table)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; ON CONFLICT DO NOTHING reports duplicates"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                """, (record_id, json.dumps(data, default=str), data.get('version', 0), now, now))
                if cursor.rowcount == 0:
                    raise DuplicateRecordError(table, record_id)
                self._autocommit()
            finally:
                cursor.close()

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> bool:
        """Conditional UPDATE on the version column"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    UPDATE {table} SET data = %s, version = %s, updated_at = %s
                    WHERE id = %s AND version = %s
                """, (json.dumps(data, default=str), data.get('version', 0),
                      datetime.now(timezone.utc), record_id, expected_version))
                updated = cursor.rowcount == 1
                self._autocommit()
                return updated
            finally:
                cursor.close()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE id = %s
                """, (record_id,))
                row = cursor.fetchone()
                if row:
                    return dict(row['data'])
                return None
            finally:
                cursor.close()

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} ORDER BY created_at
                """)
                return [dict(row['data']) for row in cursor.fetchall()]
            finally:
                cursor.close()

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT 1 FROM {table} WHERE id = %s LIMIT 1
                """, (record_id,))
                return cursor.fetchone() is not None
            finally:
                cursor.close()

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                conditions = []
                params = []
                for key, value in filters.items():
                    conditions.append("data ->> %s = %s")
                    params.extend([key, str(value)])

                where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
                cursor.execute(f"""
                    SELECT data FROM {table} {where_clause} ORDER BY created_at
                """, params)
                return [dict(row['data']) for row in cursor.fetchall()]
            finally:
                cursor.close()

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT COUNT(*) as count FROM {table}
                """)
                return cursor.fetchone()['count']
            finally:
                cursor.close()

    def _commit_outermost(self) -> None:
        self._connection.commit()

    def _rollback_outermost(self) -> None:
        self._connection.rollback()
        self._tables.clear()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Select a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite:///path.db``, ``sqlite://``
    (in-memory SQLite) and ``postgresql://...``.
    """
    if database_url in ("", "memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
