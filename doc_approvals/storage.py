"""
Storage Backend Module

Provides the abstract record storage used by every workflow store, with
in-memory (testing) and SQLite (persistence) implementations. Records are
JSON documents keyed by id; mutable records carry an integer version that
is checked on write so concurrent updates fail instead of overwriting.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


def encode_value(value: Any) -> Any:
    """Convert a value into its JSON-storable form"""
    if isinstance(value, datetime):
        # Fixed-width UTC text so stored timestamps sort lexicographically
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.isoformat(timespec='microseconds')
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode_value(v) for v in value]
    return value


def parse_datetime(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """Parse an ISO timestamp written by encode_value"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class StorageRecord:
    """Fields common to every persisted workflow record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict of all fields"""
        return {key: encode_value(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Rebuild from a dict produced by to_dict"""
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


# Sort key used by range scans: (value of the ordered field, record id)
ScanCursor = Tuple[Any, str]


class StorageInterface(ABC):
    """Keyed JSON record store shared by the template, task, instance and history stores"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record unconditionally"""
        pass

    @abstractmethod
    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> Optional[int]:
        """
        Save a record only if its stored version matches.

        Args:
            table: Table name
            record_id: Record key
            data: Record payload (its 'version' key is overwritten)
            expected_version: Version the caller read, or None to insert a
                record that must not exist yet

        Returns:
            The new version on success, None if the check failed
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Record by id, or None"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record in the table"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Whether a record with this id is stored"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def find_before(self, table: str, filters: Dict[str, Any], order_field: str,
                    upper_bound: Any, limit: int,
                    after: Optional[ScanCursor] = None) -> List[Dict[str, Any]]:
        """
        Range scan: records matching filters whose order_field is strictly
        below upper_bound, ordered by (order_field, id), starting strictly
        after the given cursor, at most limit records.
        """
        pass

    @abstractmethod
    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table, optionally matching filters"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release backend resources"""
        pass

    def begin_transaction(self) -> None:
        """Enter a transaction; backends without one do nothing"""
        pass

    def commit(self) -> None:
        """Leave the transaction keeping its writes"""
        pass

    def rollback(self) -> None:
        """Leave the transaction discarding its writes"""
        pass

    @contextmanager
    def atomic(self):
        """All writes inside the block land together or not at all. Blocks nest."""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


_ABSENT = object()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if record.get(key) != encode_value(value):
            return False
    return True


class InMemoryStorage(StorageInterface):
    """Dict-backed store for tests and single-process use"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        # Only touched by the thread holding the lock
        self._depth = 0
        # Prior value of each key written in the open transaction, _ABSENT if new
        self._undo: Dict[Tuple[str, str], Any] = {}

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Ensure table exists"""
        return self._data.setdefault(table, {})

    def _remember(self, table: str, record_id: str) -> None:
        if self._depth and (table, record_id) not in self._undo:
            self._undo[(table, record_id)] = self._ensure_table(table).get(record_id, _ABSENT)

    @staticmethod
    def _copy(record: Any) -> Any:
        # Callers never share dicts with the store
        return json.loads(json.dumps(record, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Unconditional write of a copy"""
        with self._lock:
            self._remember(table, record_id)
            self._ensure_table(table)[record_id] = self._copy(data)

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> Optional[int]:
        """Versioned save against the in-memory table"""
        with self._lock:
            rows = self._ensure_table(table)
            current = rows.get(record_id)
            if expected_version is None:
                if current is not None:
                    return None
                new_version = 1
            else:
                if current is None or current.get('version', 0) != expected_version:
                    return None
                new_version = expected_version + 1

            self._remember(table, record_id)
            stored = self._copy(data)
            stored['version'] = new_version
            rows[record_id] = stored
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Copy of the stored record"""
        with self._lock:
            record = self._ensure_table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._ensure_table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._ensure_table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Linear scan with equality filters"""
        with self._lock:
            return [
                self._copy(record)
                for record in self._ensure_table(table).values()
                if _matches(record, filters)
            ]

    def find_before(self, table: str, filters: Dict[str, Any], order_field: str,
                    upper_bound: Any, limit: int,
                    after: Optional[ScanCursor] = None) -> List[Dict[str, Any]]:
        """Range scan over the in-memory table"""
        bound = encode_value(upper_bound)
        cursor = (encode_value(after[0]), after[1]) if after else None
        with self._lock:
            candidates = []
            for record in self._ensure_table(table).values():
                key_value = record.get(order_field)
                if key_value is None or key_value >= bound:
                    continue
                if not _matches(record, filters):
                    continue
                if cursor is not None and (key_value, record['id']) <= cursor:
                    continue
                candidates.append(record)

            candidates.sort(key=lambda r: (r[order_field], r['id']))
            return [self._copy(record) for record in candidates[:limit]]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count, optionally filtered"""
        with self._lock:
            rows = self._ensure_table(table)
            if not filters:
                return len(rows)
            return sum(1 for record in rows.values() if _matches(record, filters))

    def begin_transaction(self) -> None:
        """Hold the store lock; writes from here on are logged for undo"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        """Release the transaction, keeping its writes"""
        self._depth -= 1
        if self._depth == 0:
            self._undo.clear()
        self._lock.release()

    def rollback(self) -> None:
        """Put back every key the outermost transaction wrote"""
        self._depth -= 1
        if self._depth == 0:
            for (table, record_id), previous in self._undo.items():
                rows = self._ensure_table(table)
                if previous is _ABSENT:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = previous
            self._undo.clear()
        self._lock.release()

    def close(self) -> None:
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Copy of every table, used to assert that nothing changed"""
        with self._lock:
            return self._copy(self._data)


class SQLiteStorage(StorageInterface):
    """
    One SQLite table per record type: id, JSON payload and version column.
    Filters and range scans run on the payload through json_extract.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        # File databases are read by the scheduler thread while the engine writes
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @classmethod
    def from_url(cls, database_url: str) -> 'SQLiteStorage':
        """Build from a sqlite:/// URL as used in configuration"""
        prefix = "sqlite:///"
        if not database_url.startswith(prefix):
            raise ValueError(f"Unsupported database URL: {database_url}")
        return cls(database_url[len(prefix):] or ":memory:")

    def _ensure_table(self, table: str) -> None:
        """Create the table and its created_at index on first use"""
        if table in self._tables:
            return
        with self._lock:
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
            if self._depth == 0:
                self._connection.commit()
            self._tables.add(table)

    def _write_done(self) -> None:
        # Writes inside atomic() wait for the outermost commit
        if self._depth == 0:
            self._connection.commit()

    @staticmethod
    def _filter_clause(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            value = encode_value(value)
            if value is None:
                conditions.append(f"json_extract(data, '$.{key}') IS NULL")
            else:
                if isinstance(value, bool):
                    value = int(value)
                conditions.append(f"json_extract(data, '$.{key}') = ?")
                params.append(value)
        return (" AND ".join(conditions) if conditions else "1 = 1"), params

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Unconditional upsert"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), data.get('version', 0),
                  data.get('created_at', ''), data.get('updated_at', '')))
            self._write_done()

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> Optional[int]:
        """Versioned save using a guarded UPDATE or a plain INSERT"""
        with self._lock:
            self._ensure_table(table)
            payload = dict(data)
            if expected_version is None:
                payload['version'] = 1
                try:
                    self._connection.execute(f"""
                        INSERT INTO {table} (id, data, version, created_at, updated_at)
                        VALUES (?, ?, 1, ?, ?)
                    """, (record_id, json.dumps(payload, default=str),
                          payload.get('created_at', ''), payload.get('updated_at', '')))
                except sqlite3.IntegrityError:
                    return None
                self._write_done()
                return 1

            payload['version'] = expected_version + 1
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (json.dumps(payload, default=str), expected_version + 1,
                  payload.get('updated_at', ''), record_id, expected_version))
            if cursor.rowcount != 1:
                return None
            self._write_done()
            return expected_version + 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
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
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, id
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters on JSON fields"""
        with self._lock:
            self._ensure_table(table)
            where_clause, params = self._filter_clause(filters)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE {where_clause} ORDER BY created_at, id
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def find_before(self, table: str, filters: Dict[str, Any], order_field: str,
                    upper_bound: Any, limit: int,
                    after: Optional[ScanCursor] = None) -> List[Dict[str, Any]]:
        """Keyset-paginated range scan on a JSON field"""
        with self._lock:
            self._ensure_table(table)
            where_clause, params = self._filter_clause(filters)
            key = f"json_extract(data, '$.{order_field}')"
            where_clause += f" AND {key} < ?"
            params.append(encode_value(upper_bound))
            if after is not None:
                where_clause += f" AND ({key} > ? OR ({key} = ? AND id > ?))"
                after_value = encode_value(after[0])
                params.extend([after_value, after_value, after[1]])
            params.append(limit)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE {where_clause}
                ORDER BY {key}, id LIMIT ?
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            where_clause, params = self._filter_clause(filters or {})
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table} WHERE {where_clause}
            """, params)
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Hold the connection lock; sqlite opens the transaction on the first write"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        """Commit when the outermost block ends"""
        self._depth -= 1
        try:
            if self._depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Roll back when the outermost block ends"""
        self._depth -= 1
        try:
            if self._depth == 0:
                self._connection.rollback()
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
