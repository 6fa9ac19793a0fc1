"""
Runner Pool — Record Store

Single-item get/put/update/delete keyed by (entity type, identifier),
with conditional writes evaluated atomically against the stored item.
This is the only cross-process synchronization the pool relies on:
no two callers can both satisfy the same condition on the same record.

Implementations:
  - InMemoryRecordStore: dev/test, same process
  - SQLiteRecordStore:   shared file, BEGIN IMMEDIATE per write

ValueRecords gives typed access to one entity partition.
"""

from __future__ import annotations

import abc
import copy
import json
import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

from pool.errors import ConditionalCheckFailed, UpstreamUnavailable

logger = logging.getLogger("runner_pool.store")

Item = dict[str, Any]
Condition = Callable[[Item | None], bool]
Predicate = Callable[[Item], bool]


def _key_name(entity: Any) -> str:
    return getattr(entity, "value", entity)


# ─── Abstract Store Interface ───────────────────────────────────────

class RecordStore(abc.ABC):
    """
    Abstract record store. Every read is consistent; every conditional
    write either applies completely or raises ConditionalCheckFailed.
    """

    @abc.abstractmethod
    def get(self, entity: str, identifier: str) -> Item | None:
        """Read one item. Returns None if absent."""
        ...

    @abc.abstractmethod
    def put(self, entity: str, identifier: str, item: Item,
            condition: Condition | None = None) -> None:
        """Write a whole item, replacing any existing one."""
        ...

    @abc.abstractmethod
    def update(self, entity: str, identifier: str, changes: Item,
               condition: Condition | None = None) -> Item:
        """Merge changes into the item (created if absent). Returns the new item."""
        ...

    @abc.abstractmethod
    def delete(self, entity: str, identifier: str,
               condition: Condition | None = None) -> None:
        """Delete one item. Deleting an absent item is not an error."""
        ...

    @abc.abstractmethod
    def query(self, entity: str, predicate: Predicate | None = None) -> list[Item]:
        """All items in a partition matching predicate."""
        ...


def _check(condition: Condition | None, current: Item | None, entity: str, identifier: str):
    if condition is not None and not condition(copy.deepcopy(current)):
        raise ConditionalCheckFailed(entity, identifier)


# ─── In-Memory Implementation ───────────────────────────────────────

class InMemoryRecordStore(RecordStore):
    """In-process store for dev/test. One lock serializes all writes."""

    def __init__(self):
        self._items: dict[tuple[str, str], Item] = {}
        self._lock = threading.Lock()

    def get(self, entity, identifier):
        with self._lock:
            item = self._items.get((_key_name(entity), identifier))
            return copy.deepcopy(item)

    def put(self, entity, identifier, item, condition=None):
        entity = _key_name(entity)
        with self._lock:
            _check(condition, self._items.get((entity, identifier)), entity, identifier)
            self._items[(entity, identifier)] = copy.deepcopy(item)

    def update(self, entity, identifier, changes, condition=None):
        entity = _key_name(entity)
        with self._lock:
            current = self._items.get((entity, identifier))
            _check(condition, current, entity, identifier)
            merged = {**(current or {"id": identifier}), **copy.deepcopy(changes)}
            self._items[(entity, identifier)] = merged
            return copy.deepcopy(merged)

    def delete(self, entity, identifier, condition=None):
        entity = _key_name(entity)
        with self._lock:
            current = self._items.get((entity, identifier))
            _check(condition, current, entity, identifier)
            self._items.pop((entity, identifier), None)

    def query(self, entity, predicate=None):
        entity = _key_name(entity)
        with self._lock:
            items = [copy.deepcopy(v) for (e, _), v in self._items.items() if e == entity]
        if predicate is not None:
            items = [i for i in items if predicate(i)]
        return items


# ─── SQLite Implementation ──────────────────────────────────────────

class _Transaction:
    """BEGIN IMMEDIATE on enter; COMMIT on clean exit, ROLLBACK otherwise."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def __enter__(self):
        self.db.lock.acquire()
        try:
            self.db.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            self.db.lock.release()
            raise UpstreamUnavailable(f"could not begin transaction: {e}") from e
        return self.db.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is None:
                self.db.conn.commit()
            else:
                self.db.conn.rollback()
        except sqlite3.Error as e:
            raise UpstreamUnavailable(str(e)) from e
        finally:
            self.db.lock.release()
        if exc_type is not None and issubclass(exc_type, sqlite3.Error):
            raise UpstreamUnavailable(str(exc_val)) from exc_val
        return False


class SQLiteDatabase:
    """
    One SQLite connection shared by the record store and the pool queues.

    Writers in other processes are serialized by the file lock taken
    by BEGIN IMMEDIATE; writers in this process by self.lock.
    """

    def __init__(self, db_path: str | Path = "runner_pool.db"):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.lock = threading.RLock()

    def transaction(self) -> _Transaction:
        """
        Context manager for one atomic read-check-write.

        Usage:
            with db.transaction() as conn:
                row = conn.execute(...).fetchone()
                conn.execute("UPDATE ...")
        """
        return _Transaction(self)

    def read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with self.lock:
                return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise UpstreamUnavailable(str(e)) from e

    def close(self):
        with self.lock:
            self.conn.close()


class SQLiteRecordStore(RecordStore):
    """SQLite-backed store; items are JSON bodies keyed by (entity_type, identifier)."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db
        self._create_table()

    def _create_table(self):
        with self.db.lock:
            self.db.conn.executescript("""
                CREATE TABLE IF NOT EXISTS records (
                    entity_type TEXT NOT NULL,
                    identifier TEXT NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (entity_type, identifier)
                );
            """)

    @staticmethod
    def _current(conn, entity: str, identifier: str) -> Item | None:
        row = conn.execute(
            "SELECT body FROM records WHERE entity_type = ? AND identifier = ?",
            (entity, identifier),
        ).fetchone()
        return json.loads(row["body"]) if row else None

    @staticmethod
    def _write(conn, entity: str, identifier: str, item: Item):
        conn.execute(
            "INSERT OR REPLACE INTO records (entity_type, identifier, body) VALUES (?, ?, ?)",
            (entity, identifier, json.dumps(item, default=str)),
        )

    def get(self, entity, identifier):
        rows = self.db.read(
            "SELECT body FROM records WHERE entity_type = ? AND identifier = ?",
            (_key_name(entity), identifier),
        )
        return json.loads(rows[0]["body"]) if rows else None

    def put(self, entity, identifier, item, condition=None):
        entity = _key_name(entity)
        with self.db.transaction() as conn:
            _check(condition, self._current(conn, entity, identifier), entity, identifier)
            self._write(conn, entity, identifier, item)

    def update(self, entity, identifier, changes, condition=None):
        entity = _key_name(entity)
        with self.db.transaction() as conn:
            current = self._current(conn, entity, identifier)
            _check(condition, current, entity, identifier)
            merged = {**(current or {"id": identifier}), **changes}
            self._write(conn, entity, identifier, merged)
        return merged

    def delete(self, entity, identifier, condition=None):
        entity = _key_name(entity)
        with self.db.transaction() as conn:
            _check(condition, self._current(conn, entity, identifier), entity, identifier)
            conn.execute(
                "DELETE FROM records WHERE entity_type = ? AND identifier = ?",
                (entity, identifier),
            )

    def query(self, entity, predicate=None):
        rows = self.db.read(
            "SELECT body FROM records WHERE entity_type = ? ORDER BY identifier",
            (_key_name(entity),),
        )
        items = [json.loads(r["body"]) for r in rows]
        if predicate is not None:
            items = [i for i in items if predicate(i)]
        return items


# ─── Typed Partition Access ─────────────────────────────────────────

T = TypeVar("T")


class ValueRecords(Generic[T]):
    """
    Typed view over one entity partition.

    encode/decode translate between the stored item dict and T.
    """

    def __init__(
        self,
        store: RecordStore,
        entity: str,
        encode: Callable[[T], Item],
        decode: Callable[[Item], T],
        max_workers: int = 8,
    ):
        self.store = store
        self.entity = _key_name(entity)
        self.encode = encode
        self.decode = decode
        self.max_workers = max_workers

    def get_item(self, identifier: str) -> Item | None:
        return self.store.get(self.entity, identifier)

    def get_value(self, identifier: str) -> T | None:
        item = self.get_item(identifier)
        return self.decode(item) if item is not None else None

    def get_values(self, identifiers: list[str]) -> dict[str, T | None]:
        """
        Read many ids concurrently. Settle-all: an id whose read fails
        is reported as absent instead of failing the batch.
        """
        if not identifiers:
            return {}
        results: dict[str, T | None] = {}
        workers = max(1, min(self.max_workers, len(identifiers)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {i: pool.submit(self.get_value, i) for i in identifiers}
            for identifier, future in futures.items():
                try:
                    results[identifier] = future.result()
                except Exception as e:
                    logger.warning("Read of %s#%s failed: %s", self.entity, identifier, e)
                    results[identifier] = None
        return results

    def put_value(self, identifier: str, value: T, condition: Condition | None = None) -> None:
        self.store.put(self.entity, identifier, self.encode(value), condition)

    def delete(self, identifier: str, condition: Condition | None = None) -> None:
        self.store.delete(self.entity, identifier, condition)

    def query(self, predicate: Predicate | None = None) -> list[T]:
        return [self.decode(i) for i in self.store.query(self.entity, predicate)]


def open_sqlite_store(db_path: str | Path) -> SQLiteRecordStore:
    return SQLiteRecordStore(SQLiteDatabase(db_path))
