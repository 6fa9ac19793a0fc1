"""
Runner Pool — Resource Pool Queues

One queue per resource class holds descriptors of idle instances.
Delivery is at-least-once and receipt removes the message; there is no
peek. Callers that want to keep a message must send it back.

The interface is transport-agnostic:
  - InMemoryPoolQueue: dev/test, same process
  - SQLitePoolQueue:   shared with SQLiteRecordStore's database file
"""

from __future__ import annotations

import abc
import collections
import json
import logging
import threading
from typing import Any

from pool.errors import InvalidResourceClass, UpstreamUnavailable
from pool.store import SQLiteDatabase
from pool.types import PoolMessage, ResourceClassConfig

logger = logging.getLogger("runner_pool.queues")


# ─── Abstract Queue Interface ───────────────────────────────────────

class PoolQueue(abc.ABC):
    """Abstract queue keyed by a queue reference (one per resource class)."""

    @abc.abstractmethod
    def receive_one(self, queue_ref: str) -> dict[str, Any] | None:
        """Remove and return the oldest message. None if empty."""
        ...

    @abc.abstractmethod
    def send(self, queue_ref: str, payload: dict[str, Any]) -> None:
        """Append a message."""
        ...

    @abc.abstractmethod
    def size(self, queue_ref: str) -> int:
        ...

    @abc.abstractmethod
    def purge(self, queue_ref: str) -> int:
        """Drop every message. Returns count dropped."""
        ...


# ─── In-Memory Implementation ───────────────────────────────────────

class InMemoryPoolQueue(PoolQueue):
    """In-process FIFO queues for dev/test."""

    def __init__(self):
        self._queues: dict[str, collections.deque] = collections.defaultdict(collections.deque)
        self._lock = threading.Lock()

    def receive_one(self, queue_ref):
        with self._lock:
            q = self._queues.get(queue_ref)
            if not q:
                return None
            return json.loads(q.popleft())

    def send(self, queue_ref, payload):
        with self._lock:
            self._queues[queue_ref].append(json.dumps(payload, default=str))

    def size(self, queue_ref):
        with self._lock:
            return len(self._queues.get(queue_ref, ()))

    def purge(self, queue_ref):
        with self._lock:
            dropped = len(self._queues.get(queue_ref, ()))
            self._queues.pop(queue_ref, None)
            return dropped


# ─── SQLite Implementation ──────────────────────────────────────────

class SQLitePoolQueue(PoolQueue):
    """SQLite-backed queues. Receive is select-oldest + delete in one transaction."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db
        self._create_table()

    def _create_table(self):
        with self.db.lock:
            self.db.conn.executescript("""
                CREATE TABLE IF NOT EXISTS pool_messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_ref TEXT NOT NULL,
                    body TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_pool_messages_queue
                    ON pool_messages(queue_ref, seq);
            """)

    def receive_one(self, queue_ref):
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT seq, body FROM pool_messages WHERE queue_ref = ? ORDER BY seq LIMIT 1",
                (queue_ref,),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM pool_messages WHERE seq = ?", (row["seq"],))
        return json.loads(row["body"])

    def send(self, queue_ref, payload):
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO pool_messages (queue_ref, body) VALUES (?, ?)",
                (queue_ref, json.dumps(payload, default=str)),
            )

    def size(self, queue_ref):
        rows = self.db.read(
            "SELECT COUNT(*) AS n FROM pool_messages WHERE queue_ref = ?", (queue_ref,),
        )
        return rows[0]["n"]

    def purge(self, queue_ref):
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM pool_messages WHERE queue_ref = ?", (queue_ref,))
            return cur.rowcount


# ─── Resource Pools ─────────────────────────────────────────────────

class ResourcePools:
    """
    Routes pool messages to the queue of their resource class.

    The queue reference for a class is "<prefix><class>"; classes not in
    the live spec table are rejected with InvalidResourceClass.
    """

    def __init__(self, queue: PoolQueue, resource_classes: ResourceClassConfig,
                 prefix: str = "pool-"):
        self.queue = queue
        self.resource_classes = resource_classes
        self.prefix = prefix

    def queue_ref(self, resource_class: str) -> str:
        if resource_class not in self.resource_classes:
            raise InvalidResourceClass(f"Unknown resource class: {resource_class!r}")
        return f"{self.prefix}{resource_class}"

    def send_to_pool(self, message: PoolMessage) -> None:
        self.queue.send(self.queue_ref(message.resource_class), message.to_dict())
        logger.debug("Sent %s to pool %s", message.id, message.resource_class)

    def send_many(self, messages: list[PoolMessage]) -> tuple[list[PoolMessage], list[PoolMessage]]:
        """Settle-all send. Returns (successful, failed)."""
        successful, failed = [], []
        for message in messages:
            try:
                self.send_to_pool(message)
                successful.append(message)
            except (InvalidResourceClass, UpstreamUnavailable) as e:
                logger.error("Failed to send %s to pool: %s", message.id, e)
                failed.append(message)
        return successful, failed

    def receive(self, resource_class: str) -> dict[str, Any] | None:
        return self.queue.receive_one(self.queue_ref(resource_class))

    def size(self, resource_class: str) -> int:
        return self.queue.size(self.queue_ref(resource_class))

    def purge(self, resource_class: str) -> int:
        return self.queue.purge(self.queue_ref(resource_class))
