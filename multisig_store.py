"""
Key-value persistence for wallets and transactions.

Keys are strings in three namespaces:

- ``wallet:<walletId>``  wallet records (written once)
- ``tx:<transactionId>`` transaction records
- ``_id:<prefix>``       monotonically increasing counters

Values are JSON-serializable. Both stores round-trip values through ``json``
so callers never share a mutable object with the store.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

logger = logging.getLogger(__name__)

WALLET_PREFIX = "wallet:"
TX_PREFIX = "tx:"
ID_PREFIX = "_id:"


def wallet_key(wallet_id: str) -> str:
    return f"{WALLET_PREFIX}{wallet_id}"


def tx_key(transaction_id: str) -> str:
    return f"{TX_PREFIX}{transaction_id}"


def counter_key(prefix: str) -> str:
    return f"{ID_PREFIX}{prefix}"


class Store:
    """Interface shared by the memory and SQLite stores."""

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def put(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def iterate(self, prefix: str = "") -> Iterator[tuple[str, Any]]:
        raise NotImplementedError

    def increment(self, key: str) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(Store):
    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def put(self, key: str, value: Any) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = raw

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def iterate(self, prefix: str = "") -> Iterator[tuple[str, Any]]:
        # Snapshot first; a scan never observes a half-written record.
        with self._lock:
            items = [(k, v) for k, v in self._data.items() if k.startswith(prefix)]
        for key, raw in items:
            yield key, json.loads(raw)

    def increment(self, key: str) -> int:
        with self._lock:
            raw = self._data.get(key)
            value = (int(json.loads(raw)) if raw is not None else 0) + 1
            self._data[key] = json.dumps(value)
            return value


class SqliteStore(Store):
    """
    File-backed store using a single ``kv`` table.

    One connection is shared between threads and guarded by a lock;
    ``increment`` runs inside ``BEGIN IMMEDIATE`` so it is also atomic with
    respect to other processes using the same file.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
        )
        logger.info("Opened SQLite store at %s", path)

    def get(self, key: str) -> Any | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else json.loads(row[0])

    def put(self, key: str, value: Any) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, raw)
            )

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def iterate(self, prefix: str = "") -> Iterator[tuple[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, value FROM kv WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            ).fetchall()
        for key, raw in rows:
            yield key, json.loads(raw)

    def increment(self, key: str) -> int:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT value FROM kv WHERE key = ?", (key,)
                ).fetchone()
                value = (int(json.loads(row[0])) if row is not None else 0) + 1
                self._conn.execute(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    (key, json.dumps(value)),
                )
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            return value

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def open_store(db_path: str) -> Store:
    if db_path == ":memory:":
        return MemoryStore()
    return SqliteStore(db_path)


# ---------------------------------------------------------------------------
# Per-key locks
# ---------------------------------------------------------------------------


class KeyedLocks:
    """
    Registry of reference-counted locks, one per key.

    Serializes read-modify-write cycles on a single record (e.g. one
    transaction) while leaving unrelated keys uncontended. An entry is
    dropped once its last holder releases it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.RLock, int]] = {}

    def _obtain(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                lock = threading.RLock()
                self._locks[key] = (lock, 1)
            else:
                lock, count = entry
                self._locks[key] = (lock, count + 1)
        return lock

    def _relinquish(self, key: str) -> None:
        with self._guard:
            lock, count = self._locks[key]
            if count == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, count - 1)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._obtain(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            self._relinquish(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
