"""
SQLite-backed KeyValue store for settlement records.

Features
--------
- Simple byte-oriented KV: (key BLOB PRIMARY KEY, value BLOB NOT NULL)
- Transactions via context manager: `with kv.transaction(): ...` (nestable;
  only the outermost level issues BEGIN/COMMIT)
- Prefix iteration using range scans (lower/upper bound)
- WAL journal, synchronous=NORMAL

Notes
-----
Prefix iteration relies on lexicographic byte ordering of BLOBs. To iterate a
prefix `p`, we select key >= p AND key < next_prefix(p).
"""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Generator, Iterable, List, Optional, Tuple


# --- Helpers -----------------------------------------------------------------

def _ensure_dir(path: str) -> None:
    d = os.path.dirname(os.path.abspath(path))
    if d and not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")


def _init_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv (
            key   BLOB PRIMARY KEY,
            value BLOB NOT NULL
        );
        """
    )


def _next_prefix(prefix: bytes) -> Optional[bytes]:
    """
    Smallest byte-string strictly greater than all keys starting with `prefix`,
    or None when the prefix is empty or all 0xFF.
    """
    if not prefix:
        return None
    b = bytearray(prefix)
    for i in range(len(b) - 1, -1, -1):
        if b[i] != 0xFF:
            b[i] += 1
            return bytes(b[: i + 1])
    return None


# --- Implementation -----------------------------------------------------------

@dataclass
class SQLiteKeyValue:
    """
    SQLite implementation of the KeyValue protocol.

    The connection is shared across threads behind a lock so the store can back
    a FastAPI app served from a worker thread.

    Example
    -------
    >>> kv = SQLiteKeyValue("/tmp/fairplay.db")
    >>> with kv.transaction():
    ...     kv.put(b"req:1", b"{}")
    >>> kv.close()
    """

    path: str
    _depth: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        _ensure_dir(self.path)
        # isolation_level=None -> autocommit; BEGIN/COMMIT are issued explicitly
        self._conn = sqlite3.connect(
            self.path, isolation_level=None, timeout=30.0, check_same_thread=False
        )
        self._lock = threading.RLock()
        _apply_pragmas(self._conn)
        _init_schema(self._conn)

    def __enter__(self) -> "SQLiteKeyValue":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- KV API --------------------------------------------------------------

    def put(self, key: bytes, value: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or not isinstance(value, (bytes, bytearray)):
            raise TypeError("key and value must be bytes")
        with self._lock:
            self._conn.execute("INSERT OR REPLACE INTO kv(key, value) VALUES(?, ?)", (bytes(key), bytes(value)))

    def get(self, key: bytes) -> Optional[bytes]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (bytes(key),)).fetchone()
        return bytes(row[0]) if row else None

    def has(self, key: bytes) -> bool:
        with self._lock:
            row = self._conn.execute("SELECT 1 FROM kv WHERE key = ?", (bytes(key),)).fetchone()
        return row is not None

    def delete(self, key: bytes) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (bytes(key),))

    def iter_prefix(self, prefix: bytes) -> Iterable[Tuple[bytes, bytes]]:
        """Iterate (key, value) for keys starting with `prefix`, ordered by key."""
        upper = _next_prefix(prefix)
        if upper is not None:
            sql = "SELECT key, value FROM kv WHERE key >= ? AND key < ? ORDER BY key ASC"
            args: Tuple[bytes, ...] = (prefix, upper)
        else:
            sql = "SELECT key, value FROM kv WHERE key >= ? ORDER BY key ASC"
            args = (prefix,)

        with self._lock:
            rows: List[Tuple[bytes, bytes]] = [
                (bytes(k), bytes(v)) for k, v in self._conn.execute(sql, args)
            ]
        return iter([(k, v) for k, v in rows if k.startswith(prefix)])

    # --- Transactions --------------------------------------------------------

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Write transaction (BEGIN IMMEDIATE). Commits on success, rolls back on error.
        Nested use joins the outer transaction.
        """
        with self._lock:
            outer = self._depth == 0
            if outer:
                self._conn.execute("BEGIN IMMEDIATE;")
            self._depth += 1
            try:
                yield
            except Exception:
                self._depth -= 1
                if outer:
                    self._conn.execute("ROLLBACK;")
                raise
            else:
                self._depth -= 1
                if outer:
                    self._conn.execute("COMMIT;")

    def close(self) -> None:
        with self._lock:
            self._conn.close()


__all__ = ["SQLiteKeyValue"]
