"""
fairplay.store
==============

Storage abstractions for settlement records (randomness requests, treasury
entries, subscription records, game history).

Backends are pluggable (in-memory, SQLite). Components depend only on the
`KeyValue` protocol and encode their own records under prefixed keys.
"""

from __future__ import annotations

import json
from contextlib import AbstractContextManager
from typing import Any, Dict, Iterable, Iterator, Optional, Protocol, Tuple


class KeyValue(Protocol):
    """Minimal byte-oriented KV interface.

    Namespaces are handled by the caller via prefixed keys,
    e.g. b"req:" + request_id.
    """

    def get(self, key: bytes) -> Optional[bytes]:
        """Return value for key, or None if missing."""
        ...

    def put(self, key: bytes, value: bytes) -> None:
        """Insert or replace key with value."""
        ...

    def delete(self, key: bytes) -> None:
        """Remove key if present (no-op if absent)."""
        ...

    def has(self, key: bytes) -> bool:
        """Return True if key exists."""
        ...

    def iter_prefix(self, prefix: bytes) -> Iterable[Tuple[bytes, bytes]]:
        """Yield (key, value) pairs whose keys start with prefix, in key order."""
        ...

    def transaction(self) -> AbstractContextManager:
        """Group writes atomically."""
        ...


# ---- JSON record helpers ----


def encode_record(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def decode_record(raw: bytes) -> Dict[str, Any]:
    return json.loads(raw.decode("utf-8"))


def iter_records(kv: KeyValue, prefix: bytes) -> Iterator[Dict[str, Any]]:
    for _, raw in kv.iter_prefix(prefix):
        yield decode_record(raw)


def open_store(db_path: Optional[str]) -> KeyValue:
    """SQLite store at `db_path`, or an in-memory store when no path is configured."""
    if db_path:
        from .sqlite import SQLiteKeyValue

        return SQLiteKeyValue(db_path)
    from .memory import MemoryKeyValue

    return MemoryKeyValue()


__all__ = [
    "KeyValue",
    "encode_record",
    "decode_record",
    "iter_records",
    "open_store",
]
