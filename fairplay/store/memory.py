"""
In-memory KeyValue backend for tests and single-process deployments.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Iterable, Optional, Tuple


class MemoryKeyValue:
    """Dict-backed store; `transaction()` rolls back on error."""

    def __init__(self) -> None:
        self._d: Dict[bytes, bytes] = {}
        self._lock = threading.RLock()

    def get(self, key: bytes) -> Optional[bytes]:
        return self._d.get(bytes(key))

    def put(self, key: bytes, value: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or not isinstance(value, (bytes, bytearray)):
            raise TypeError("key and value must be bytes")
        with self._lock:
            self._d[bytes(key)] = bytes(value)

    def delete(self, key: bytes) -> None:
        with self._lock:
            self._d.pop(bytes(key), None)

    def has(self, key: bytes) -> bool:
        return bytes(key) in self._d

    def iter_prefix(self, prefix: bytes) -> Iterable[Tuple[bytes, bytes]]:
        with self._lock:
            items = sorted((k, v) for k, v in self._d.items() if k.startswith(prefix))
        return iter(items)

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        with self._lock:
            snapshot = dict(self._d)
            try:
                yield
            except Exception:
                self._d = snapshot
                raise

    def close(self) -> None:
        pass


__all__ = ["MemoryKeyValue"]
