"""
In-process LRU cache with optional TTL.

Used for query embeddings: the same natural command embedded twice within a
process hits the cache instead of the provider.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections import OrderedDict
from threading import RLock
from typing import Any, Optional, Tuple



def make_key(prefix: str, *parts: Any) -> str:
    """Stable cache key; non-scalar parts are JSON-serialized."""
    raw = [prefix]
    for p in parts:
        if p is None:
            raw.append("")
        elif isinstance(p, (str, int, float, bool)):
            raw.append(str(p))
        else:
            raw.append(json.dumps(p, sort_keys=True, default=str))
    return hashlib.sha256("|".join(raw).encode("utf-8")).hexdigest()


class TTLCache:
    """
    Thread-safe LRU cache.
    - maxsize: entry cap, least recently used evicted first
    - ttl_seconds: entry lifetime, 0 means no expiry
    """

    __slots__ = ("_store", "_maxsize", "_ttl", "_lock", "hits", "misses")

    def __init__(self, maxsize: int = 1024, ttl_seconds: int = 3600):
        self._store: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._maxsize = max(1, maxsize)
        self._ttl = max(0, ttl_seconds)
        self._lock = RLock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._store)

    def _expired(self, stamp: float) -> bool:
        return self._ttl > 0 and (time.monotonic() - stamp) > self._ttl

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._store.get(key)
            if item is None or self._expired(item[0]):
                self._store.pop(key, None)
                self.misses += 1
                return None
            self._store.move_to_end(key)
            self.hits += 1
            return item[1]

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._store[key] = (time.monotonic(), value)
            self._store.move_to_end(key)
            while len(self._store) > self._maxsize:
                self._store.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

