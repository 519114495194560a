"""Bounded LRU cache with per-item expiry."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """Least-recently-used cache whose items expire ``ttl`` seconds after insertion.

    Args:
        max_size: Maximum number of items; the least recently used is evicted
        ttl: Seconds an item stays valid
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._items: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()

    def _expired(self, stored_at: float) -> bool:
        return self._clock() - stored_at > self.ttl

    def get(self, key: Hashable, default: Optional[Any] = None) -> Any:
        item = self._items.get(key)
        if item is None:
            return default
        stored_at, value = item
        if self._expired(stored_at):
            del self._items[key]
            return default
        self._items.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._items.pop(key, None)
        while len(self._items) >= self.max_size:
            self._items.popitem(last=False)
        self._items[key] = (self._clock(), value)

    def delete(self, key: Hashable) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, key: Hashable) -> bool:
        item = self._items.get(key)
        if item is None:
            return False
        if self._expired(item[0]):
            del self._items[key]
            return False
        return True

    def __len__(self) -> int:
        return len(self._items)
