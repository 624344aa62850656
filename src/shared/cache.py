"""
Small bounded in-process cache with per-entry TTL.

Used for values that are expensive to fetch from Telegram but change
rarely (resolved channel entities).  Instances are passed in as
constructor dependencies so tests can inject a cache with a fake clock.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """LRU-ordered cache whose entries expire after ``ttl_seconds``.

    Args:
        max_size: Maximum number of live entries; the least recently used
                  entry is evicted first.
        ttl_seconds: Lifetime of an entry from the moment it was set.
        clock: Monotonic time source (seconds).
    """

    def __init__(
        self,
        max_size: int = 256,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_size = max(1, int(max_size))
        self._ttl = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: Hashable, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        self._entries[key] = (self._clock() + self._ttl, value)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)

    def pop(self, key: Hashable) -> Optional[V]:
        entry = self._entries.pop(key, None)
        return entry[1] if entry is not None else None

    def clear(self) -> None:
        self._entries.clear()
