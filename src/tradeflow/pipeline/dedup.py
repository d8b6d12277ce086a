"""Recent-history set of (pair, trade_id) keys for suppressing redelivered records."""

from __future__ import annotations

import time
from collections import OrderedDict
from threading import Lock
from typing import Callable, Hashable


class DedupWindow:
    """Bounded LRU with a time-to-live.

    A key is forgotten when either `max_size` newer keys have been added or
    `ttl_sec` has passed since it was last added, whichever comes first.
    Duplicates that fall outside the window are absorbed by the idempotent store.
    """

    def __init__(
        self,
        max_size: int = 100_000,
        ttl_sec: float | None = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._seen: OrderedDict[Hashable, float] = OrderedDict()
        self._lock = Lock()

    def _expire(self, now: float) -> None:
        if self.ttl_sec is None:
            return
        cutoff = now - self.ttl_sec
        while self._seen:
            key, added = next(iter(self._seen.items()))
            if added >= cutoff:
                break
            self._seen.popitem(last=False)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            self._expire(self._clock())
            return key in self._seen

    def __len__(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return len(self._seen)

    def add(self, key: Hashable) -> None:
        with self._lock:
            now = self._clock()
            self._expire(now)
            self._seen[key] = now
            self._seen.move_to_end(key)
            while len(self._seen) > self.max_size:
                self._seen.popitem(last=False)

    def add_many(self, keys: list[Hashable]) -> None:
        for key in keys:
            self.add(key)
