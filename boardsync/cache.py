"""Thread-safe TTL cache used to avoid redundant remote reads.

Entries expire after a per-entry time-to-live.  Expired entries are dropped
lazily when read and proactively by a periodic sweep that runs on an injected
:class:`~boardsync.scheduling.Scheduler` between :meth:`TTLCache.open` and
:meth:`TTLCache.close`, which bounds memory even for keys nobody reads again.

There is no module-level cache instance.  :class:`EntityCaches` owns one cache
per entity type and is constructed and injected by whatever component talks to
the remote board store.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

from . import config
from .config import CacheSettings
from .scheduling import Scheduler, TimerHandle

LOGGER = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    """Counters for capacity planning."""

    hits: int
    misses: int
    sets: int
    evictions: int
    size: int

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Hit percentage rounded to two decimals; ``0.0`` without requests."""
        if not self.total_requests:
            return 0.0
        return round(self.hits / self.total_requests * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "size": self.size,
            "total_requests": self.total_requests,
            "hit_rate": f"{self.hit_rate:.2f}%",
        }


class TTLCache(Generic[K, V]):
    """An expiring key/value store with hit/miss accounting."""

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
        name: str = "cache",
    ) -> None:
        self.settings = settings or CacheSettings()
        self.name = name
        self._clock = clock or (lambda: time.monotonic() * 1000.0)
        self._entries: Dict[K, CacheEntry[V]] = {}
        self._lock = RLock()
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0
        self._scheduler: Optional[Scheduler] = None
        self._sweep_handle: Optional[TimerHandle] = None

    @property
    def default_ttl_ms(self) -> int:
        return self.settings.default_ttl_ms

    def get(self, key: K) -> Optional[V]:
        """Return the cached value or ``None`` on a miss.

        An expired entry is removed and counts as both a miss and an eviction.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() > entry.expires_at:
                del self._entries[key]
                self._misses += 1
                self._evictions += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: K, value: V, ttl_ms: Optional[float] = None) -> None:
        """Store ``value`` for ``ttl_ms`` milliseconds (default TTL if omitted)."""
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        if ttl <= 0:
            raise ValueError("ttl_ms must be greater than zero")
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(value=value, created_at=now, expires_at=now + ttl)
            self._sets += 1

    def delete(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        """Remove all cached entries."""
        with self._lock:
            self._entries.clear()

    def get_or_fetch(
        self,
        key: K,
        fetch: Callable[[K], Optional[V]],
        ttl_ms: Optional[float] = None,
    ) -> Optional[V]:
        """Read-through lookup; falsy fetch results are returned but not cached."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = fetch(key)
        if value:
            self.set(key, value, ttl_ms)
        return value

    def sweep(self) -> int:
        """Evict every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
        if expired:
            LOGGER.debug("[%s] cleaned %d expired entries", self.name, len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                evictions=self._evictions,
                size=len(self._entries),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # -- sweep lifecycle -------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._scheduler is not None

    def open(self, scheduler: Scheduler) -> "TTLCache[K, V]":
        """Start the periodic sweep on ``scheduler``; opening twice is a no-op."""
        if self._scheduler is None:
            self._scheduler = scheduler
            self._arm_sweep()
        return self

    def close(self) -> None:
        """Stop the sweep and drop all entries."""
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None
        self._scheduler = None
        self.clear()

    def _arm_sweep(self) -> None:
        if self._scheduler is None:
            return
        self._sweep_handle = self._scheduler.call_later(
            self.settings.sweep_interval_ms, self._on_sweep
        )

    def _on_sweep(self) -> None:
        self._sweep_handle = None
        self.sweep()
        self._arm_sweep()

    def __enter__(self) -> "TTLCache[K, V]":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class EntityCaches:
    """Caches owned by the external data gateway.

    Users change rarely and get a long TTL; boards are edited constantly and
    get a short one.
    """

    def __init__(
        self,
        *,
        users: Optional[TTLCache[str, Any]] = None,
        boards: Optional[TTLCache[str, Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.users = users or TTLCache(config.USER_CACHE, clock=clock, name="users")
        self.boards = boards or TTLCache(config.BOARD_CACHE, clock=clock, name="boards")

    def open(self, scheduler: Scheduler) -> "EntityCaches":
        self.users.open(scheduler)
        self.boards.open(scheduler)
        return self

    def close(self) -> None:
        self.users.close()
        self.boards.close()

    def get_cached_user(self, user_id: str, fetch: Callable[[str], Any]) -> Any:
        return self.users.get_or_fetch(f"user:{user_id}", lambda _key: fetch(user_id))

    def get_cached_board(self, board_id: str, fetch: Callable[[str], Any]) -> Any:
        return self.boards.get_or_fetch(f"board:{board_id}", lambda _key: fetch(board_id))

    def invalidate_user(self, user_id: str) -> None:
        self.users.delete(f"user:{user_id}")

    def invalidate_board(self, board_id: str) -> None:
        """Call after a board is updated remotely."""
        self.boards.delete(f"board:{board_id}")

    def stats(self) -> Dict[str, CacheStats]:
        return {"users": self.users.stats(), "boards": self.boards.stats()}

    def __enter__(self) -> "EntityCaches":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
