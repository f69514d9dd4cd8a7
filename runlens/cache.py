"""
Result Cache - in-process, time-invalidated cache-aside store.

Dashboard viewers poll the same handful of metrics. The cache keeps each
computed value for a short TTL so N concurrent viewers cost roughly one
computation per metric per TTL.

Rules:
------
- A value is served only while now - created_at < ttl
- Expiry is checked lazily on lookup; there is no background sweeper
- Failed computations are never stored
- Entries are immutable; a write replaces the whole entry
- The lock guards the map only; computations run outside it

Concurrency:
------------
By default concurrent misses on one key each compute, and the last to
finish wins. With single_flight=True the first miss computes and other
callers for the same key wait for its result (or its exception).
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 30.0


@dataclass(frozen=True)
class CachedEntry(Generic[T]):
    """A computed value and when it was stored."""

    key: str
    value: T
    created_at: float
    """Clock reading (monotonic seconds) when the value was stored."""

    ttl_seconds: float

    def is_valid(self, now: float) -> bool:
        return now - self.created_at < self.ttl_seconds

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "hit_rate": round(self.hit_rate, 4),
        }


class ResultCache:
    """
    Thread-safe keyed cache with per-entry TTL.

    Usage:
        cache = ResultCache(default_ttl_seconds=30)
        value = cache.get_or_compute("metrics:ALL", compute_metrics)
    """

    def __init__(
        self,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        single_flight: bool = False,
    ):
        if default_ttl_seconds <= 0:
            raise ValueError(f"default_ttl_seconds must be positive, got {default_ttl_seconds}")
        self.default_ttl_seconds = default_ttl_seconds
        self.single_flight = single_flight
        self._clock = clock
        self._entries: Dict[str, CachedEntry] = {}
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def lookup(self, key: str) -> Optional[CachedEntry]:
        """Return the entry for key if still valid, evicting it if expired."""
        with self._lock:
            return self._lookup_locked(key)

    def _lookup_locked(self, key: str) -> Optional[CachedEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_valid(self._clock()):
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, value: T, ttl_seconds: Optional[float] = None) -> CachedEntry:
        """Store a value, replacing any existing entry."""
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl}")
        entry = CachedEntry(key=key, value=value, created_at=self._clock(), ttl_seconds=ttl)
        with self._lock:
            self._entries[key] = entry
        return entry

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], T],
        ttl_seconds: Optional[float] = None,
    ) -> T:
        """
        Cached value for key, computing and storing it on a miss.

        Args:
            key: Cache key
            compute: Zero-argument function producing the value
            ttl_seconds: Entry lifetime. Uses the default if not provided.

        Returns:
            The cached or freshly computed value

        Raises:
            Whatever compute raises. Nothing is stored in that case.
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl}")
        leader_future: Optional[Future] = None

        with self._lock:
            entry = self._lookup_locked(key)
            if entry is not None:
                self._hits += 1
                logger.debug(f"[Cache] hit {key}")
                return entry.value

            self._misses += 1
            if self.single_flight:
                pending = self._in_flight.get(key)
                if pending is None:
                    leader_future = Future()
                    self._in_flight[key] = leader_future

        if self.single_flight and leader_future is None:
            logger.debug(f"[Cache] waiting on in-flight {key}")
            return pending.result()

        logger.debug(f"[Cache] miss {key}")
        try:
            value = compute()
        except BaseException as e:
            if leader_future is not None:
                self._release(key, leader_future)
                leader_future.set_exception(e)
            raise

        self.put(key, value, ttl)
        if leader_future is not None:
            self._release(key, leader_future)
            leader_future.set_result(value)
        return value

    def _release(self, key: str, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns True if it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix. Returns the count."""
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.info(f"[Cache] invalidated {len(doomed)} entries with prefix '{prefix}'")
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[str]:
        """Keys of currently valid entries, sorted."""
        now = self._clock()
        with self._lock:
            return sorted(k for k, e in self._entries.items() if e.is_valid(now))

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses, size=len(self._entries))
