"""
Fingerprint-keyed response cache with TTL eviction and single-flight.

A lookup returns one of three things:
- a live cached response (served without touching the queue)
- an attachment to the flight already executing that fingerprint
- a new flight, whose caller becomes the leader and must dispatch it

The entry map and the in-flight map share one short critical section that
is never held across a provider call. Each Flight guards its own state.
"""

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from .logging import get_logger
from .request import Fingerprint, TaskType

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60  # 1 hour


class FlightState(Enum):
    """Lifecycle of an in-flight execution."""
    PENDING = "pending"      # queued, no worker yet
    RUNNING = "running"      # a worker owns it
    DONE = "done"            # result or error broadcast
    ABANDONED = "abandoned"  # every caller detached before it finished


class Flight:
    """Single in-flight execution for one fingerprint.

    The leader counts as the first attached caller. Attaching is refused
    once the flight is finished or abandoned, so a late caller starts a new
    flight instead of joining a dead one.
    """

    def __init__(self, fingerprint: Fingerprint):
        self.fingerprint = fingerprint
        self.future: Future = Future()
        self._lock = threading.Lock()
        self._attached = 1
        self._state = FlightState.PENDING
        self._settled = False

    @property
    def state(self) -> FlightState:
        with self._lock:
            return self._state

    @property
    def attached(self) -> int:
        with self._lock:
            return self._attached

    def attach(self) -> bool:
        """Join this flight. Returns False if it can no longer be joined."""
        with self._lock:
            if self._state in (FlightState.DONE, FlightState.ABANDONED):
                return False
            self._attached += 1
            return True

    def detach(self) -> int:
        """Leave this flight. Returns the number of callers still attached."""
        with self._lock:
            if self._attached > 0:
                self._attached -= 1
            return self._attached

    def begin(self) -> bool:
        """Claim the flight for execution.

        Returns False when another worker already claimed it, or when no
        caller is attached any more (the flight is then abandoned).
        """
        with self._lock:
            if self._state != FlightState.PENDING:
                return False
            if self._attached == 0:
                self._state = FlightState.ABANDONED
                return False
            self._state = FlightState.RUNNING
            return True

    def abandon_if_unattached(self) -> bool:
        """Mark a running flight abandoned when nobody is waiting for it."""
        with self._lock:
            if self._attached == 0 and self._state in (FlightState.PENDING, FlightState.RUNNING):
                self._state = FlightState.ABANDONED
                return True
            return self._state == FlightState.ABANDONED

    def resolve(self, result: Any) -> None:
        """Broadcast a result to every attached caller."""
        with self._lock:
            if self._settled:
                return
            self._settled = True
            if self._state != FlightState.ABANDONED:
                self._state = FlightState.DONE
        self.future.set_result(result)

    def reject(self, error: BaseException) -> None:
        """Broadcast an error to every attached caller."""
        with self._lock:
            if self._settled:
                return
            self._settled = True
            if self._state != FlightState.ABANDONED:
                self._state = FlightState.DONE
        self.future.set_exception(error)


@dataclass(frozen=True)
class CachedResponse:
    """Completed response stored under its fingerprint."""
    fingerprint: Fingerprint
    response: Any
    provider_id: str
    created_at: float
    expires_at: float

    @property
    def content(self) -> str:
        return getattr(self.response, "content", self.response)

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of ResponseCache.lookup."""
    entry: Optional[CachedResponse] = None
    flight: Optional[Flight] = None
    leader: bool = False

    @property
    def hit(self) -> bool:
        return self.entry is not None


@dataclass
class CacheTTLPolicy:
    """TTL selection, most specific first: (provider, task), task, provider, default."""
    default_ttl_seconds: float = DEFAULT_TTL_SECONDS
    by_provider_task: Dict[Tuple[str, TaskType], float] = field(default_factory=dict)
    by_task: Dict[TaskType, float] = field(default_factory=dict)
    by_provider: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        """Validate TTL values are not negative."""
        values = [self.default_ttl_seconds]
        values.extend(self.by_provider_task.values())
        values.extend(self.by_task.values())
        values.extend(self.by_provider.values())
        if any(v < 0 for v in values):
            raise ValueError("cache TTL values cannot be negative")

    def ttl_for(self, provider_id: str, task_type: TaskType) -> float:
        if (provider_id, task_type) in self.by_provider_task:
            return self.by_provider_task[(provider_id, task_type)]
        if task_type in self.by_task:
            return self.by_task[task_type]
        if provider_id in self.by_provider:
            return self.by_provider[provider_id]
        return self.default_ttl_seconds


@dataclass(frozen=True)
class CacheStats:
    """Cache counters for diagnostics."""
    size: int
    in_flight: int
    hits: int
    misses: int
    attaches: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses + self.attaches
        if total == 0:
            return 0.0
        return self.hits / float(total)


class ResponseCache:
    """TTL cache of completed responses plus the single-flight table."""

    def __init__(
        self,
        capacity: int = 1024,
        ttl_policy: Optional[CacheTTLPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self.ttl_policy = ttl_policy or CacheTTLPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CachedResponse] = {}
        self._in_flight: Dict[str, Flight] = {}
        self._hits = 0
        self._misses = 0
        self._attaches = 0

    def get(self, fingerprint: Fingerprint) -> Optional[CachedResponse]:
        """Return the live entry for a fingerprint, if any. Never serves expired entries."""
        with self._lock:
            return self._live_entry(fingerprint.digest, self._clock())

    def lookup(self, fingerprint: Fingerprint) -> CacheLookup:
        """Serve from cache, join the in-flight call, or start a new flight."""
        key = fingerprint.digest
        with self._lock:
            entry = self._live_entry(key, self._clock())
            if entry is not None:
                self._hits += 1
                logger.debug("cache_hit", fingerprint=fingerprint.short)
                return CacheLookup(entry=entry)

            flight = self._in_flight.get(key)
            if flight is not None and flight.attach():
                self._attaches += 1
                logger.debug("cache_attach", fingerprint=fingerprint.short)
                return CacheLookup(flight=flight, leader=False)

            self._misses += 1
            flight = Flight(fingerprint)
            self._in_flight[key] = flight
            logger.debug("cache_miss", fingerprint=fingerprint.short)
            return CacheLookup(flight=flight, leader=True)

    def complete(
        self,
        fingerprint: Fingerprint,
        flight: Flight,
        response: Any,
        provider_id: str,
        task_type: TaskType,
    ) -> Optional[CachedResponse]:
        """Store a successful response and broadcast it to the flight's callers.

        A zero TTL broadcasts without storing.
        """
        key = fingerprint.digest
        ttl = self.ttl_policy.ttl_for(provider_id, task_type)
        stored = None
        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            if ttl > 0 and (existing is None or existing.created_at <= now):
                stored = CachedResponse(
                    fingerprint=fingerprint,
                    response=response,
                    provider_id=provider_id,
                    created_at=now,
                    expires_at=now + ttl,
                )
                self._entries[key] = stored
                self._evict(now)
            if self._in_flight.get(key) is flight:
                del self._in_flight[key]
        flight.resolve(response)
        return stored

    def fail(self, fingerprint: Fingerprint, flight: Flight, error: BaseException) -> None:
        """Drop the flight without caching and broadcast the error."""
        key = fingerprint.digest
        with self._lock:
            if self._in_flight.get(key) is flight:
                del self._in_flight[key]
        flight.reject(error)

    def invalidate(self, fingerprint: Fingerprint) -> bool:
        """Remove a cached entry. In-flight calls are unaffected."""
        with self._lock:
            return self._entries.pop(fingerprint.digest, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def in_flight(self, fingerprint: Fingerprint) -> Optional[Flight]:
        with self._lock:
            return self._in_flight.get(fingerprint.digest)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                in_flight=len(self._in_flight),
                hits=self._hits,
                misses=self._misses,
                attaches=self._attaches,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live_entry(self, key: str, now: float) -> Optional[CachedResponse]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_live(now):
            del self._entries[key]
            return None
        return entry

    def _evict(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if not e.is_live(now)]
        for key in expired:
            del self._entries[key]

        overflow = len(self._entries) - self.capacity
        if overflow <= 0:
            return
        by_expiry = sorted(self._entries.items(), key=lambda item: item[1].expires_at)
        for key, _ in by_expiry[:overflow]:
            del self._entries[key]
        logger.debug("cache_evicted", expired=len(expired), capacity_evictions=overflow)
