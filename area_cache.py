"""
Time-expiring, single-flight cache of tract demographic snapshots.

All demographic lookups in TractScout go through AreaCache.  It provides:
- Freshness check at read time (30-day validity from fetched_at)
- At most one in-flight fetch per tract: concurrent callers for the same
  tract wait on one fetch, callers for different tracts run in parallel
- Stale fallback: when a refresh fails and an older snapshot exists, the
  older snapshot is served and flagged
- A pluggable store: InMemorySnapshotStore for tests and short-lived
  processes, SqliteSnapshotStore for snapshots that survive restarts

A store is any object with get(area_id), put(snapshot), delete(area_id)
and clear() methods.  Stores must be safe to call from several threads.

Once a fetch has started, its result is committed to the store even if
the caller that triggered it has gone away; other waiters still need it.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from census import (
    DemographicSnapshot,
    DemographicsFetchError,
    deserialize_snapshot,
    serialize_snapshot,
)
from models import (
    clear_area_snapshots,
    delete_area_snapshot,
    get_area_snapshot,
    init_db,
    list_area_ids,
    set_area_snapshot,
)
from ts_trace import get_trace

logger = logging.getLogger(__name__)

SNAPSHOT_TTL_DAYS = 30
_SECONDS_PER_DAY = 24 * 60 * 60


# =============================================================================
# Stores
# =============================================================================

class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class InMemorySnapshotStore:
    """Process-local dict of snapshots guarded by a reader/writer lock."""

    def __init__(self):
        self._data: Dict[str, DemographicSnapshot] = {}
        self._rw = _ReadWriteLock()

    def get(self, area_id: str) -> Optional[DemographicSnapshot]:
        with self._rw.read():
            return self._data.get(area_id)

    def put(self, snapshot: DemographicSnapshot) -> None:
        with self._rw.write():
            self._data[snapshot.area_id] = snapshot

    def delete(self, area_id: str) -> bool:
        with self._rw.write():
            return self._data.pop(area_id, None) is not None

    def clear(self) -> int:
        with self._rw.write():
            count = len(self._data)
            self._data.clear()
            return count

    def __len__(self):
        with self._rw.read():
            return len(self._data)


class SqliteSnapshotStore:
    """Durable store backed by the models.area_snapshots table.

    SQLite (WAL mode) handles reader/writer concurrency itself; each call
    opens its own connection, so no Python-level lock is needed.  A
    corrupted row is logged and treated as a miss.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        init_db(db_path)

    def get(self, area_id: str) -> Optional[DemographicSnapshot]:
        row = get_area_snapshot(area_id, self.db_path)
        if row is None:
            return None
        snapshot_json, _fetched_at = row
        try:
            return deserialize_snapshot(snapshot_json)
        except (ValueError, KeyError, TypeError):
            logger.warning("Corrupted area snapshot for %s, treating as miss",
                           area_id, exc_info=True)
            return None

    def put(self, snapshot: DemographicSnapshot) -> None:
        set_area_snapshot(
            snapshot.area_id, serialize_snapshot(snapshot),
            snapshot.fetched_at, self.db_path,
        )

    def delete(self, area_id: str) -> bool:
        return delete_area_snapshot(area_id, self.db_path)

    def clear(self) -> int:
        return clear_area_snapshots(self.db_path)

    def area_ids(self) -> List[str]:
        return list_area_ids(self.db_path)


# =============================================================================
# Cache
# =============================================================================

@dataclass(frozen=True)
class CacheLookup:
    """A snapshot plus how it was obtained.

    source is "cache" (fresh hit), "fetched" (new snapshot committed) or
    "stale_fallback" (refresh failed; an expired snapshot was served).
    """
    snapshot: DemographicSnapshot
    source: str

    @property
    def stale(self) -> bool:
        return self.source == "stale_fallback"


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class AreaCache:
    """Serve tract snapshots, refreshing them at most once per tract at a time.

    Args:
        fetcher: object with ``fetch(area_id) -> DemographicSnapshot`` that
            raises DemographicsFetchError on failure.
        store: snapshot store; defaults to InMemorySnapshotStore.
        clock: returns the current epoch seconds; injectable for tests.
        ttl_days: validity window of a snapshot.
    """

    def __init__(self, fetcher, store=None,
                 clock: Callable[[], float] = time.time,
                 ttl_days: float = SNAPSHOT_TTL_DAYS):
        self.fetcher = fetcher
        self.store = store if store is not None else InMemorySnapshotStore()
        self.clock = clock
        self.ttl_seconds = ttl_days * _SECONDS_PER_DAY
        self._registry_lock = threading.Lock()
        self._key_locks: Dict[str, _KeyLock] = {}

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def is_fresh(self, snapshot: DemographicSnapshot, now: Optional[float] = None) -> bool:
        if now is None:
            now = self.clock()
        return now - snapshot.fetched_at < self.ttl_seconds

    # ------------------------------------------------------------------
    # Per-key critical section
    # ------------------------------------------------------------------

    @contextmanager
    def _single_flight(self, area_id: str):
        """Hold the tract's lock; the registry entry is dropped when unused."""
        with self._registry_lock:
            entry = self._key_locks.get(area_id)
            if entry is None:
                entry = self._key_locks[area_id] = _KeyLock()
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[area_id]

    def pending_keys(self) -> int:
        """Number of tracts with a caller inside or waiting on the critical section."""
        with self._registry_lock:
            return len(self._key_locks)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def lookup(self, area_id: str) -> CacheLookup:
        """Return a snapshot for *area_id*, fetching only when absent or stale.

        Raises:
            DemographicsFetchError: the fetch failed and no earlier
                snapshot exists to fall back on.
        """
        cached = self.store.get(area_id)
        if cached is not None and self.is_fresh(cached):
            _record_cache_event(area_id, "cache_hit")
            return CacheLookup(cached, "cache")

        with self._single_flight(area_id):
            # Another caller may have refreshed while we waited.
            cached = self.store.get(area_id)
            if cached is not None and self.is_fresh(cached):
                _record_cache_event(area_id, "cache_hit")
                return CacheLookup(cached, "cache")

            try:
                fetched = self.fetcher.fetch(area_id)
            except DemographicsFetchError as e:
                if cached is not None:
                    age_days = (self.clock() - cached.fetched_at) / _SECONDS_PER_DAY
                    logger.warning(
                        "Demographics refresh failed for %s; serving stale snapshot "
                        "(%.1f days old): %s", area_id, age_days, e,
                    )
                    _record_cache_event(area_id, "stale_cache")
                    return CacheLookup(cached, "stale_fallback")
                raise

            snapshot = replace(fetched, area_id=area_id, fetched_at=self.clock())
            self.store.put(snapshot)
            logger.debug("Stored fresh snapshot for %s", area_id)
            return CacheLookup(snapshot, "fetched")

    def get_or_fetch(self, area_id: str) -> DemographicSnapshot:
        """Snapshot for *area_id* (fresh, newly fetched, or stale fallback)."""
        return self.lookup(area_id).snapshot

    def peek(self, area_id: str) -> Optional[DemographicSnapshot]:
        """Stored snapshot regardless of age, without fetching."""
        return self.store.get(area_id)

    def invalidate(self, area_id: str) -> bool:
        """Drop one tract's snapshot so the next lookup refetches."""
        with self._single_flight(area_id):
            return self.store.delete(area_id)

    def clear(self) -> int:
        """Evict every snapshot. Returns the number removed."""
        count = self.store.clear()
        logger.info("Area cache cleared (%d snapshots)", count)
        return count


def _record_cache_event(area_id: str, status: str) -> None:
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service="area_cache",
            endpoint=area_id,
            elapsed_ms=0,
            status_code=0,
            provider_status=status,
        )
