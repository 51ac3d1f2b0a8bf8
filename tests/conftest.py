"""Shared fixtures for the TractScout test suite.

Points the SQLite cache at a temporary file and provides in-process fakes
for the two network-bound collaborators (tract resolver and demographics
fetcher) plus a controllable clock.
"""

import atexit
import os
import tempfile
import threading

import pytest

# Point the DB at a temp file BEFORE importing models (it reads DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["TRACTSCOUT_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

from census import DemographicSnapshot, DemographicsFetchError  # noqa: E402
from models import init_db, _get_db  # noqa: E402
from tract_geocoder import GeoResolutionError  # noqa: E402

DAY = 24 * 60 * 60
T0 = 1_700_000_000.0


@pytest.fixture(autouse=True)
def _fresh_db():
    """Empty the cache tables before every test."""
    init_db()
    conn = _get_db()
    for table in ("area_snapshots", "tract_lookup"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


def make_snapshot(area_id="36119025300", income=120_000, home_value=350_000,
                  population=5_000, ownership=0.7, fetched_at=T0, name=""):
    return DemographicSnapshot(
        area_id=area_id,
        median_income=income,
        median_home_value=home_value,
        population=population,
        homeownership_rate=ownership,
        centroid=(41.0, -73.8),
        fetched_at=fetched_at,
        name=name,
    )


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now=T0):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now += seconds


class FakeFetcher:
    """Counts fetch() calls and serves canned snapshots.

    ``data`` maps area_id -> dict of snapshot kwargs; ``fail`` is a set of
    area_ids that raise DemographicsFetchError.  ``gate`` (threading.Event)
    blocks every fetch until set, to hold callers inside the critical section.
    """

    def __init__(self, data=None, fail=None, gate=None, delay=0.0):
        self.data = dict(data or {})
        self.fail = set(fail or ())
        self.gate = gate
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    @property
    def call_count(self):
        with self._lock:
            return len(self.calls)

    def fetch(self, area_id):
        with self._lock:
            self.calls.append(area_id)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.delay:
            threading.Event().wait(self.delay)
        if area_id in self.fail:
            raise DemographicsFetchError(area_id, "provider unavailable", retryable=True)
        kwargs = self.data.get(area_id, {})
        return make_snapshot(area_id=area_id, fetched_at=0.0, **kwargs)


class FakeResolver:
    """Maps Coordinate -> area_id from a dict of (lat, lng) -> area_id.

    Unknown coordinates raise GeoResolutionError("out_of_coverage").
    """

    def __init__(self, mapping, unavailable=None):
        self.mapping = dict(mapping)
        self.unavailable = set(unavailable or ())
        self.calls = []
        self._lock = threading.Lock()

    def resolve(self, coord):
        key = (coord.latitude, coord.longitude)
        with self._lock:
            self.calls.append(key)
        if key in self.unavailable:
            raise GeoResolutionError("provider down", reason="unavailable")
        if key not in self.mapping:
            raise GeoResolutionError("outside coverage", reason="out_of_coverage")
        return self.mapping[key]


@pytest.fixture()
def clock():
    return FakeClock()
