"""
Coordinate -> census tract resolution.

Uses the FCC Area API (primary) with the Census Geocoder as fallback,
returning the 11-digit tract GEOID (SSCCCTTTTTT).

Tract boundaries are static, so a resolved coordinate is memoised for the
life of the process (and optionally in SQLite via models.tract_lookup).
This memo is independent of the 30-day demographic cache.

Coverage is US states, DC and Puerto Rico — the geographies the ACS
5-year tract tables cover.  Anything else raises GeoResolutionError with
reason "out_of_coverage".
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from models import get_tract_lookup, init_db, set_tract_lookup
from ts_trace import get_trace

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

_FCC_AREA_API = "https://geo.fcc.gov/api/census/area"
_CENSUS_GEOCODER = "https://geocoding.geo.census.gov/geocoder/geographies/coordinates"

# Timeouts (seconds)
_FCC_TIMEOUT = 6
_CENSUS_GEO_TIMEOUT = 6

# Memo key precision: 6 decimal places is ~11 cm.
_COORD_PRECISION = 6

_PUERTO_RICO_FIPS = 72


class GeoResolutionError(Exception):
    """Raised when a coordinate cannot be mapped to a supported census tract.

    ``reason`` is one of "invalid_coordinate", "out_of_coverage",
    "unavailable" or "malformed".
    """

    def __init__(self, message: str, reason: str = "unavailable"):
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def is_valid(self) -> bool:
        lat, lng = self.latitude, self.longitude
        if isinstance(lat, bool) or isinstance(lng, bool):
            return False
        if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
            return False
        if not (math.isfinite(lat) and math.isfinite(lng)):
            return False
        return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0

    def key(self) -> str:
        return f"{self.latitude:.{_COORD_PRECISION}f},{self.longitude:.{_COORD_PRECISION}f}"


def is_supported_state(state_fips: str) -> bool:
    """50 states + DC use FIPS 01-56; Puerto Rico is 72."""
    try:
        code = int(state_fips)
    except (TypeError, ValueError):
        return False
    return 1 <= code <= 56 or code == _PUERTO_RICO_FIPS


def _record_api(service: str, endpoint: str, t0: float,
                status_code: int, ok: bool, note: str = "") -> None:
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service=service,
            endpoint=endpoint,
            elapsed_ms=int((time.time() - t0) * 1000),
            status_code=status_code,
            provider_status="OK" if ok else (note or "ERROR"),
        )


def _validated_geoid(geoid: str, source: str) -> str:
    if len(geoid) != 11 or not geoid.isdigit():
        raise GeoResolutionError(
            f"{source} returned malformed tract id {geoid!r}", reason="malformed",
        )
    if not is_supported_state(geoid[:2]):
        raise GeoResolutionError(
            f"{source} placed coordinate in unsupported state {geoid[:2]}",
            reason="out_of_coverage",
        )
    return geoid


# =============================================================================
# PROVIDERS
# =============================================================================

def _lookup_tract_fcc(coord: Coordinate) -> str:
    """Primary: FCC Area API -> tract GEOID."""
    t0 = time.time()
    params = {
        "lat": coord.latitude,
        "lon": coord.longitude,
        "censusYear": "2020",
        "format": "json",
    }
    try:
        resp = requests.get(_FCC_AREA_API, params=params, timeout=_FCC_TIMEOUT)
    except requests.Timeout as e:
        _record_api("fcc_area", "census/area", t0, 0, False, "timeout")
        raise GeoResolutionError("FCC Area API timed out") from e
    except requests.RequestException as e:
        _record_api("fcc_area", "census/area", t0, 0, False, "exception")
        raise GeoResolutionError(f"FCC Area API failed: {e}") from e

    _record_api("fcc_area", "census/area", t0, resp.status_code, resp.ok)
    if not resp.ok:
        raise GeoResolutionError(f"FCC Area API returned {resp.status_code}")

    try:
        data = resp.json()
    except ValueError as e:
        raise GeoResolutionError("FCC Area API returned non-JSON", reason="malformed") from e
    if not isinstance(data, dict):
        raise GeoResolutionError("FCC Area API returned unexpected payload", reason="malformed")

    results = data.get("results")
    if results is None:
        raise GeoResolutionError("FCC Area API response has no results key", reason="malformed")
    if not results:
        # FCC answers outside US coverage with an empty result list.
        raise GeoResolutionError("FCC Area API found no census block", reason="out_of_coverage")

    # block_fips = SSCCCTTTTTTBBBB (15 chars)
    block_fips = str(results[0].get("block_fips") or "")
    return _validated_geoid(block_fips[:11], "FCC Area API")


def _lookup_tract_census(coord: Coordinate) -> str:
    """Fallback: Census Geocoder -> tract GEOID."""
    t0 = time.time()
    params = {
        "x": coord.longitude,
        "y": coord.latitude,
        "benchmark": "Public_AR_Current",
        "vintage": "Census2020_Current",
        "format": "json",
    }
    try:
        resp = requests.get(_CENSUS_GEOCODER, params=params, timeout=_CENSUS_GEO_TIMEOUT)
    except requests.Timeout as e:
        _record_api("census_geocoder", "geographies/coordinates", t0, 0, False, "timeout")
        raise GeoResolutionError("Census Geocoder timed out") from e
    except requests.RequestException as e:
        _record_api("census_geocoder", "geographies/coordinates", t0, 0, False, "exception")
        raise GeoResolutionError(f"Census Geocoder failed: {e}") from e

    _record_api("census_geocoder", "geographies/coordinates", t0,
                resp.status_code, resp.ok)
    if not resp.ok:
        raise GeoResolutionError(f"Census Geocoder returned {resp.status_code}")

    try:
        data = resp.json()
        geographies = data["result"]["geographies"]
    except (ValueError, KeyError, TypeError) as e:
        raise GeoResolutionError("Census Geocoder returned unexpected payload",
                                 reason="malformed") from e

    tracts = geographies.get("Census Tracts") or []
    if not tracts:
        raise GeoResolutionError("Census Geocoder found no tract", reason="out_of_coverage")

    t = tracts[0]
    geoid = str(t.get("GEOID") or f"{t.get('STATE', '')}{t.get('COUNTY', '')}{t.get('TRACT', '')}")
    return _validated_geoid(geoid, "Census Geocoder")


# =============================================================================
# RESOLVER
# =============================================================================

class TractGeocoder:
    """Resolve coordinates to tract GEOIDs with a thread-safe memo.

    With ``persist=True`` resolved tracts are also written to the SQLite
    tract_lookup table and survive restarts.
    """

    def __init__(self, persist: bool = False, db_path: Optional[str] = None):
        self.persist = persist
        self.db_path = db_path
        self._memo: Dict[str, str] = {}
        self._lock = threading.Lock()
        if persist:
            init_db(db_path)

    def resolve(self, coord: Coordinate) -> str:
        """Return the tract GEOID for *coord*.

        Raises:
            GeoResolutionError: invalid coordinate, outside coverage,
                both providers unreachable, or malformed responses.
        """
        if not coord.is_valid():
            raise GeoResolutionError(
                f"invalid coordinate ({coord.latitude!r}, {coord.longitude!r})",
                reason="invalid_coordinate",
            )

        key = coord.key()
        with self._lock:
            cached = self._memo.get(key)
        if cached is not None:
            return cached

        if self.persist:
            stored = get_tract_lookup(key, self.db_path)
            if stored:
                with self._lock:
                    self._memo[key] = stored
                return stored

        geoid = self._lookup(coord)

        with self._lock:
            self._memo[key] = geoid
        if self.persist:
            set_tract_lookup(key, geoid, self.db_path)
        return geoid

    def _lookup(self, coord: Coordinate) -> str:
        try:
            return _lookup_tract_fcc(coord)
        except GeoResolutionError as fcc_err:
            logger.info("FCC Area API miss (%s), trying Census Geocoder fallback", fcc_err)
            try:
                return _lookup_tract_census(coord)
            except GeoResolutionError as census_err:
                # A definite "not in coverage" from either provider wins over
                # a transport failure from the other.
                if "out_of_coverage" in (fcc_err.reason, census_err.reason):
                    raise GeoResolutionError(
                        f"({coord.latitude:.4f}, {coord.longitude:.4f}) is outside supported coverage",
                        reason="out_of_coverage",
                    ) from census_err
                raise
