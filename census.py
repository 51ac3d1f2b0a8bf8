"""
Census ACS 5-year demographics for a single census tract.

Fetches the four attributes TractScout scores on — median household
income, total population, median home value, and owner-occupancy — from
the US Census Bureau ACS 5-Year API, plus the tract's internal point
(centroid) from TIGERweb.

Data source:
  - US Census Bureau ACS 5-Year Estimates (api.census.gov)
  - TIGERweb tract layer (tigerweb.geo.census.gov) for the centroid

Limitations:
  - ACS 5-year estimates are rolling averages, not point-in-time snapshots.
    The most recent data lags ~2 years behind the current date.
  - Small tracts may have high margins of error on some estimates.

This module holds no cache; freshness and de-duplication belong to
area_cache.AreaCache.
"""

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests

from ts_trace import get_trace

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

ACS_YEAR = os.environ.get("TRACTSCOUT_ACS_YEAR", "2022")
_ACS_BASE = f"https://api.census.gov/data/{ACS_YEAR}/acs/acs5"
_TIGERWEB_TRACTS = (
    "https://tigerweb.geo.census.gov/arcgis/rest/services/TIGERweb"
    f"/tigerWMS_ACS{ACS_YEAR}/MapServer/8/query"
)

# Timeouts (seconds)
_ACS_TIMEOUT = float(os.environ.get("TRACTSCOUT_HTTP_TIMEOUT", "8"))
_TIGERWEB_TIMEOUT = 6

# Census reports unavailable estimates as large negative sentinels
# (-666666666, -999999999, -888888888, ...).  Any negative value is missing.
_CENSUS_MISSING = "-666666666"

_ACS_INCOME = "B19013_001E"      # median household income (dollars)
_ACS_POPULATION = "B01003_001E"  # total population
_ACS_HOME_VALUE = "B25077_001E"  # median value, owner-occupied units (dollars)
_ACS_OWNER = "B25003_002E"       # owner-occupied housing units
_ACS_OCCUPIED = "B25003_001E"    # total occupied housing units

_ACS_VARS = [_ACS_INCOME, _ACS_POPULATION, _ACS_HOME_VALUE, _ACS_OWNER, _ACS_OCCUPIED]

# Ownership is optional; without it the area is treated as a 50/50 mix.
NEUTRAL_OWNERSHIP_RATE = 0.5

_GEOID_RE = re.compile(r"^\d{11}$")


class DemographicsFetchError(Exception):
    """Raised when tract demographics cannot be fetched or are incomplete."""

    def __init__(self, area_id: str, message: str, retryable: bool = False):
        super().__init__(f"{message} [tract={area_id}]")
        self.area_id = area_id
        self.retryable = retryable


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class DemographicSnapshot:
    """One fetched-and-timestamped set of tract demographics.

    Immutable; a refresh produces a new snapshot that replaces this one.
    ``fetched_at`` is epoch seconds.  ``centroid`` is (lat, lon) or None
    when TIGERweb could not be reached.
    """
    area_id: str
    median_income: float
    median_home_value: float
    population: int
    homeownership_rate: float
    centroid: Optional[Tuple[float, float]]
    fetched_at: float
    name: str = ""


# =============================================================================
# HELPERS
# =============================================================================

def split_geoid(area_id: str) -> Tuple[str, str, str]:
    """11-digit tract GEOID -> (state, county, tract)."""
    return area_id[:2], area_id[2:5], area_id[5:11]


def _safe_float(val: Any, default: Optional[float] = None) -> Optional[float]:
    """Convert a Census API value to float; negative sentinels are missing."""
    if val is None or val == "" or str(val) == _CENSUS_MISSING:
        return default
    try:
        f = float(val)
    except (TypeError, ValueError):
        return default
    if f < 0:
        return default
    return f


def _record_api(service: str, endpoint: str, t0: float,
                status_code: int, ok: bool, note: str = "") -> None:
    """Record an API call on the current trace, if any."""
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service=service,
            endpoint=endpoint,
            elapsed_ms=int((time.time() - t0) * 1000),
            status_code=status_code,
            provider_status="OK" if ok else (note or "ERROR"),
        )


def parse_acs_row(area_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a raw ACS row and convert it to snapshot fields.

    Income, population and home value are required and must be
    non-negative; ownership falls back to NEUTRAL_OWNERSHIP_RATE.
    """
    income = _safe_float(row.get(_ACS_INCOME))
    population = _safe_float(row.get(_ACS_POPULATION))
    home_value = _safe_float(row.get(_ACS_HOME_VALUE))

    missing = [
        label for label, val in (
            ("median_income", income),
            ("population", population),
            ("median_home_value", home_value),
        ) if val is None
    ]
    if missing:
        raise DemographicsFetchError(
            area_id, f"ACS response missing {', '.join(missing)}",
        )

    owner = _safe_float(row.get(_ACS_OWNER))
    occupied = _safe_float(row.get(_ACS_OCCUPIED))
    if owner is None or not occupied:
        ownership = NEUTRAL_OWNERSHIP_RATE
    else:
        ownership = max(0.0, min(1.0, owner / occupied))

    return {
        "median_income": income,
        "median_home_value": home_value,
        "population": int(population),
        "homeownership_rate": round(ownership, 4),
        "name": str(row.get("NAME") or ""),
    }


# =============================================================================
# SERIALIZATION — for persistent cache storage
# =============================================================================

def snapshot_to_dict(snapshot: DemographicSnapshot) -> dict:
    """Convert a snapshot to a plain, JSON-safe dict."""
    return {
        "area_id": snapshot.area_id,
        "name": snapshot.name,
        "median_income": snapshot.median_income,
        "median_home_value": snapshot.median_home_value,
        "population": snapshot.population,
        "homeownership_rate": snapshot.homeownership_rate,
        "centroid": list(snapshot.centroid) if snapshot.centroid else None,
        "fetched_at": snapshot.fetched_at,
    }


def snapshot_from_dict(data: dict) -> DemographicSnapshot:
    """Reconstruct a snapshot from snapshot_to_dict() output."""
    centroid = data.get("centroid")
    return DemographicSnapshot(
        area_id=data["area_id"],
        median_income=float(data["median_income"]),
        median_home_value=float(data["median_home_value"]),
        population=int(data["population"]),
        homeownership_rate=float(data.get("homeownership_rate", NEUTRAL_OWNERSHIP_RATE)),
        centroid=(float(centroid[0]), float(centroid[1])) if centroid else None,
        fetched_at=float(data["fetched_at"]),
        name=data.get("name", ""),
    )


def serialize_snapshot(snapshot: DemographicSnapshot) -> str:
    return json.dumps(snapshot_to_dict(snapshot), sort_keys=True)


def deserialize_snapshot(text: str) -> DemographicSnapshot:
    return snapshot_from_dict(json.loads(text))


# =============================================================================
# FETCHER
# =============================================================================

class CensusDemographicsFetcher:
    """Tract GEOID -> DemographicSnapshot via the ACS 5-year API.

    Stateless apart from configuration, so one instance can be shared by
    every worker thread.  requests.get opens a fresh connection per call.
    """

    MAX_RETRIES = 2
    RETRY_BACKOFF = [1, 2]  # seconds
    _RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(self, api_key: Optional[str] = None,
                 timeout: Optional[float] = None,
                 fetch_centroid: bool = True,
                 sleep=time.sleep):
        if api_key is None:
            api_key = os.environ.get("CENSUS_API_KEY", "")
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else _ACS_TIMEOUT
        self.fetch_centroid = fetch_centroid
        self._sleep = sleep
        if not api_key:
            logger.info("CENSUS_API_KEY not set; ACS requests limited to 500/day")

    def fetch(self, area_id: str) -> DemographicSnapshot:
        """Fetch a fresh snapshot for one tract.

        Raises:
            DemographicsFetchError: on network failure, non-2xx response,
                malformed body, or missing required fields.
        """
        if not isinstance(area_id, str) or not _GEOID_RE.match(area_id):
            raise DemographicsFetchError(str(area_id), "not an 11-digit tract GEOID")

        row = self._fetch_acs_with_retry(area_id)
        fields = parse_acs_row(area_id, row)
        centroid = self._lookup_centroid(area_id) if self.fetch_centroid else None

        return DemographicSnapshot(
            area_id=area_id,
            centroid=centroid,
            fetched_at=time.time(),
            **fields,
        )

    def _fetch_acs_with_retry(self, area_id: str) -> Dict[str, Any]:
        for attempt in range(1 + self.MAX_RETRIES):
            try:
                return self._fetch_acs(area_id)
            except DemographicsFetchError as e:
                if not e.retryable or attempt >= self.MAX_RETRIES:
                    raise
                sleep_time = self.RETRY_BACKOFF[attempt]
                logger.info(
                    "ACS fetch failed for %s (attempt %d/%d), retrying in %ds: %s",
                    area_id, attempt + 1, 1 + self.MAX_RETRIES, sleep_time, e,
                )
                self._sleep(sleep_time)
        raise DemographicsFetchError(area_id, "ACS fetch failed after all retries")

    def _fetch_acs(self, area_id: str) -> Dict[str, Any]:
        """One ACS request -> header-keyed row dict."""
        state, county, tract = split_geoid(area_id)
        params: Dict[str, str] = {
            "get": "NAME," + ",".join(_ACS_VARS),
            "for": f"tract:{tract}",
            "in": f"state:{state} county:{county}",
        }
        if self.api_key:
            params["key"] = self.api_key

        t0 = time.time()
        try:
            resp = requests.get(_ACS_BASE, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            _record_api("census_acs", "acs5/tract", t0, 0, False, "timeout")
            raise DemographicsFetchError(
                area_id, f"ACS request timed out after {self.timeout}s", retryable=True,
            ) from e
        except requests.RequestException as e:
            _record_api("census_acs", "acs5/tract", t0, 0, False, "exception")
            raise DemographicsFetchError(
                area_id, f"ACS request failed: {e}", retryable=True,
            ) from e

        _record_api("census_acs", "acs5/tract", t0, resp.status_code, resp.ok)
        if not resp.ok:
            raise DemographicsFetchError(
                area_id,
                f"ACS API returned HTTP {resp.status_code}",
                retryable=resp.status_code in self._RETRYABLE_STATUS,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise DemographicsFetchError(area_id, "ACS returned non-JSON body") from e

        # First row is headers, second row is the tract.
        if not isinstance(data, list) or len(data) < 2 \
                or not isinstance(data[0], list) or not isinstance(data[1], list):
            raise DemographicsFetchError(area_id, "ACS returned no rows for tract")
        return dict(zip(data[0], data[1]))

    def _lookup_centroid(self, area_id: str) -> Optional[Tuple[float, float]]:
        """TIGERweb internal point for the tract, or None on any failure."""
        params = {
            "where": f"GEOID='{area_id}'",
            "outFields": "GEOID,CENTLAT,CENTLON",
            "returnGeometry": "false",
            "f": "json",
        }
        t0 = time.time()
        try:
            resp = requests.get(_TIGERWEB_TRACTS, params=params, timeout=_TIGERWEB_TIMEOUT)
            _record_api("tigerweb", "tracts/query", t0, resp.status_code, resp.ok)
            if not resp.ok:
                logger.warning("TIGERweb returned %d for %s", resp.status_code, area_id)
                return None
            features = resp.json().get("features") or []
            if not features:
                return None
            attrs = features[0].get("attributes", {})
            lat = float(attrs["CENTLAT"])
            lon = float(attrs["CENTLON"])
            return lat, lon
        except requests.Timeout:
            _record_api("tigerweb", "tracts/query", t0, 0, False, "timeout")
            logger.warning("TIGERweb timed out for %s", area_id)
            return None
        except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError):
            _record_api("tigerweb", "tracts/query", t0, 0, False, "exception")
            logger.warning("TIGERweb centroid lookup failed for %s", area_id, exc_info=True)
            return None
