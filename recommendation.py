"""
Area recommendations: rank census tracts for door-to-door prospecting.

Pipeline for one recommend() call:
  1. resolve  — distinct lead coordinates -> tract GEOIDs (parallel)
  2. fetch    — one AreaCache lookup per distinct tract (parallel)
  3. perform  — first-party conversion stats per tract
  4. score    — ScoreEngine per tract
  5. rank     — total desc, performance desc, population asc, GEOID asc

Network stages run on a bounded ThreadPoolExecutor.  Failures are local:
a coordinate that cannot be resolved is skipped and counted; a tract whose
demographics cannot be fetched is dropped from the ranking (or served from
a stale snapshot when one exists).  Only invalid preferences abort the call.

Sorting happens after every score is in, so thread completion order never
affects the output.
"""

import logging
import os
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from area_cache import AreaCache, CacheLookup
from census import DemographicSnapshot, DemographicsFetchError, snapshot_to_dict
from performance import LeadRecord, PerformanceStats, aggregate_all
from preferences import TargetPreferences, ValidationError
from score_engine import ScoreBreakdown, score
from scoring_config import SCORING_MODEL, ScoringModel
from tract_geocoder import Coordinate, GeoResolutionError, TractGeocoder
from ts_trace import TraceContext, clear_trace, get_trace, set_trace

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_WORKERS_LIMIT = 16
DEFAULT_MAX_WORKERS = max(1, min(MAX_WORKERS_LIMIT, int(os.environ.get("TRACTSCOUT_MAX_WORKERS", "8"))))

# How often a waiting recommend() checks its cancel event (seconds).
_CANCEL_POLL_SECONDS = 0.05


# =============================================================================
# Result types
# =============================================================================

@dataclass(frozen=True)
class RankedArea:
    rank: int
    area_id: str
    snapshot: DemographicSnapshot
    breakdown: ScoreBreakdown
    performance: PerformanceStats
    stale: bool = False

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "area_id": self.area_id,
            "snapshot": snapshot_to_dict(self.snapshot),
            "score": self.breakdown.to_dict(),
            "performance": self.performance.to_dict(),
            "stale": self.stale,
        }


@dataclass
class RecommendationResult:
    """Ranked tracts plus what was skipped along the way.

    An empty ``areas`` list means "no data yet", not an error.
    """
    areas: List[RankedArea] = field(default_factory=list)
    scored_areas: int = 0
    skipped_coordinates: int = 0
    out_of_coverage: int = 0
    failed_areas: List[str] = field(default_factory=list)
    stale_areas: List[str] = field(default_factory=list)
    cancelled: bool = False
    model_version: str = ""
    trace_id: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.areas

    def to_dict(self) -> dict:
        """JSON-safe dict; identical inputs produce identical output."""
        return {
            "areas": [a.to_dict() for a in self.areas],
            "scored_areas": self.scored_areas,
            "skipped_coordinates": self.skipped_coordinates,
            "out_of_coverage": self.out_of_coverage,
            "failed_areas": list(self.failed_areas),
            "stale_areas": list(self.stale_areas),
            "cancelled": self.cancelled,
            "model_version": self.model_version,
        }


def rank_key(area_id: str, snapshot: DemographicSnapshot, breakdown: ScoreBreakdown):
    """Sort key: best total first, then proven performance, then less
    saturated (smaller) tracts, then GEOID for a total order."""
    return (-breakdown.total_score, -breakdown.performance_score,
            snapshot.population, area_id)


def _as_coordinate(value: Any) -> Optional[Coordinate]:
    if isinstance(value, Coordinate):
        return value
    try:
        lat, lng = value
    except (TypeError, ValueError):
        return None
    return Coordinate(lat, lng)


# =============================================================================
# Service
# =============================================================================

class RecommendationService:
    """Orchestrates resolve -> fetch -> score -> rank.

    Args:
        resolver: object with ``resolve(Coordinate) -> str`` raising
            GeoResolutionError (TractGeocoder in production).
        cache: AreaCache wrapping the demographics fetcher.
        max_workers: concurrent outbound calls, clamped to [1, 16].
    """

    def __init__(self, resolver: TractGeocoder, cache: AreaCache,
                 max_workers: Optional[int] = None,
                 model: ScoringModel = SCORING_MODEL):
        if max_workers is None:
            max_workers = DEFAULT_MAX_WORKERS
        self.resolver = resolver
        self.cache = cache
        self.max_workers = max(1, min(MAX_WORKERS_LIMIT, int(max_workers)))
        self.model = model

    # ------------------------------------------------------------------
    # Bounded parallel map
    # ------------------------------------------------------------------

    def _run_parallel(
        self,
        fn: Callable[[Any], Any],
        keys: Sequence[Any],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[Dict[Any, Any], Dict[Any, Exception], bool]:
        """Run fn over keys on a bounded pool.

        Returns (results, errors, cancelled).  On cancellation, tasks not
        yet started are dropped; running tasks finish in the background.
        """
        results: Dict[Any, Any] = {}
        errors: Dict[Any, Exception] = {}
        if not keys:
            return results, errors, False

        parent_trace = get_trace()

        def _task(key):
            set_trace(parent_trace)
            try:
                return fn(key)
            finally:
                clear_trace()

        cancelled = False
        pool = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(keys)),
            thread_name_prefix="tractscout",
        )
        try:
            pending = {pool.submit(_task, key): key for key in keys}
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                done, _ = wait(list(pending), timeout=_CANCEL_POLL_SECONDS,
                               return_when=FIRST_COMPLETED)
                for future in done:
                    key = pending.pop(future)
                    try:
                        results[key] = future.result()
                    except (GeoResolutionError, DemographicsFetchError) as e:
                        errors[key] = e
                    except Exception as e:
                        # One bad key never aborts the batch.
                        logger.exception("Unexpected failure processing %r", key)
                        errors[key] = e
        finally:
            pool.shutdown(wait=not cancelled, cancel_futures=cancelled)
        return results, errors, cancelled

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def recommend(
        self,
        coordinates: Iterable[Any],
        lead_records: Iterable[LeadRecord],
        preferences: TargetPreferences,
        limit: Optional[int] = DEFAULT_LIMIT,
        cancel_event: Optional[threading.Event] = None,
    ) -> RecommendationResult:
        """Rank the tracts containing *coordinates*, best first.

        Args:
            coordinates: Coordinate objects or (lat, lng) pairs.
            lead_records: the caller's leads; records without an area_id
                are resolved by coordinate so their outcomes count.
            preferences: validated target ranges.
            limit: maximum areas returned (default 10).
            cancel_event: set it to abandon the call; work already
                committed to the cache is kept.

        Raises:
            ValidationError: invalid preferences or negative limit.
        """
        if not isinstance(preferences, TargetPreferences):
            raise ValidationError(f"preferences must be TargetPreferences, got {type(preferences).__name__}")
        preferences.validate()
        if limit is None:
            limit = DEFAULT_LIMIT
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ValidationError(f"limit must be a non-negative integer, got {limit!r}")

        trace = get_trace()
        owns_trace = trace is None
        if owns_trace:
            trace = TraceContext(trace_id=uuid.uuid4().hex[:8])
            set_trace(trace)
        trace.model_version = self.model.version

        try:
            return self._recommend(list(coordinates), list(lead_records),
                                   preferences, limit, cancel_event, trace)
        finally:
            if owns_trace:
                trace.log_summary()
                clear_trace()

    def _recommend(self, coordinates, lead_records, preferences, limit,
                   cancel_event, trace) -> RecommendationResult:
        result = RecommendationResult(model_version=self.model.version,
                                      trace_id=trace.trace_id)

        # --- 1. Resolve -------------------------------------------------
        targets: List[Coordinate] = []
        seen = set()
        for raw in coordinates:
            coord = _as_coordinate(raw)
            if coord is None or not coord.is_valid():
                result.skipped_coordinates += 1
                continue
            if coord not in seen:
                seen.add(coord)
                targets.append(coord)

        lead_coords: List[Coordinate] = []
        for lead in lead_records:
            if lead.area_id:
                continue
            coord = Coordinate(lead.latitude, lead.longitude)
            if coord.is_valid() and coord not in seen:
                seen.add(coord)
                lead_coords.append(coord)

        trace.start_stage("resolve")
        t0 = time.time()
        resolved, resolve_errors, cancelled = self._run_parallel(
            self.resolver.resolve, targets + lead_coords, cancel_event,
        )
        trace.record_stage("resolve", t0, time.time(),
                           items=len(targets) + len(lead_coords),
                           errors=len(resolve_errors))
        trace.end_stage()

        target_set = set(targets)
        for coord, err in resolve_errors.items():
            if coord not in target_set:
                continue
            result.skipped_coordinates += 1
            if getattr(err, "reason", "") == "out_of_coverage":
                result.out_of_coverage += 1
        if result.skipped_coordinates:
            logger.warning(
                "Skipped %d of %d coordinates (%d outside coverage)",
                result.skipped_coordinates, len(coordinates), result.out_of_coverage,
            )

        if cancelled:
            result.cancelled = True
            logger.info("recommend cancelled during tract resolution")
            return result

        area_ids = sorted({resolved[c] for c in targets if c in resolved})

        # --- 2. Fetch ---------------------------------------------------
        trace.start_stage("fetch")
        t0 = time.time()
        lookups, fetch_errors, cancelled = self._run_parallel(
            self.cache.lookup, area_ids, cancel_event,
        )
        trace.record_stage("fetch", t0, time.time(),
                           items=len(area_ids), errors=len(fetch_errors))
        trace.end_stage()

        result.failed_areas = sorted(fetch_errors)
        for area_id in result.failed_areas:
            logger.warning("Excluding %s from ranking: %s", area_id, fetch_errors[area_id])
        if cancelled:
            result.cancelled = True
            logger.info("recommend cancelled during demographics fetch; "
                        "ranking %d completed areas", len(lookups))

        # --- 3. Performance ---------------------------------------------
        leads = []
        for lead in lead_records:
            if not lead.area_id:
                coord = Coordinate(lead.latitude, lead.longitude)
                area_id = resolved.get(coord) if coord.is_valid() else None
                if area_id:
                    lead = replace(lead, area_id=area_id)
            leads.append(lead)
        stats = aggregate_all(leads)

        # --- 4. Score ---------------------------------------------------
        trace.start_stage("score")
        t0 = time.time()
        scored = []
        for area_id in sorted(lookups):
            lookup: CacheLookup = lookups[area_id]
            perf = stats.get(area_id, PerformanceStats(area_id))
            breakdown = score(lookup.snapshot, preferences, perf, self.model)
            scored.append((area_id, lookup, perf, breakdown))
            if lookup.stale:
                result.stale_areas.append(area_id)
        trace.record_stage("score", t0, time.time(), items=len(scored))
        trace.end_stage()
        result.scored_areas = len(scored)

        # --- 5. Rank ----------------------------------------------------
        scored.sort(key=lambda s: rank_key(s[0], s[1].snapshot, s[3]))
        result.areas = [
            RankedArea(
                rank=i + 1,
                area_id=area_id,
                snapshot=lookup.snapshot,
                breakdown=breakdown,
                performance=perf,
                stale=lookup.stale,
            )
            for i, (area_id, lookup, perf, breakdown) in enumerate(scored[:limit])
        ]

        logger.info(
            "Ranked %d of %d areas (skipped=%d failed=%d stale=%d)",
            len(result.areas), len(area_ids), result.skipped_coordinates,
            len(result.failed_areas), len(result.stale_areas),
        )
        return result
