#!/usr/bin/env python3
"""
Rank the census tracts around your leads for door-to-door prospecting.

Reads leads from a CSV or JSON file (latitude, longitude, status and an
optional lead_id), resolves each lead to its census tract, pulls ACS
demographics through the 30-day snapshot cache, and prints the top tracts.

Usage:
    tractscout leads.csv --preset solar
    tractscout leads.json --income 80000 150000 --home-value 250000 600000 --json
    tractscout --list-cache
    tractscout --clear-cache
"""

import argparse
import csv
import json
import logging
import os
import sys
import time
from typing import List, Optional

from dotenv import load_dotenv

from area_cache import AreaCache, SqliteSnapshotStore
from census import CensusDemographicsFetcher, DemographicsFetchError
from performance import LeadRecord
from preferences import (
    DEFAULT_PREFERENCES,
    PRESET_DESCRIPTIONS,
    PRESET_PROFILES,
    TargetPreferences,
    ValidationError,
)
from recommendation import DEFAULT_LIMIT, RecommendationResult, RecommendationService
from tract_geocoder import GeoResolutionError, TractGeocoder

logger = logging.getLogger(__name__)


def _init_sentry() -> None:
    """Sentry error tracking — gated on SENTRY_DSN; silent when unset."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return
    import sentry_sdk

    def _before_send(event, hint):
        """Per-area provider failures are expected; keep them as breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            if exc_type is not None and issubclass(exc_type, (GeoResolutionError, DemographicsFetchError)):
                sentry_sdk.add_breadcrumb(
                    category="provider",
                    message=str(exc_value),
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=dsn,
        traces_sample_rate=0.0,
        environment=os.environ.get("TRACTSCOUT_ENVIRONMENT", "production"),
        before_send=_before_send,
    )


# =============================================================================
# Lead file parsing
# =============================================================================

def _lead_from_row(row: dict, index: int) -> Optional[LeadRecord]:
    try:
        lat = float(row["latitude"])
        lng = float(row["longitude"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Lead row %d has no usable latitude/longitude, skipping", index)
        return None
    status = str(row.get("status") or "not_contacted").strip().lower()
    return LeadRecord(
        latitude=lat,
        longitude=lng,
        status=status,
        lead_id=str(row.get("lead_id") or row.get("id") or index),
        area_id=row.get("area_id") or None,
    )


def load_leads(path: str) -> List[LeadRecord]:
    """Load leads from a .json (list of objects) or .csv file."""
    if path.lower().endswith(".json"):
        with open(path, encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list):
            raise ValueError(f"{path}: expected a JSON list of lead objects")
    else:
        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))

    leads = []
    for i, row in enumerate(rows, start=1):
        lead = _lead_from_row(row, i) if isinstance(row, dict) else None
        if lead is not None:
            leads.append(lead)
    return leads


def build_preferences(args) -> TargetPreferences:
    base = PRESET_PROFILES[args.preset] if args.preset else DEFAULT_PREFERENCES
    income_min, income_max = args.income or (base.income_min, base.income_max)
    hv_min, hv_max = args.home_value or (base.home_value_min, base.home_value_max)
    ownership = base.min_ownership_rate if args.min_ownership is None else args.min_ownership
    return TargetPreferences(income_min, income_max, hv_min, hv_max, ownership)


# =============================================================================
# Output
# =============================================================================

def format_table(result: RecommendationResult) -> str:
    if result.is_empty:
        return "No areas to recommend yet. Add leads with locations and try again."

    lines = [
        f"{'#':>2}  {'Tract':<11}  {'Score':>5}  {'Tier':<9}  {'Inc':>3} {'Den':>3} "
        f"{'Home':>4} {'Perf':>4}  {'Leads':>5}  Name",
    ]
    for area in result.areas:
        b = area.breakdown
        name = area.snapshot.name or "-"
        stale = " (stale)" if area.stale else ""
        lines.append(
            f"{area.rank:>2}  {area.area_id:<11}  {b.total_score:>5.1f}  {b.tier:<9}  "
            f"{b.income_score:>3.0f} {b.density_score:>3.0f} {b.home_value_score:>4.0f} "
            f"{b.performance_score:>4.0f}  {area.performance.total_leads:>5}  {name}{stale}"
        )

    notes = []
    if result.skipped_coordinates:
        notes.append(f"{result.skipped_coordinates} lead locations skipped "
                     f"({result.out_of_coverage} outside coverage)")
    if result.failed_areas:
        notes.append(f"{len(result.failed_areas)} areas unavailable")
    if result.stale_areas:
        notes.append(f"{len(result.stale_areas)} areas using stale data")
    if notes:
        lines.append("")
        lines.append("Note: " + "; ".join(notes))
    return "\n".join(lines)


def format_cache_listing(store: SqliteSnapshotStore, now: Optional[float] = None) -> str:
    if now is None:
        now = time.time()
    lines = []
    for area_id in store.area_ids():
        snapshot = store.get(area_id)
        if snapshot is None:
            continue
        age_days = (now - snapshot.fetched_at) / 86400
        lines.append(f"{area_id}  {age_days:5.1f} days  {snapshot.name or '-'}")
    lines.append(f"{len(lines)} cached area snapshots.")
    return "\n".join(lines)


# =============================================================================
# Entry point
# =============================================================================

def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tractscout",
        description="Rank census tracts around your leads for door-to-door prospecting.",
    )
    parser.add_argument("leads", nargs="?", help="CSV or JSON file of leads.")
    parser.add_argument(
        "--preset", choices=sorted(PRESET_PROFILES),
        help="Quick target profile. "
             + "; ".join(f"{k}: {v}" for k, v in sorted(PRESET_DESCRIPTIONS.items())),
    )
    parser.add_argument("--income", nargs=2, type=float, metavar=("MIN", "MAX"),
                        help="Target median household income range.")
    parser.add_argument("--home-value", nargs=2, type=float, metavar=("MIN", "MAX"),
                        help="Target median home value range.")
    parser.add_argument("--min-ownership", type=float, default=None,
                        help="Preferred minimum homeownership rate (0-1).")
    parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT,
                        help="Number of areas to show (default %(default)s).")
    parser.add_argument("--db", default=None,
                        help="SQLite cache path (default $TRACTSCOUT_DB_PATH or tractscout.db).")
    parser.add_argument("--workers", type=int, default=None,
                        help="Concurrent outbound requests (1-16).")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table.")
    parser.add_argument("--clear-cache", action="store_true",
                        help="Delete all cached demographic snapshots and exit.")
    parser.add_argument("--list-cache", action="store_true",
                        help="List cached tracts with their snapshot age and exit.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = _parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    _init_sentry()

    store = SqliteSnapshotStore(args.db)
    if args.clear_cache:
        count = store.clear()
        print(f"Cleared {count} cached area snapshots.")
        return 0

    if args.list_cache:
        print(format_cache_listing(store))
        return 0

    if not args.leads:
        print("error: a leads file is required", file=sys.stderr)
        return 2

    try:
        preferences = build_preferences(args)
    except ValidationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    try:
        leads = load_leads(args.leads)
    except (OSError, ValueError) as e:
        print(f"error: could not read leads: {e}", file=sys.stderr)
        return 1

    cache = AreaCache(CensusDemographicsFetcher(), store=store)
    service = RecommendationService(
        TractGeocoder(persist=True, db_path=args.db), cache, max_workers=args.workers,
    )
    coordinates = [(lead.latitude, lead.longitude) for lead in leads]

    try:
        result = service.recommend(coordinates, leads, preferences, limit=args.limit)
    except ValidationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(format_table(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
