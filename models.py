"""
SQLite persistence for TractScout area snapshots and tract lookups.

Lightweight design. No ORM — just raw sqlite3.
Two tables:
  - area_snapshots: last-fetched demographic snapshot per census tract,
    stored as JSON with its fetch timestamp so freshness can be checked
    without refetching.
  - tract_lookup: coordinate -> tract GEOID memo.  Tract boundaries are
    static, so these rows never expire.

Cache errors are logged and swallowed so they never break a scoring run.
"""

import os
import sqlite3
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("TRACTSCOUT_DB_PATH", "tractscout.db")


def _get_db(db_path: Optional[str] = None):
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(db_path or DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(db_path: Optional[str] = None):
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db(db_path)
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS area_snapshots (
            area_id       TEXT PRIMARY KEY,
            snapshot_json TEXT NOT NULL,
            fetched_at    REAL NOT NULL,
            stored_at     TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS tract_lookup (
            coord_key   TEXT PRIMARY KEY,
            area_id     TEXT NOT NULL,
            created_at  TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_tract_lookup_area ON tract_lookup(area_id);
    """)
    conn.commit()
    conn.close()


# ---------------------------------------------------------------------------
# Area snapshots
# ---------------------------------------------------------------------------

def get_area_snapshot(area_id: str, db_path: Optional[str] = None) -> Optional[Tuple[str, float]]:
    """Return (snapshot_json, fetched_at) for a tract, or None.

    No TTL check here: freshness is the cache layer's decision, and stale
    rows are still needed for the stale-fallback path.
    """
    try:
        conn = _get_db(db_path)
        row = conn.execute(
            "SELECT snapshot_json, fetched_at FROM area_snapshots WHERE area_id = ?",
            (area_id,),
        ).fetchone()
        conn.close()
        if not row:
            return None
        return row["snapshot_json"], float(row["fetched_at"])
    except Exception:
        logger.warning("Area snapshot lookup failed for %s", area_id, exc_info=True)
        return None


def set_area_snapshot(area_id: str, snapshot_json: str, fetched_at: float,
                      db_path: Optional[str] = None) -> None:
    """Store a snapshot, atomically replacing any previous row for the tract."""
    try:
        conn = _get_db(db_path)
        conn.execute(
            """INSERT OR REPLACE INTO area_snapshots
               (area_id, snapshot_json, fetched_at, stored_at)
               VALUES (?, ?, ?, ?)""",
            (area_id, snapshot_json, fetched_at,
             datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
        conn.close()
    except Exception:
        logger.warning("Area snapshot write failed for %s", area_id, exc_info=True)


def delete_area_snapshot(area_id: str, db_path: Optional[str] = None) -> bool:
    """Remove one tract's snapshot. Returns True if a row was deleted."""
    try:
        conn = _get_db(db_path)
        cur = conn.execute(
            "DELETE FROM area_snapshots WHERE area_id = ?", (area_id,),
        )
        conn.commit()
        deleted = cur.rowcount > 0
        conn.close()
        return deleted
    except Exception:
        logger.warning("Area snapshot delete failed for %s", area_id, exc_info=True)
        return False


def clear_area_snapshots(db_path: Optional[str] = None) -> int:
    """Delete every stored snapshot. Returns the number of rows removed."""
    try:
        conn = _get_db(db_path)
        cur = conn.execute("DELETE FROM area_snapshots")
        conn.commit()
        count = cur.rowcount
        conn.close()
        logger.info("Cleared %d area snapshots", count)
        return count
    except Exception:
        logger.warning("Area snapshot clear failed", exc_info=True)
        return 0


def list_area_ids(db_path: Optional[str] = None) -> List[str]:
    """All tract ids with a stored snapshot, sorted."""
    try:
        conn = _get_db(db_path)
        rows = conn.execute(
            "SELECT area_id FROM area_snapshots ORDER BY area_id"
        ).fetchall()
        conn.close()
        return [r["area_id"] for r in rows]
    except Exception:
        logger.warning("Area snapshot listing failed", exc_info=True)
        return []


# ---------------------------------------------------------------------------
# Coordinate -> tract memo
# ---------------------------------------------------------------------------

def get_tract_lookup(coord_key: str, db_path: Optional[str] = None) -> Optional[str]:
    """Return the memoised tract GEOID for a coordinate key, or None."""
    try:
        conn = _get_db(db_path)
        row = conn.execute(
            "SELECT area_id FROM tract_lookup WHERE coord_key = ?",
            (coord_key,),
        ).fetchone()
        conn.close()
        return row["area_id"] if row else None
    except Exception:
        logger.warning("Tract lookup read failed for %s", coord_key, exc_info=True)
        return None


def set_tract_lookup(coord_key: str, area_id: str, db_path: Optional[str] = None) -> None:
    try:
        conn = _get_db(db_path)
        conn.execute(
            """INSERT OR REPLACE INTO tract_lookup (coord_key, area_id, created_at)
               VALUES (?, ?, ?)""",
            (coord_key, area_id, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
        conn.close()
    except Exception:
        logger.warning("Tract lookup write failed for %s", coord_key, exc_info=True)
