"""
First-party conversion statistics per census tract.

Lead records come from the caller's own lead store; each carries the tract
it was resolved to.  Stats are recomputed on every request and never cached.
"""

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional


class LeadStatus(str, Enum):
    NOT_CONTACTED = "not_contacted"
    NOT_HOME = "not_home"
    INTERESTED = "interested"
    CONVERTED = "converted"
    NOT_INTERESTED = "not_interested"


# Pipeline statuses from newer lead exports, folded onto the buckets above.
PIPELINE_STATUS_ALIASES: Dict[str, str] = {
    "new": LeadStatus.NOT_CONTACTED.value,
    "contacted": LeadStatus.NOT_CONTACTED.value,
    "scheduled": LeadStatus.NOT_CONTACTED.value,
    "visited": LeadStatus.NOT_CONTACTED.value,
    "follow_up": LeadStatus.NOT_CONTACTED.value,
    "closed": LeadStatus.CONVERTED.value,
}


def normalize_status(status: str) -> str:
    """Map any known status name onto a LeadStatus value.

    Unknown statuses are returned lower-cased and still count toward the
    lead total.
    """
    key = str(status or "").strip().lower().replace("-", "_")
    return PIPELINE_STATUS_ALIASES.get(key, key)


@dataclass(frozen=True)
class LeadRecord:
    """One canvassed lead.  ``area_id`` is None until resolved."""
    latitude: float
    longitude: float
    status: str = LeadStatus.NOT_CONTACTED.value
    lead_id: str = ""
    area_id: Optional[str] = None

    @property
    def is_converted(self) -> bool:
        return normalize_status(self.status) == LeadStatus.CONVERTED.value

    @property
    def is_interested(self) -> bool:
        return normalize_status(self.status) == LeadStatus.INTERESTED.value


@dataclass(frozen=True)
class PerformanceStats:
    area_id: str
    total_leads: int = 0
    converted_leads: int = 0
    interested_leads: int = 0

    @property
    def conversion_rate(self) -> Optional[float]:
        """Converted / total, or None when there are no leads."""
        if self.total_leads == 0:
            return None
        return self.converted_leads / self.total_leads

    @property
    def interested_rate(self) -> Optional[float]:
        if self.total_leads == 0:
            return None
        return self.interested_leads / self.total_leads

    def to_dict(self) -> dict:
        return {
            "total_leads": self.total_leads,
            "converted_leads": self.converted_leads,
            "interested_leads": self.interested_leads,
            "conversion_rate": self.conversion_rate,
            "interested_rate": self.interested_rate,
        }


def aggregate(area_id: str, lead_records: Iterable[LeadRecord]) -> PerformanceStats:
    """Count total / converted / interested leads for a single tract."""
    total = converted = interested = 0
    for lead in lead_records:
        if lead.area_id != area_id:
            continue
        total += 1
        if lead.is_converted:
            converted += 1
        elif lead.is_interested:
            interested += 1
    return PerformanceStats(area_id, total, converted, interested)


def aggregate_all(lead_records: Iterable[LeadRecord]) -> Dict[str, PerformanceStats]:
    """Group leads by tract in one pass.  Leads without an area_id are ignored."""
    counts: "OrderedDict[str, list]" = OrderedDict()
    for lead in lead_records:
        if not lead.area_id:
            continue
        c = counts.setdefault(lead.area_id, [0, 0, 0])
        c[0] += 1
        if lead.is_converted:
            c[1] += 1
        elif lead.is_interested:
            c[2] += 1
    return {
        area_id: PerformanceStats(area_id, c[0], c[1], c[2])
        for area_id, c in counts.items()
    }
