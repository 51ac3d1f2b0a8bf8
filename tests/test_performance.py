"""Unit tests for performance.py — per-tract lead statistics."""

import pytest

from performance import (
    LeadRecord,
    LeadStatus,
    PerformanceStats,
    aggregate,
    aggregate_all,
    normalize_status,
)


def _lead(status, area_id="36119025300"):
    return LeadRecord(41.0, -73.8, status=status, area_id=area_id)


class TestPerformanceStats:
    def test_empty_has_no_rate(self):
        stats = PerformanceStats("36119025300")
        assert stats.conversion_rate is None
        assert stats.interested_rate is None

    def test_rates(self):
        stats = PerformanceStats("36119025300", total_leads=20,
                                 converted_leads=3, interested_leads=5)
        assert stats.conversion_rate == pytest.approx(0.15)
        assert stats.interested_rate == pytest.approx(0.25)

    def test_to_dict(self):
        d = PerformanceStats("36119025300", 4, 1, 1).to_dict()
        assert d == {
            "total_leads": 4,
            "converted_leads": 1,
            "interested_leads": 1,
            "conversion_rate": 0.25,
            "interested_rate": 0.25,
        }


class TestLeadRecord:
    def test_defaults(self):
        lead = LeadRecord(41.0, -73.8)
        assert lead.status == "not_contacted"
        assert lead.area_id is None
        assert not lead.is_converted

    def test_status_flags(self):
        assert _lead(LeadStatus.CONVERTED.value).is_converted
        assert _lead("interested").is_interested
        assert not _lead("not_home").is_interested


class TestAggregate:
    def test_counts_only_matching_area(self):
        leads = [
            _lead("converted"),
            _lead("interested"),
            _lead("not_home"),
            _lead("converted", area_id="36119025400"),
        ]
        stats = aggregate("36119025300", leads)
        assert (stats.total_leads, stats.converted_leads, stats.interested_leads) == (3, 1, 1)

    def test_no_leads(self):
        stats = aggregate("36119025300", [])
        assert stats.total_leads == 0
        assert stats.conversion_rate is None

    def test_accepts_generator(self):
        stats = aggregate("36119025300", (_lead("converted") for _ in range(4)))
        assert stats.conversion_rate == 1.0


class TestAggregateAll:
    def test_groups_by_area(self):
        leads = [
            _lead("converted", "36119025300"),
            _lead("not_interested", "36119025300"),
            _lead("interested", "36119025400"),
        ]
        stats = aggregate_all(leads)
        assert set(stats) == {"36119025300", "36119025400"}
        assert stats["36119025300"].conversion_rate == 0.5
        assert stats["36119025400"].interested_leads == 1

    def test_unresolved_leads_ignored(self):
        stats = aggregate_all([_lead("converted", area_id=None)])
        assert stats == {}

    def test_matches_single_area_aggregate(self):
        leads = [_lead(s, a) for s in ("converted", "interested", "not_home")
                 for a in ("36119025300", "36119025400")]
        grouped = aggregate_all(leads)
        for area_id, stats in grouped.items():
            assert stats == aggregate(area_id, leads)


class TestPipelineStatuses:
    def test_closed_counts_as_converted(self):
        stats = aggregate("A", [LeadRecord(0, 0, "closed", area_id="A")])
        assert stats.converted_leads == 1
        assert stats.conversion_rate == 1.0

    @pytest.mark.parametrize("status", ["new", "contacted", "scheduled",
                                        "visited", "follow_up", "Follow-Up"])
    def test_open_pipeline_statuses_count_only_toward_total(self, status):
        stats = aggregate("A", [LeadRecord(0, 0, status, area_id="A")])
        assert (stats.total_leads, stats.converted_leads, stats.interested_leads) == (1, 0, 0)

    def test_normalize_status(self):
        assert normalize_status("closed") == LeadStatus.CONVERTED.value
        assert normalize_status(" Interested ") == LeadStatus.INTERESTED.value
        assert normalize_status("not_home") == LeadStatus.NOT_HOME.value
        assert normalize_status("something_else") == "something_else"

    def test_mixed_exports_aggregate_together(self):
        leads = [
            LeadRecord(0, 0, "converted", area_id="A"),
            LeadRecord(0, 0, "closed", area_id="A"),
            LeadRecord(0, 0, "interested", area_id="A"),
            LeadRecord(0, 0, "follow_up", area_id="A"),
        ]
        stats = aggregate_all(leads)["A"]
        assert (stats.total_leads, stats.converted_leads, stats.interested_leads) == (4, 2, 1)
