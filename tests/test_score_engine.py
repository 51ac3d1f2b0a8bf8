"""Unit tests for score_engine.py — component scores and the composite.

Tests cover: in-range/out-of-range decay, single-point ranges, neutral
performance, ownership flag, determinism, and bounds over a sweep of
realistic inputs.
"""

import itertools

import pytest

from performance import PerformanceStats
from preferences import TargetPreferences
from score_engine import (
    ScoreBreakdown,
    home_value_score,
    income_score,
    performance_score,
    range_score,
    score,
)
from scoring_config import SCORING_MODEL, RangeDecay

from conftest import make_snapshot


PREFS = TargetPreferences(100_000, 150_000, 250_000, 500_000)


# =========================================================================
# range_score
# =========================================================================

class TestRangeScore:
    DECAY = RangeDecay(floor_distance=50_000)

    def test_inside_and_on_bounds(self):
        for v in (100, 120, 150):
            assert range_score(v, 100, 150, self.DECAY) == 100

    def test_decays_below(self):
        # width 50, 25 below -> halfway to zero
        assert range_score(75, 100, 150, self.DECAY) == pytest.approx(50)

    def test_decays_above(self):
        assert range_score(160, 100, 150, self.DECAY) == pytest.approx(80)

    def test_zero_at_one_width(self):
        assert range_score(50, 100, 150, self.DECAY) == 0
        assert range_score(200, 100, 150, self.DECAY) == 0

    def test_never_negative(self):
        assert range_score(-1_000_000, 100, 150, self.DECAY) == 0

    def test_single_point_uses_floor_distance(self):
        assert range_score(100_000, 100_000, 100_000, self.DECAY) == 100
        assert range_score(75_000, 100_000, 100_000, self.DECAY) == pytest.approx(50)
        assert range_score(150_000, 100_000, 100_000, self.DECAY) == 0


class TestComponentScores:
    def test_income_uses_preferences(self):
        snap = make_snapshot(income=160_000)
        assert income_score(snap, PREFS) == pytest.approx(80)

    def test_home_value_uses_preferences(self):
        snap = make_snapshot(home_value=180_000)
        # 70k below a 250k-wide range
        assert home_value_score(snap, PREFS) == pytest.approx(72)


# =========================================================================
# performance_score
# =========================================================================

class TestPerformanceScore:
    def test_no_leads_is_neutral(self):
        assert performance_score(PerformanceStats("x")) == 50.0

    def test_missing_stats_is_neutral(self):
        assert performance_score(None) == 50.0

    def test_zero_conversions_with_leads_is_zero(self):
        assert performance_score(PerformanceStats("x", total_leads=12)) == 0

    def test_neutral_differs_from_poor(self):
        none = performance_score(PerformanceStats("x"))
        poor = performance_score(PerformanceStats("x", total_leads=10, converted_leads=0))
        assert none > poor

    def test_monotonic_in_conversion_rate(self):
        prev = -1.0
        for converted in range(0, 41):
            s = performance_score(PerformanceStats("x", 40, converted))
            assert s >= prev
            prev = s

    def test_high_rate_caps_at_100(self):
        assert performance_score(PerformanceStats("x", 10, 10)) == 100


# =========================================================================
# score()
# =========================================================================

class TestScore:
    def test_returns_all_components(self):
        b = score(make_snapshot(), PREFS, PerformanceStats("36119025300", 20, 3))
        assert isinstance(b, ScoreBreakdown)
        d = b.to_dict()
        for key in ("income_score", "density_score", "home_value_score",
                    "performance_score", "total_score", "tier", "color"):
            assert key in d
        assert d["model_version"] == SCORING_MODEL.version

    def test_total_is_weighted_sum(self):
        snap = make_snapshot(income=75_000, population=15_000, home_value=180_000)
        b = score(snap, PREFS, None)
        expected = (0.30 * b.income_score + 0.20 * b.density_score
                    + 0.25 * b.home_value_score + 0.25 * b.performance_score)
        assert b.total_score == pytest.approx(expected)

    def test_total_rounded_to_fixed_precision(self):
        # 0.2*82 + 0.25*60 + 0.25*82 sums to 51.900000000000006 unrounded.
        snap = make_snapshot(income=20_000, population=10_880, home_value=150_000)
        b = score(snap, PREFS, PerformanceStats("36119025300", 5, 1, 0))
        assert b.total_score == 51.9

    def test_deterministic(self):
        snap = make_snapshot(income=90_000, population=9_500, home_value=520_000)
        perf = PerformanceStats("36119025300", 7, 1, 2)
        assert score(snap, PREFS, perf) == score(snap, PREFS, perf)

    def test_ownership_flag_absent_without_preference(self):
        assert score(make_snapshot(), PREFS).meets_ownership_target is None

    def test_ownership_flag(self):
        prefs = TargetPreferences(100_000, 150_000, 250_000, 500_000, min_ownership_rate=0.6)
        assert score(make_snapshot(ownership=0.7), prefs).meets_ownership_target is True
        assert score(make_snapshot(ownership=0.4), prefs).meets_ownership_target is False

    def test_ownership_preference_does_not_change_total(self):
        prefs = TargetPreferences(100_000, 150_000, 250_000, 500_000, min_ownership_rate=0.9)
        snap = make_snapshot(ownership=0.2)
        assert score(snap, prefs).total_score == score(snap, PREFS).total_score

    def test_all_scores_bounded_over_sweep(self):
        incomes = [0, 20_000, 60_000, 125_000, 400_000, 2_000_000]
        home_values = [0, 50_000, 300_000, 1_500_000, 10_000_000]
        populations = [0, 500, 4_000, 12_000, 60_000]
        perfs = [None, PerformanceStats("x", 0), PerformanceStats("x", 10, 0),
                 PerformanceStats("x", 10, 2, 3), PerformanceStats("x", 5, 5)]
        pref_sets = [
            PREFS,
            TargetPreferences(20_000, 20_000, 50_000, 50_000),
            TargetPreferences(20_000, 500_000, 50_000, 2_000_000),
        ]
        for inc, hv, pop, perf, prefs in itertools.product(
                incomes, home_values, populations, perfs, pref_sets):
            b = score(make_snapshot(income=inc, home_value=hv, population=pop), prefs, perf)
            for value in (b.income_score, b.density_score, b.home_value_score,
                          b.performance_score, b.total_score):
                assert 0.0 <= value <= 100.0
            assert b.tier in ("excellent", "good", "fair", "poor")
