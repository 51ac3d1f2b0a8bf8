"""
Composite prospecting score for a census tract.

Pure functions only: no I/O, no shared state.  Given the same snapshot,
preferences and performance stats, score() always returns the same
ScoreBreakdown.

Components (each 0-100):
  income      — median household income vs. the target range
  density     — population as a household-density proxy
  home value  — median home value vs. the target range
  performance — the operator's own conversion rate in the tract

The weighted sum uses SCORING_MODEL.weights and is clamped to [0, 100].
"""

from dataclasses import dataclass
from typing import Optional

from census import DemographicSnapshot
from performance import PerformanceStats
from preferences import TargetPreferences
from scoring_config import (
    SCORING_MODEL,
    RangeDecay,
    ScoreBand,
    ScoringModel,
    apply_piecewise,
    clamp_score,
)

TOTAL_PRECISION = 6


@dataclass(frozen=True)
class ScoreBreakdown:
    income_score: float
    density_score: float
    home_value_score: float
    performance_score: float
    total_score: float
    tier: str
    color: str
    model_version: str = ""
    # None when the caller expressed no ownership preference.
    meets_ownership_target: Optional[bool] = None

    def to_dict(self) -> dict:
        return {
            "income_score": round(self.income_score, 2),
            "density_score": round(self.density_score, 2),
            "home_value_score": round(self.home_value_score, 2),
            "performance_score": round(self.performance_score, 2),
            "total_score": round(self.total_score, 2),
            "tier": self.tier,
            "color": self.color,
            "model_version": self.model_version,
            "meets_ownership_target": self.meets_ownership_target,
        }


# =============================================================================
# Component scores
# =============================================================================

def range_score(value: float, low: float, high: float, decay: RangeDecay) -> float:
    """100 inside [low, high]; linear decay to 0 at one range-width outside.

    A single-point range has no width, so decay.floor_distance is used.
    """
    if low <= value <= high:
        return 100.0
    distance = low - value if value < low else value - high
    span = high - low
    if span <= 0:
        span = decay.floor_distance
    return clamp_score(100.0 * (1.0 - distance / span))


def income_score(snapshot: DemographicSnapshot, prefs: TargetPreferences,
                 model: ScoringModel = SCORING_MODEL) -> float:
    return range_score(snapshot.median_income, prefs.income_min, prefs.income_max,
                       model.income)


def home_value_score(snapshot: DemographicSnapshot, prefs: TargetPreferences,
                     model: ScoringModel = SCORING_MODEL) -> float:
    return range_score(snapshot.median_home_value, prefs.home_value_min,
                       prefs.home_value_max, model.home_value)


def density_score(population: float, model: ScoringModel = SCORING_MODEL) -> float:
    return clamp_score(apply_piecewise(model.density_knots, population))


def performance_score(stats: Optional[PerformanceStats],
                      model: ScoringModel = SCORING_MODEL) -> float:
    """Conversion-rate curve; neutral when there is no lead history."""
    if stats is None or stats.total_leads == 0:
        return model.neutral_performance
    return clamp_score(apply_piecewise(model.conversion_knots, stats.conversion_rate))


def classify_tier(total: float, model: ScoringModel = SCORING_MODEL) -> ScoreBand:
    """Highest band whose threshold is <= total (lower bound inclusive)."""
    for band in model.score_bands:
        if total >= band.threshold:
            return band
    return model.score_bands[-1]


# =============================================================================
# Composite
# =============================================================================

def score(snapshot: DemographicSnapshot, preferences: TargetPreferences,
          performance: Optional[PerformanceStats] = None,
          model: ScoringModel = SCORING_MODEL) -> ScoreBreakdown:
    """Score one tract against the caller's preferences and own results."""
    w = model.weights
    inc = income_score(snapshot, preferences, model)
    den = density_score(snapshot.population, model)
    hv = home_value_score(snapshot, preferences, model)
    perf = performance_score(performance, model)

    # Rounded so equal totals compare equal and ties fall through to rank_key.
    total = round(clamp_score(
        w.income * inc + w.density * den + w.home_value * hv + w.performance * perf
    ), TOTAL_PRECISION)
    band = classify_tier(total, model)

    meets_ownership = None
    if preferences.min_ownership_rate is not None:
        meets_ownership = snapshot.homeownership_rate >= preferences.min_ownership_rate

    return ScoreBreakdown(
        income_score=inc,
        density_score=den,
        home_value_score=hv,
        performance_score=perf,
        total_score=total,
        tier=band.tier,
        color=band.color,
        model_version=model.version,
        meets_ownership_target=meets_ownership,
    )
