"""
Scoring model configuration for TractScout.

Owns every numeric constant that affects an area's prospecting score:
the four component weights, the density and conversion-rate curves,
the out-of-range decay floors, and the tier bands.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

from dataclasses import dataclass
from typing import Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class PiecewiseKnot:
    """A single (x, y) breakpoint on a piecewise linear curve."""
    x: float  # input value (e.g. population, conversion rate)
    y: float  # output value (score 0-100)


@dataclass(frozen=True)
class ScoringWeights:
    """Fractional weight of each component in the composite score.

    Fixed; the composite is an auditable weighted sum.
    """
    income: float = 0.30
    density: float = 0.20
    home_value: float = 0.25
    performance: float = 0.25

    @property
    def total(self) -> float:
        return self.income + self.density + self.home_value + self.performance


@dataclass(frozen=True)
class RangeDecay:
    """Linear decay outside a target range.

    The score falls from 100 at the nearest bound to 0 at a distance equal
    to the range width.  A single-point range (min == max) has no width, so
    ``floor_distance`` is used instead.
    """
    floor_distance: float


@dataclass(frozen=True)
class ScoreBand:
    """Maps a minimum score threshold to a tier label and overlay color."""
    threshold: float
    tier: str
    color: str


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    weights: ScoringWeights
    income: RangeDecay
    home_value: RangeDecay
    density_knots: Tuple[PiecewiseKnot, ...]
    conversion_knots: Tuple[PiecewiseKnot, ...]
    neutral_performance: float
    score_bands: Tuple[ScoreBand, ...]


# =============================================================================
# Pure helpers
# =============================================================================

def apply_piecewise(knots: Tuple[PiecewiseKnot, ...], x: float) -> float:
    """Evaluate a piecewise linear curve at *x*.

    Linearly interpolates between adjacent knots.  Values outside the
    knot range are clamped to the first / last y value.

    Requires at least one knot.
    """
    if not knots:
        raise ValueError("knots must not be empty")

    if x <= knots[0].x:
        return knots[0].y
    if x >= knots[-1].x:
        return knots[-1].y

    for i in range(1, len(knots)):
        if x <= knots[i].x:
            k0 = knots[i - 1]
            k1 = knots[i]
            dx = k1.x - k0.x
            if dx == 0:
                return k1.y
            t = (x - k0.x) / dx
            return k0.y + t * (k1.y - k0.y)

    return knots[-1].y


def clamp_score(value: float) -> float:
    """Clamp a score into [0, 100]."""
    return max(0.0, min(100.0, value))


# =============================================================================
# SCORING_MODEL — current production values
# =============================================================================

# Population used as a household-density proxy.  Suburban tracts
# (2,000-8,000 residents) are the sweet spot for door-to-door routes.
# Sparse tracts fall off proportionally; dense tracts lose points more
# slowly and bottom out at 24,000 residents.
_DENSITY_KNOTS = (
    PiecewiseKnot(0, 0),
    PiecewiseKnot(2_000, 100),
    PiecewiseKnot(8_000, 100),
    PiecewiseKnot(24_000, 0),
)

# Conversion rate (0.0-1.0) -> performance score.  Door-to-door close
# rates are low, so the curve is concave: 15% already earns 70 and
# anything at or above 30% is a perfect score.
_CONVERSION_KNOTS = (
    PiecewiseKnot(0.00, 0),
    PiecewiseKnot(0.05, 35),
    PiecewiseKnot(0.10, 55),
    PiecewiseKnot(0.15, 70),
    PiecewiseKnot(0.20, 82),
    PiecewiseKnot(0.30, 100),
)


SCORING_MODEL = ScoringModel(
    version="1.0.0",

    weights=ScoringWeights(
        income=0.30,
        density=0.20,
        home_value=0.25,
        performance=0.25,
    ),

    income=RangeDecay(floor_distance=50_000),
    home_value=RangeDecay(floor_distance=100_000),

    density_knots=_DENSITY_KNOTS,
    conversion_knots=_CONVERSION_KNOTS,

    # No leads in an area is "no evidence", not a poor close rate.
    neutral_performance=50.0,

    # Evaluated highest-first; lower bound inclusive.
    score_bands=(
        ScoreBand(90, "excellent", "green"),
        ScoreBand(60, "good", "yellow"),
        ScoreBand(45, "fair", "orange"),
        ScoreBand(0, "poor", "red"),
    ),
)


# Import-time validation.
if abs(SCORING_MODEL.weights.total - 1.0) >= 1e-9:
    raise ValueError(
        f"Scoring weights sum to {SCORING_MODEL.weights.total}, expected 1.0"
    )
_thresholds = [b.threshold for b in SCORING_MODEL.score_bands]
if _thresholds != sorted(_thresholds, reverse=True) or len(set(_thresholds)) != len(_thresholds):
    raise ValueError("score_bands thresholds must be strictly descending")
if _thresholds[-1] != 0:
    raise ValueError("the lowest score band must start at 0")
for _name, _knots in (("density", _DENSITY_KNOTS), ("conversion", _CONVERSION_KNOTS)):
    _ys = [k.y for k in _knots]
    if min(_ys) < 0 or max(_ys) > 100:
        raise ValueError(f"{_name} curve leaves the 0-100 range")
_conv = [k.y for k in _CONVERSION_KNOTS]
if _conv != sorted(_conv):
    raise ValueError("conversion curve must be monotonically non-decreasing")
