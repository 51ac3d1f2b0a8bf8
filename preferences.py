"""
Target-customer preferences for area scoring.

TargetPreferences is an immutable value passed into every scoring request.
The scoring core never stores or mutates it; persistence (and the notion of
a "selected" profile) belongs to whatever UI or CLI owns the user session.

Quick-profile presets are plain named constants built here so the CLI can
offer them.  Nothing in the scoring path looks presets up by name.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


# Slider bounds carried over from the preferences screen.
INCOME_BOUNDS: Tuple[float, float] = (20_000, 500_000)
HOME_VALUE_BOUNDS: Tuple[float, float] = (50_000, 2_000_000)


class ValidationError(ValueError):
    """Raised when a preference range is inverted, non-finite or out of bounds."""

    pass


def _check_range(label: str, low, high, bounds: Tuple[float, float]) -> None:
    for name, val in (("min", low), ("max", high)):
        if isinstance(val, bool) or not isinstance(val, (int, float)):
            raise ValidationError(f"{label} {name} must be a number, got {val!r}")
        if not math.isfinite(val):
            raise ValidationError(f"{label} {name} must be finite, got {val!r}")
    if low > high:
        raise ValidationError(
            f"{label} range is inverted: min {low:,.0f} > max {high:,.0f}"
        )
    lo_bound, hi_bound = bounds
    if low < lo_bound or high > hi_bound:
        raise ValidationError(
            f"{label} range {low:,.0f}-{high:,.0f} must lie within "
            f"{lo_bound:,.0f}-{hi_bound:,.0f}"
        )


@dataclass(frozen=True)
class TargetPreferences:
    """Ideal-customer ranges used to score an area's demographics.

    ``min_ownership_rate`` is optional.  It does not change the fixed score
    weights; it only drives the ``meets_ownership_target`` flag on a
    ScoreBreakdown.
    """
    income_min: float
    income_max: float
    home_value_min: float
    home_value_max: float
    min_ownership_rate: Optional[float] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ValidationError if any range is inverted or out of bounds."""
        _check_range("income", self.income_min, self.income_max, INCOME_BOUNDS)
        _check_range(
            "home value", self.home_value_min, self.home_value_max,
            HOME_VALUE_BOUNDS,
        )
        rate = self.min_ownership_rate
        if rate is not None:
            if isinstance(rate, bool) or not isinstance(rate, (int, float)) \
                    or not math.isfinite(rate) or not 0.0 <= rate <= 1.0:
                raise ValidationError(
                    f"min_ownership_rate must be in [0, 1], got {rate!r}"
                )

    def to_dict(self) -> dict:
        return {
            "income_min": self.income_min,
            "income_max": self.income_max,
            "home_value_min": self.home_value_min,
            "home_value_max": self.home_value_max,
            "min_ownership_rate": self.min_ownership_rate,
        }


# =============================================================================
# Quick-profile presets
# =============================================================================

DEFAULT_PREFERENCES = TargetPreferences(
    income_min=50_000,
    income_max=150_000,
    home_value_min=200_000,
    home_value_max=500_000,
    min_ownership_rate=0.5,
)

# Income brackets: moderate 60-100k, comfortable 100-150k, affluent 150-250k.
# Home value brackets: established 250-500k, upscale 500-750k, luxury 750k-1M.
PRESET_PROFILES: Dict[str, TargetPreferences] = {
    "solar": TargetPreferences(100_000, 150_000, 250_000, 500_000, 0.5),
    "roofing": TargetPreferences(60_000, 100_000, 250_000, 500_000, 0.5),
    "hvac": TargetPreferences(100_000, 150_000, 250_000, 500_000, 0.5),
    "windows": TargetPreferences(60_000, 100_000, 250_000, 500_000, 0.5),
    "landscaping": TargetPreferences(100_000, 150_000, 500_000, 750_000, 0.5),
    "remodeling": TargetPreferences(150_000, 250_000, 500_000, 750_000, 0.5),
    "security": TargetPreferences(100_000, 150_000, 250_000, 500_000),
    "pools": TargetPreferences(150_000, 250_000, 750_000, 1_000_000, 0.5),
}

PRESET_DESCRIPTIONS: Dict[str, str] = {
    "solar": "Homeowners with higher income who care about energy efficiency",
    "roofing": "Established homes, moderate to high income",
    "hvac": "Homeowners with comfortable income, established properties",
    "windows": "Moderate income, focus on home improvement",
    "landscaping": "Higher income, upscale properties with yards",
    "remodeling": "Affluent homeowners with valuable properties",
    "security": "Comfortable income, security-conscious households",
    "pools": "Affluent, luxury homes with space for pools",
}
