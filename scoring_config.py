"""
Scoring model configuration for TruePlace.

Owns every numeric constant that affects the fit score: normalization
ranges, dimension blend coefficients, the budget penalty, rationale
thresholds, default weight presets and the static citation list.
Request parsing, filtering and sorting remain in ranking.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  Everything here is validated
at import time, so a bad constant fails the process at startup rather
than on the first request.
"""

from dataclasses import dataclass
from typing import Dict, Tuple


class ScoringError(Exception):
    """Base class for errors raised by the scoring engine."""


class ConfigurationError(ScoringError, ValueError):
    """Invalid scoring configuration or weight profile.

    Raised for a NormalizationRange whose max <= min, and for weight
    profiles that cannot produce a composite (all weights zero, negative
    weights, or weight on a dimension with no scorer).
    """


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class NormalizationRange:
    """Calibration range for one raw metric.

    Values are clamped into [min, max] and mapped linearly onto [0, 1].
    ``higher_is_better`` records directionality; the dimension scorers
    pick normalize() or normalize_inverse() from it.
    """
    min: float
    max: float
    higher_is_better: bool = True

    def __post_init__(self):
        if not self.max > self.min:
            raise ConfigurationError(
                f"NormalizationRange max ({self.max}) must be greater than min ({self.min})"
            )


@dataclass(frozen=True)
class BlendTerm:
    """One weighted term inside a dimension score."""
    metric: str    # key into ScoringModel.ranges, or a named seam
    weight: float


@dataclass(frozen=True)
class DimensionBlend:
    """Weighted sum of normalized metrics that makes up one dimension."""
    terms: Tuple[BlendTerm, ...]

    def weight_of(self, metric: str) -> float:
        for term in self.terms:
            if term.metric == metric:
                return term.weight
        return 0.0


@dataclass(frozen=True)
class BudgetPenalty:
    """Multiplicative cost-quality penalty for locations over budget.

    penalty = min(cap, overage_fraction * slope), applied as (1 - penalty).
    """
    slope: float = 0.3
    cap: float = 0.5


@dataclass(frozen=True)
class RationaleThresholds:
    """Dimension thresholds (0-1) that trigger rationale bullets."""
    safety_positive: float = 0.7   # strictly above -> reassuring bullet
    safety_caution: float = 0.3    # strictly below -> cautionary bullet
    community_positive: float = 0.6
    max_bullets: int = 3


@dataclass(frozen=True)
class MetricDefaults:
    """Neutral values substituted when an optional metric is missing."""
    diversity_index: float = 0.0
    health_index: float = 50.0            # "average" on the 0-100 scale
    median_monthly_housing_cost: float = 2000.0
    crime_rate_per_100k: float = 0.0      # only when the other crime rate exists


@dataclass(frozen=True)
class Citation:
    """Provenance for one input metric category."""
    metric: str
    source: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"metric": self.metric, "source": self.source, "url": self.url}


@dataclass(frozen=True)
class WeightPreset:
    """A named default weighting across the three primary dimensions.

    Weights are relative; the composite scorer divides by their sum.
    """
    key: str
    label: str
    description: str
    weights: Dict[str, float]   # wire dimension key -> weight


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs; cached
    rankings are keyed on it indirectly through the composite values.
    """
    version: str
    ranges: Dict[str, NormalizationRange]
    safety: DimensionBlend
    community: DimensionBlend
    cost_quality: DimensionBlend
    budget: BudgetPenalty
    rationale: RationaleThresholds
    defaults: MetricDefaults
    citations: Tuple[Citation, ...]


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

# Ranges are calibrated against US city-level figures:
#   hate crimes     FBI UCR hate-crime incidents per 100k residents
#   violent crimes  FBI UCR violent crime rate per 100k residents
#   diversity       Simpson heterogeneity probability, already 0-1
#   housing cost    ACS median gross monthly housing cost (USD)
#   health          CDC PLACES composite index, 0-100
_RANGES = {
    "hate_crime_rate_per_100k": NormalizationRange(0, 50, higher_is_better=False),
    "violent_crime_rate_per_100k": NormalizationRange(0, 2000, higher_is_better=False),
    "diversity_index": NormalizationRange(0, 1),
    "median_monthly_housing_cost": NormalizationRange(500, 5000, higher_is_better=False),
    "health_index": NormalizationRange(0, 100),
}

# Hate-crime incidence is the dominant safety signal for this audience.
_SAFETY_BLEND = DimensionBlend(terms=(
    BlendTerm("hate_crime_rate_per_100k", 0.7),
    BlendTerm("violent_crime_rate_per_100k", 0.3),
))

# "representation_proxy" is a seam for an amenity/ACS representation blend.
# It carries zero weight until that signal is sourced.
_COMMUNITY_BLEND = DimensionBlend(terms=(
    BlendTerm("diversity_index", 1.0),
    BlendTerm("representation_proxy", 0.0),
))

_COST_QUALITY_BLEND = DimensionBlend(terms=(
    BlendTerm("median_monthly_housing_cost", 0.6),
    BlendTerm("health_index", 0.4),
))

_CITATIONS = (
    Citation(
        metric="Crime Statistics",
        source="FBI Crime Data Explorer",
        url="https://cde.ucr.cjis.gov/",
    ),
    Citation(
        metric="Demographics & Housing",
        source="U.S. Census Bureau ACS",
        url="https://data.census.gov/",
    ),
    Citation(
        metric="Health Indicators",
        source="CDC PLACES",
        url="https://www.cdc.gov/places/",
    ),
)


SCORING_MODEL = ScoringModel(
    version="0.3.0",
    ranges=_RANGES,
    safety=_SAFETY_BLEND,
    community=_COMMUNITY_BLEND,
    cost_quality=_COST_QUALITY_BLEND,
    budget=BudgetPenalty(slope=0.3, cap=0.5),
    rationale=RationaleThresholds(
        safety_positive=0.7,
        safety_caution=0.3,
        community_positive=0.6,
        max_bullets=3,
    ),
    defaults=MetricDefaults(),
    citations=_CITATIONS,
)


# =============================================================================
# Weight presets: default dimension weighting when the caller sends none
# =============================================================================

WEIGHT_PRESETS = {
    "balanced": WeightPreset(
        key="balanced",
        label="Balanced",
        description="Safety first, then community, then cost",
        weights={"safety": 0.5, "community": 0.3, "costQuality": 0.2},
    ),
    "diversity": WeightPreset(
        key="diversity",
        label="Values Diversity",
        description="Shifts emphasis toward diverse, representative communities",
        weights={"safety": 0.35, "community": 0.45, "costQuality": 0.2},
    ),
}

DEFAULT_PRESET = "balanced"
DIVERSITY_PRESET = "diversity"


# Validate the model at import time (ConfigurationError, not assert,
# so validation is never stripped by python -O).
for _name, _blend in (
    ("safety", SCORING_MODEL.safety),
    ("community", SCORING_MODEL.community),
    ("cost_quality", SCORING_MODEL.cost_quality),
):
    _bsum = sum(t.weight for t in _blend.terms)
    if abs(_bsum - 1.0) >= 0.001:
        raise ConfigurationError(f"{_name} blend weights sum to {_bsum}, expected 1.0")
    for _t in _blend.terms:
        if _t.weight < 0:
            raise ConfigurationError(f"{_name} blend term {_t.metric!r} has negative weight")
        if _t.weight > 0 and _t.metric not in SCORING_MODEL.ranges:
            raise ConfigurationError(f"{_name} blend term {_t.metric!r} has no NormalizationRange")

if not 0 <= SCORING_MODEL.budget.cap <= 1:
    raise ConfigurationError(f"budget penalty cap {SCORING_MODEL.budget.cap} outside [0, 1]")

for _k, _p in WEIGHT_PRESETS.items():
    if sum(_p.weights.values()) <= 0:
        raise ConfigurationError(f"Preset {_k!r} weights must not sum to zero")
