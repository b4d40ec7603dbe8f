"""
TruePlace location scorer.

Turns a location's already-normalized government metrics (crime, census,
health) plus a user's WeightProfile into an explainable 0-100 fit score:
a composite, a per-dimension breakdown, up to three rationale bullets and
the static data-source citations.

Everything in this module is pure and synchronous.  No I/O, no clock, no
randomness: identical (metrics, weights) always produce an identical
ScoreResult, so callers can sort, cache and parallelize freely.

Usage:
    from location_scorer import RawLocationMetrics, WeightProfile, compute_score

    metrics = RawLocationMetrics.from_dict(record)
    result = compute_score(metrics, WeightProfile.default(budget_max=1800))
    result.to_dict()
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from scoring_config import (
    SCORING_MODEL,
    WEIGHT_PRESETS,
    DEFAULT_PRESET,
    DIVERSITY_PRESET,
    Citation,
    ConfigurationError,
    DimensionBlend,
    NormalizationRange,
    ScoringError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ConfigurationError",
    "MalformedMetricsError",
    "DimensionKind",
    "RawLocationMetrics",
    "WeightProfile",
    "ScoreResult",
    "normalize",
    "normalize_inverse",
    "budget_penalty",
    "score_safety",
    "score_community",
    "score_cost_quality",
    "score_mobility",
    "score_inclusion",
    "effective_weights",
    "generate_rationale",
    "get_citations",
    "compute_score",
    "compute_scores",
    "legacy_preferences_to_profile",
]


class MalformedMetricsError(ScoringError, ValueError):
    """A location record cannot be scored.

    Only raised for shapes with no neutral default: non-numeric values,
    negative rates, a diversity index outside [0, 1], or no crime data
    at all.
    """


# =============================================================================
# DATA CLASSES
# =============================================================================

class DimensionKind(Enum):
    """Every dimension a WeightProfile can weight.  Values are wire keys."""
    SAFETY = "safety"
    COMMUNITY = "community"
    COST_QUALITY = "costQuality"
    CLIMATE = "climate"
    POLITICS = "politics"
    MOBILITY = "mobility"
    INCLUSION = "inclusion"


# Always reported in ScoreResult.dims, whatever their weight.
PRIMARY_DIMENSIONS = (
    DimensionKind.SAFETY,
    DimensionKind.COMMUNITY,
    DimensionKind.COST_QUALITY,
)

_TRUE_STRINGS = {"true", "1", "yes", "y", "t"}
_FALSE_STRINGS = {"false", "0", "no", "n", "f", ""}


def _coerce_number(value: Any, field_name: str, error_cls=MalformedMetricsError) -> Optional[float]:
    """Return *value* as a float, or None when it is missing.

    NaN and blank strings count as missing.  Booleans and anything that
    does not parse as a number raise *error_cls*.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise error_cls(f"{field_name} must be a number, got a boolean")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "").lstrip("$")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            raise error_cls(f"{field_name} must be a number, got {value!r}") from None
    else:
        raise error_cls(f"{field_name} must be a number, got {type(value).__name__}")
    if math.isnan(number):
        return None
    return number


def _coerce_flag(value: Any, field_name: str, error_cls=MalformedMetricsError) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise error_cls(f"{field_name} must be a boolean, got {value!r}")


def _lookup(record: Mapping, *paths):
    """First non-None value found at any of *paths* (key or nested key tuple)."""
    for path in paths:
        node: Any = record
        for key in (path if isinstance(path, tuple) else (path,)):
            if not isinstance(node, Mapping) or key not in node:
                node = None
                break
            node = node[key]
        if node is not None:
            return node
    return None


@dataclass(frozen=True)
class RawLocationMetrics:
    """Measured facts about one place, as produced by ingestion.

    Optional fields fall back to the documented neutral defaults in
    SCORING_MODEL.defaults at scoring time.  The scorer never mutates
    an instance.
    """
    name: str
    region: str = ""
    hate_crime_rate_per_100k: Optional[float] = None
    violent_crime_rate_per_100k: Optional[float] = None
    diversity_index: Optional[float] = None
    median_monthly_housing_cost: Optional[float] = None
    health_index: Optional[float] = None
    bias_incidents: Mapping[str, int] = field(default_factory=dict)
    # Legacy binary signals (transit-friendly, inclusion-friendly).
    has_transit: Optional[bool] = None
    inclusion_friendly: Optional[bool] = None
    location_id: Optional[int] = None

    @classmethod
    def from_dict(cls, record: Mapping) -> "RawLocationMetrics":
        """Build from a loosely-shaped record.

        Accepts snake_case or camelCase flat keys, and the nested
        ``{"crime": {...}, "census": {...}, "health": {...}}`` shape used
        by the government-data service.
        """
        if not isinstance(record, Mapping):
            raise MalformedMetricsError(
                f"location record must be a mapping, got {type(record).__name__}"
            )
        name = _lookup(record, "name")
        if name is None:
            name = ""
        raw_bias = _lookup(record, "bias_incidents", "biasIncidents") or {}
        if not isinstance(raw_bias, Mapping):
            raise MalformedMetricsError("bias_incidents must be a mapping of category -> count")
        bias: Dict[str, int] = {}
        for category, count in raw_bias.items():
            number = _coerce_number(count, f"bias_incidents[{category!r}]")
            if number is None:
                continue
            if number < 0 or not number.is_integer():
                raise MalformedMetricsError(
                    f"bias_incidents[{category!r}] must be a non-negative integer, got {count!r}"
                )
            bias[str(category)] = int(number)

        location_id = _coerce_number(_lookup(record, "location_id", "locationId", "id"), "location_id")

        return cls(
            name=str(name),
            region=str(_lookup(record, "region", "state") or ""),
            hate_crime_rate_per_100k=_coerce_number(
                _lookup(
                    record,
                    "hate_crime_rate_per_100k",
                    "hateCrimeRatePer100k",
                    "hateCrimesPer100k",
                    ("crime", "hateCrimesPer100k"),
                    ("crime", "hateCrimeRatePer100k"),
                ),
                "hate_crime_rate_per_100k",
            ),
            violent_crime_rate_per_100k=_coerce_number(
                _lookup(
                    record,
                    "violent_crime_rate_per_100k",
                    "violentCrimeRatePer100k",
                    "violentCrimesPer100k",
                    "violentRate",
                    ("crime", "violentCrimesPer100k"),
                    ("crime", "violentCrimeRatePer100k"),
                ),
                "violent_crime_rate_per_100k",
            ),
            diversity_index=_coerce_number(
                _lookup(record, "diversity_index", "diversityIndex", "diversity",
                        ("census", "diversityIndex")),
                "diversity_index",
            ),
            median_monthly_housing_cost=_coerce_number(
                _lookup(record, "median_monthly_housing_cost", "medianMonthlyHousingCost",
                        "medianRent", ("census", "medianRent")),
                "median_monthly_housing_cost",
            ),
            health_index=_coerce_number(
                _lookup(record, "health_index", "healthIndex", "healthScore",
                        ("health", "healthScore"), ("health", "healthIndex")),
                "health_index",
            ),
            bias_incidents=bias,
            has_transit=_coerce_flag(
                _lookup(record, "has_transit", "hasTransit", "mobility"), "has_transit"
            ),
            inclusion_friendly=_coerce_flag(
                _lookup(record, "inclusion_friendly", "inclusionFriendly", "inclusion"),
                "inclusion_friendly",
            ),
            location_id=int(location_id) if location_id is not None else None,
        )


@dataclass(frozen=True)
class WeightProfile:
    """A user's relative priorities across dimensions.

    Weights are relative (they need not sum to 1).  The three primary
    weights left as None are filled from a preset: ``balanced`` by
    default, ``diversity`` when diversity_emphasis is set.
    """
    safety: Optional[float] = None
    community: Optional[float] = None
    cost_quality: Optional[float] = None
    climate: float = 0.0
    politics: float = 0.0
    mobility: float = 0.0
    inclusion: float = 0.0
    budget_max: Optional[float] = None
    diversity_emphasis: bool = False

    @classmethod
    def default(cls, diversity_emphasis: bool = False,
                budget_max: Optional[float] = None) -> "WeightProfile":
        return cls(budget_max=budget_max, diversity_emphasis=diversity_emphasis)

    @classmethod
    def from_dict(cls, payload: Mapping) -> "WeightProfile":
        """Build from a request payload (camelCase or snake_case keys).

        Weights may sit at the top level or under a ``weights`` key.
        Non-numeric weights raise ConfigurationError.
        """
        if not isinstance(payload, Mapping):
            raise ConfigurationError("weight profile must be a mapping")
        nested = payload.get("weights")
        source = nested if isinstance(nested, Mapping) else payload

        def _weight(*keys):
            return _coerce_number(_lookup(source, *keys), keys[0], ConfigurationError)

        def _optional_weight(*keys):
            value = _weight(*keys)
            return 0.0 if value is None else value

        emphasis = _coerce_flag(
            _lookup(payload, "diversity_emphasis", "diversityEmphasis", "valuesDiversity"),
            "diversity_emphasis",
            ConfigurationError,
        )
        return cls(
            safety=_weight("safety"),
            community=_weight("community"),
            cost_quality=_weight("cost_quality", "costQuality"),
            climate=_optional_weight("climate"),
            politics=_optional_weight("politics"),
            mobility=_optional_weight("mobility"),
            inclusion=_optional_weight("inclusion"),
            budget_max=_coerce_number(
                _lookup(payload, "budget_max", "budgetMax"), "budget_max", ConfigurationError
            ),
            diversity_emphasis=bool(emphasis),
        )

    @property
    def preset_key(self) -> str:
        return DIVERSITY_PRESET if self.diversity_emphasis else DEFAULT_PRESET

    def weights(self) -> Dict[DimensionKind, float]:
        """Raw (un-normalized) weight per dimension, presets applied."""
        preset = WEIGHT_PRESETS[self.preset_key].weights
        primary = {
            DimensionKind.SAFETY: self.safety,
            DimensionKind.COMMUNITY: self.community,
            DimensionKind.COST_QUALITY: self.cost_quality,
        }
        resolved = {
            kind: preset[kind.value] if value is None else value
            for kind, value in primary.items()
        }
        resolved[DimensionKind.CLIMATE] = self.climate
        resolved[DimensionKind.POLITICS] = self.politics
        resolved[DimensionKind.MOBILITY] = self.mobility
        resolved[DimensionKind.INCLUSION] = self.inclusion
        return resolved


@dataclass
class ScoreResult:
    """Scorer output for one (location, weights) pair.  Never persisted here."""
    composite: int                 # 0-100, weighted blend
    dims: Dict[str, int]           # 0-100 per dimension, pre-weight
    rationale: List[str]           # <= 3 bullets, deterministic order
    citations: List[Citation]
    name: str = ""
    region: str = ""
    location_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.location_id,
            "name": self.name,
            "state": self.region,
            "composite": self.composite,
            "dims": dict(self.dims),
            "rationale": list(self.rationale),
            "citations": [c.to_dict() for c in self.citations],
        }


# =============================================================================
# NORMALIZER
# =============================================================================

def normalize(value: float, rng: NormalizationRange) -> float:
    """Map *value* onto [0, 1] within *rng*, clamping at both ends.

    NaN maps to 0.0; dimension scorers substitute metric defaults before
    calling, so NaN never reaches a composite.
    """
    if value is None or math.isnan(value):
        return 0.0
    ratio = (value - rng.min) / (rng.max - rng.min)
    return min(1.0, max(0.0, ratio))


def normalize_inverse(value: float, rng: NormalizationRange) -> float:
    """1 - normalize(): for metrics where lower raw values are better."""
    return 1.0 - normalize(value, rng)


def _directional(value: float, rng: NormalizationRange) -> float:
    if rng.higher_is_better:
        return normalize(value, rng)
    return normalize_inverse(value, rng)


def _blend(blend: DimensionBlend, values: Mapping[str, float]) -> float:
    """Weighted sum of directional normalized metrics.

    Terms with zero weight are skipped, which keeps named seams inert.
    Values without a NormalizationRange are taken as already in [0, 1].
    """
    total = 0.0
    for term in blend.terms:
        if term.weight == 0:
            continue
        value = values.get(term.metric, 0.0)
        rng = SCORING_MODEL.ranges.get(term.metric)
        if rng is None:
            total += term.weight * min(1.0, max(0.0, value))
        else:
            total += term.weight * _directional(value, rng)
    return total


# =============================================================================
# METRIC RESOLUTION (defaults + validation)
# =============================================================================

def _label(metrics: RawLocationMetrics) -> str:
    if metrics.region:
        return f"{metrics.name}, {metrics.region}"
    return metrics.name or "<unnamed location>"


def _non_negative(metrics: RawLocationMetrics, field_name: str) -> Optional[float]:
    value = _coerce_number(getattr(metrics, field_name), field_name)
    if value is not None and value < 0:
        raise MalformedMetricsError(
            f"{_label(metrics)}: {field_name} must be non-negative, got {value}"
        )
    return value


def _crime_rates(metrics: RawLocationMetrics) -> Tuple[float, float]:
    hate = _non_negative(metrics, "hate_crime_rate_per_100k")
    violent = _non_negative(metrics, "violent_crime_rate_per_100k")
    if hate is None and violent is None:
        raise MalformedMetricsError(
            f"{_label(metrics)}: no crime data (hate or violent crime rate required)"
        )
    default = SCORING_MODEL.defaults.crime_rate_per_100k
    return (
        default if hate is None else hate,
        default if violent is None else violent,
    )


def _diversity(metrics: RawLocationMetrics) -> float:
    value = _non_negative(metrics, "diversity_index")
    if value is None:
        return SCORING_MODEL.defaults.diversity_index
    if value > 1.0:
        raise MalformedMetricsError(
            f"{_label(metrics)}: diversity_index must be within [0, 1], got {value}"
        )
    return value


def _measured_cost(metrics: RawLocationMetrics) -> Optional[float]:
    value = _coerce_number(metrics.median_monthly_housing_cost, "median_monthly_housing_cost")
    if value is not None and value <= 0:
        raise MalformedMetricsError(
            f"{_label(metrics)}: median_monthly_housing_cost must be positive, got {value}"
        )
    return value


def _health(metrics: RawLocationMetrics) -> float:
    value = _non_negative(metrics, "health_index")
    return SCORING_MODEL.defaults.health_index if value is None else value


# =============================================================================
# DIMENSION SCORERS
# =============================================================================

def budget_penalty(cost: float, budget_max: Optional[float]) -> float:
    """Fractional cost-quality penalty for a location over budget.

    Zero when no budget is set or cost <= budget; otherwise
    min(cap, overage * slope), so at most 0.5 however far over.
    """
    if budget_max is None or cost <= budget_max:
        return 0.0
    if budget_max <= 0:
        raise ConfigurationError(f"budget_max must be positive, got {budget_max}")
    over_budget = (cost - budget_max) / budget_max
    cfg = SCORING_MODEL.budget
    return min(cfg.cap, over_budget * cfg.slope)


def score_safety(metrics: RawLocationMetrics) -> float:
    """Inverted hate-crime (70%) and violent-crime (30%) rates."""
    hate, violent = _crime_rates(metrics)
    return _blend(SCORING_MODEL.safety, {
        "hate_crime_rate_per_100k": hate,
        "violent_crime_rate_per_100k": violent,
    })


def score_community(metrics: RawLocationMetrics, representation_proxy: float = 0.0) -> float:
    """Normalized diversity index.

    *representation_proxy* feeds the zero-weight seam term; it has no
    effect until SCORING_MODEL.community gives it weight.
    """
    return _blend(SCORING_MODEL.community, {
        "diversity_index": _diversity(metrics),
        "representation_proxy": representation_proxy,
    })


def score_cost_quality(metrics: RawLocationMetrics, budget_max: Optional[float] = None) -> float:
    """Inverted housing cost (60%) and health index (40%), budget-penalized.

    The budget penalty only applies to a measured cost; the neutral
    default cost never counts as over budget.
    """
    measured = _measured_cost(metrics)
    cost = SCORING_MODEL.defaults.median_monthly_housing_cost if measured is None else measured
    score = _blend(SCORING_MODEL.cost_quality, {
        "median_monthly_housing_cost": cost,
        "health_index": _health(metrics),
    })
    if measured is not None:
        score *= 1.0 - budget_penalty(measured, budget_max)
    return score


def score_mobility(metrics: RawLocationMetrics) -> float:
    """Legacy binary dimension: 1.0 for transit-friendly places."""
    return 1.0 if metrics.has_transit else 0.0


def score_inclusion(metrics: RawLocationMetrics) -> float:
    """Legacy binary dimension: 1.0 for inclusion-friendly places."""
    return 1.0 if metrics.inclusion_friendly else 0.0


# Dimensions without an entry (climate, politics) are accepted in a
# WeightProfile but cannot carry weight until a scorer is registered.
DIMENSION_SCORERS: Dict[DimensionKind, Callable[[RawLocationMetrics, WeightProfile], float]] = {
    DimensionKind.SAFETY: lambda m, p: score_safety(m),
    DimensionKind.COMMUNITY: lambda m, p: score_community(m),
    DimensionKind.COST_QUALITY: lambda m, p: score_cost_quality(m, p.budget_max),
    DimensionKind.MOBILITY: lambda m, p: score_mobility(m),
    DimensionKind.INCLUSION: lambda m, p: score_inclusion(m),
}


# =============================================================================
# COMPOSITE
# =============================================================================

def _round_half_up(x: float) -> int:
    """floor(x + 0.5): avoids round()'s banker's rounding at .5."""
    return int(math.floor(x + 0.5))


def _to_percent(score: float) -> int:
    return max(0, min(100, _round_half_up(100 * score)))


def effective_weights(profile: WeightProfile) -> Dict[DimensionKind, float]:
    """Validate *profile* and return each positive weight divided by the sum.

    Raises ConfigurationError when the weights cannot define a composite.
    """
    if not isinstance(profile, WeightProfile):
        raise ConfigurationError(
            f"weights must be a WeightProfile, got {type(profile).__name__}"
        )
    raw = profile.weights()
    for kind, weight in raw.items():
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or math.isnan(weight):
            raise ConfigurationError(f"weight for {kind.value!r} must be a number, got {weight!r}")
        if weight < 0:
            raise ConfigurationError(f"weight for {kind.value!r} must be non-negative, got {weight}")
        if weight > 0 and kind not in DIMENSION_SCORERS:
            raise ConfigurationError(f"no scorer is registered for dimension {kind.value!r}")
    total = sum(raw.values())
    if total <= 0:
        raise ConfigurationError("all weights are zero; no composite score can be produced")
    if math.isinf(total):
        raise ConfigurationError("weights must be finite")
    if profile.budget_max is not None and not profile.budget_max > 0:
        raise ConfigurationError(f"budget_max must be positive, got {profile.budget_max}")
    return {kind: weight / total for kind, weight in raw.items() if weight > 0}


# =============================================================================
# RATIONALE & CITATIONS
# =============================================================================

def _format_dollars(amount: float) -> str:
    if float(amount).is_integer():
        return f"${amount:,.0f}"
    return f"${amount:,.2f}"


def generate_rationale(
    metrics: RawLocationMetrics,
    dims: Mapping[DimensionKind, float],
    budget_max: Optional[float] = None,
) -> List[str]:
    """Up to three bullets explaining the score, in a fixed order.

    Candidates are safety, then community, then cost vs. budget.  The
    cost bullet needs both a budget and a measured cost.
    """
    cfg = SCORING_MODEL.rationale
    bullets: List[str] = []

    safety = dims.get(DimensionKind.SAFETY)
    if safety is not None:
        if safety > cfg.safety_positive:
            bullets.append("Low crime rates create a safe community environment")
        elif safety < cfg.safety_caution:
            bullets.append("Higher than average crime rates may be a safety concern")

    community = dims.get(DimensionKind.COMMUNITY)
    if community is not None and community > cfg.community_positive:
        bullets.append("Diverse community with representation from many backgrounds")

    cost = _measured_cost(metrics)
    if budget_max is not None and cost is not None:
        if cost <= budget_max:
            bullets.append(f"Housing costs ({_format_dollars(cost)}) fit within your budget")
        else:
            bullets.append(f"Housing costs ({_format_dollars(cost)}) exceed your stated budget")

    return bullets[:cfg.max_bullets]


def get_citations() -> List[Citation]:
    """Static provenance list (crime, census, health).  Never per-location."""
    return list(SCORING_MODEL.citations)


# =============================================================================
# PUBLIC ENTRY POINTS
# =============================================================================

def compute_score(metrics: RawLocationMetrics, weights: WeightProfile) -> ScoreResult:
    """Score one location.

    Raises:
        ConfigurationError: the weight profile cannot define a composite.
        MalformedMetricsError: the record has an unrecoverable shape.
    """
    effective = effective_weights(weights)
    if not isinstance(metrics, RawLocationMetrics):
        raise MalformedMetricsError(
            f"metrics must be RawLocationMetrics, got {type(metrics).__name__}"
        )

    kinds = list(PRIMARY_DIMENSIONS)
    kinds.extend(k for k in effective if k not in kinds)
    dim_scores = {kind: DIMENSION_SCORERS[kind](metrics, weights) for kind in kinds}

    blended = sum(dim_scores[kind] * share for kind, share in effective.items())

    return ScoreResult(
        composite=_to_percent(blended),
        dims={kind.value: _to_percent(score) for kind, score in dim_scores.items()},
        rationale=generate_rationale(metrics, dim_scores, weights.budget_max),
        citations=get_citations(),
        name=metrics.name,
        region=metrics.region,
        location_id=metrics.location_id,
    )


def compute_scores(
    metrics_list: Iterable[RawLocationMetrics],
    weights: WeightProfile,
    max_workers: Optional[int] = None,
) -> List[ScoreResult]:
    """Order-preserving map of compute_score over *metrics_list*.

    Malformed records are skipped with a warning; a bad weight profile
    raises ConfigurationError before any record is scored.  With
    max_workers > 1 the records are scored on a thread pool.
    """
    effective_weights(weights)
    items = list(metrics_list)

    def _score_one(metrics):
        try:
            return compute_score(metrics, weights)
        except MalformedMetricsError as exc:
            logger.warning("Skipping location %r: %s", getattr(metrics, "name", metrics), exc)
            return None

    if max_workers and max_workers > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            scored = list(pool.map(_score_one, items))
    else:
        scored = [_score_one(m) for m in items]

    skipped = sum(1 for r in scored if r is None)
    if skipped:
        logger.info("Scored %d of %d locations (%d skipped)", len(items) - skipped, len(items), skipped)
    return [r for r in scored if r is not None]


# =============================================================================
# LEGACY MATCHER
# =============================================================================

def legacy_preferences_to_profile(preferences: Mapping) -> WeightProfile:
    """Map the deprecated matcher's preferences onto a WeightProfile.

    ``{"budgetMax": 2000, "weights": {"safety", "affordability",
    "diversity", "mobility", "inclusion"}}``: affordability becomes
    cost_quality, diversity becomes community, and mobility/inclusion
    become binary dimensions.
    """
    if not isinstance(preferences, Mapping):
        raise ConfigurationError("preferences must be a mapping")
    weights = preferences.get("weights")
    if not isinstance(weights, Mapping) or not weights:
        raise ConfigurationError("preferences.weights is required")

    def _w(key):
        value = _coerce_number(weights.get(key), f"weights.{key}", ConfigurationError)
        return 0.0 if value is None else value

    return WeightProfile(
        safety=_w("safety"),
        community=_w("diversity"),
        cost_quality=_w("affordability"),
        mobility=_w("mobility"),
        inclusion=_w("inclusion"),
        budget_max=_coerce_number(preferences.get("budgetMax"), "budgetMax", ConfigurationError),
    )
