"""
Filter, sort and paginate scored locations for the ranking endpoint.

Parses query parameters into a ScoreQuery, builds the WeightProfile it
implies, and turns a list of RawLocationMetrics into an ordered list of
result dicts.  Sorting is stable with ties broken by name then state, so
identical inputs always rank identically.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from location_scorer import RawLocationMetrics, WeightProfile, compute_scores

logger = logging.getLogger(__name__)

SORT_KEYS = ("score", "safety", "community", "costQuality")
SORT_DIRS = ("asc", "desc")
DEFAULT_LIMIT = 50
MAX_LIMIT = 100

# Query param -> WeightProfile field for explicit weights.
_WEIGHT_PARAMS = {
    "wSafety": "safety",
    "wCommunity": "community",
    "wCostQuality": "cost_quality",
    "wMobility": "mobility",
    "wInclusion": "inclusion",
}
_PRIMARY_WEIGHTS = ("safety", "community", "cost_quality")


def _getlist(args: Mapping, key: str) -> List[str]:
    """Multi-valued param from a werkzeug MultiDict or a plain mapping."""
    if hasattr(args, "getlist"):
        return [str(v) for v in args.getlist(key)]
    value = args.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _optional_float(args: Mapping, key: str) -> Optional[float]:
    raw = args.get(key)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number") from None


def _optional_int(args: Mapping, key: str, default: int) -> int:
    raw = args.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer") from None


def _flag(args: Mapping, key: str) -> bool:
    return str(args.get(key, "")).strip().lower() == "true"


def _weights_from_args(args: Mapping) -> Dict[str, float]:
    weights = {}
    for param, attr in _WEIGHT_PARAMS.items():
        value = _optional_float(args, param)
        if value is not None:
            weights[attr] = value
    return weights


@dataclass
class ScoreQuery:
    """One ranking request: preferences, filters, sort and page."""
    values_diversity: bool = False
    budget_max: Optional[float] = None
    weights: Dict[str, float] = field(default_factory=dict)
    min_safety: Optional[float] = None
    min_community: Optional[float] = None
    sort_by: str = "score"
    sort_dir: str = "desc"
    bias_types: List[str] = field(default_factory=list)
    state: str = ""
    q: str = ""
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    nocache: bool = False

    @classmethod
    def from_args(cls, args: Mapping) -> "ScoreQuery":
        """Parse request args.  Raises ValueError on malformed values."""
        sort_by = str(args.get("sortBy") or "score")
        if sort_by not in SORT_KEYS:
            raise ValueError(f"sortBy must be one of {', '.join(SORT_KEYS)}")
        sort_dir = str(args.get("sortDir") or "desc").lower()
        if sort_dir not in SORT_DIRS:
            raise ValueError("sortDir must be 'asc' or 'desc'")

        bias_types = []
        for value in _getlist(args, "biasType"):
            value = value.strip()
            if value and value not in bias_types:
                bias_types.append(value)

        return cls(
            values_diversity=_flag(args, "valuesDiversity"),
            budget_max=_optional_float(args, "budgetMax"),
            weights=_weights_from_args(args),
            min_safety=_optional_float(args, "minSafety"),
            min_community=_optional_float(args, "minCommunity"),
            sort_by=sort_by,
            sort_dir=sort_dir,
            bias_types=bias_types,
            state=str(args.get("state") or "").strip().upper(),
            q=str(args.get("q") or "").strip().lower(),
            limit=max(1, min(MAX_LIMIT, _optional_int(args, "limit", DEFAULT_LIMIT))),
            offset=max(0, _optional_int(args, "offset", 0)),
            nocache=_flag(args, "nocache"),
        )

    def profile(self) -> WeightProfile:
        """The WeightProfile this query implies.

        With no primary weight given, the preset applies (balanced, or
        diversity when valuesDiversity is set).  Once any of wSafety,
        wCommunity or wCostQuality is given, the other primaries default
        to 0 rather than to preset values, so wSafety=1 alone ranks on
        safety only.
        """
        weights = dict(self.weights)
        if any(k in weights for k in _PRIMARY_WEIGHTS):
            for k in _PRIMARY_WEIGHTS:
                weights.setdefault(k, 0.0)
        return WeightProfile(
            budget_max=self.budget_max,
            diversity_emphasis=self.values_diversity,
            **weights,
        )

    def cache_params(self) -> Dict[str, Any]:
        """Filter/sort parameters that shape the cached list (no paging)."""
        return {
            "minSafety": self.min_safety,
            "minCommunity": self.min_community,
            "sortBy": self.sort_by,
            "sortDir": self.sort_dir,
            "biasType": list(self.bias_types),
            "state": self.state,
            "q": self.q,
        }


def profile_from_args(args: Mapping) -> WeightProfile:
    """Parse only the preference params (valuesDiversity, budgetMax, w*).

    For single-location lookups, where sort, filter and paging params do
    not apply.  Raises ValueError on malformed numbers.
    """
    query = ScoreQuery(
        values_diversity=_flag(args, "valuesDiversity"),
        budget_max=_optional_float(args, "budgetMax"),
        weights=_weights_from_args(args),
    )
    return query.profile()


def _sort_value(result: Dict[str, Any], sort_by: str) -> int:
    if sort_by == "score":
        return result["composite"]
    return result["dims"].get(sort_by, 0)


def rank_locations(
    metrics_list: Sequence[RawLocationMetrics],
    profile: WeightProfile,
    query: ScoreQuery,
    bias_incidents: Optional[Mapping[int, int]] = None,
) -> List[Dict[str, Any]]:
    """Score, filter and sort.  Returns the full (unpaginated) list."""
    results = [r.to_dict() for r in compute_scores(metrics_list, profile)]

    if query.bias_types:
        bias_incidents = bias_incidents or {}
        for r in results:
            r["biasIncidents"] = bias_incidents.get(r["id"])
        # Only keep locations with data for the requested biases
        results = [r for r in results if r["biasIncidents"] is not None]
    if query.min_safety is not None:
        results = [r for r in results if r["dims"]["safety"] >= query.min_safety]
    if query.min_community is not None:
        results = [r for r in results if r["dims"]["community"] >= query.min_community]
    if query.state:
        results = [r for r in results if r["state"].upper() == query.state]
    if query.q:
        results = [r for r in results if query.q in f"{r['name']}, {r['state']}".lower()]

    results.sort(key=lambda r: (r["name"], r["state"]))
    results.sort(key=lambda r: _sort_value(r, query.sort_by), reverse=query.sort_dir == "desc")
    return results


def paginate(results: List[Any], limit: int, offset: int) -> List[Any]:
    return results[offset:offset + limit]
