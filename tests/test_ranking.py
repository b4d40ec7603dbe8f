"""Tests for ranking.py: query parsing, filters, stable sorting and paging."""

import pytest
from werkzeug.datastructures import MultiDict

from location_scorer import RawLocationMetrics
from ranking import MAX_LIMIT, ScoreQuery, paginate, profile_from_args, rank_locations


def _loc(loc_id, name, state, hate, violent, diversity, cost, health):
    return RawLocationMetrics(
        name=name,
        region=state,
        hate_crime_rate_per_100k=hate,
        violent_crime_rate_per_100k=violent,
        diversity_index=diversity,
        median_monthly_housing_cost=cost,
        health_index=health,
        location_id=loc_id,
    )


# Balanced composites: Alpha 95, Delta 76, Bravo 53, Charlie 12
LOCATIONS = [
    _loc(1, "Alpha", "WA", 0, 0, 0.9, 1000, 90),
    _loc(2, "Bravo", "OR", 25, 1000, 0.5, 2000, 60),
    _loc(3, "Charlie", "WA", 50, 2000, 0.2, 4000, 40),
    _loc(4, "Delta", "TX", 10, 400, 0.7, 1500, 70),
]


def _rank(**args):
    query = ScoreQuery.from_args(args)
    return rank_locations(LOCATIONS, query.profile(), query)


def _names(results):
    return [r["name"] for r in results]


class TestScoreQuery:

    def test_defaults(self):
        q = ScoreQuery.from_args({})
        assert (q.sort_by, q.sort_dir, q.limit, q.offset) == ("score", "desc", 50, 0)
        assert q.weights == {}
        assert q.nocache is False

    def test_limit_clamped(self):
        assert ScoreQuery.from_args({"limit": "500"}).limit == MAX_LIMIT
        assert ScoreQuery.from_args({"limit": "0"}).limit == 1

    def test_negative_offset_clamped(self):
        assert ScoreQuery.from_args({"offset": "-5"}).offset == 0

    def test_invalid_sort_key(self):
        with pytest.raises(ValueError, match="sortBy"):
            ScoreQuery.from_args({"sortBy": "vibes"})

    def test_invalid_sort_dir(self):
        with pytest.raises(ValueError, match="sortDir"):
            ScoreQuery.from_args({"sortDir": "sideways"})

    def test_non_numeric_filter(self):
        with pytest.raises(ValueError, match="minSafety"):
            ScoreQuery.from_args({"minSafety": "high"})

    def test_non_integer_limit(self):
        with pytest.raises(ValueError, match="limit"):
            ScoreQuery.from_args({"limit": "ten"})

    def test_repeated_bias_type(self):
        args = MultiDict([("biasType", "Anti-Black"), ("biasType", " Anti-LGBTQ "), ("biasType", "Anti-Black")])
        assert ScoreQuery.from_args(args).bias_types == ["Anti-Black", "Anti-LGBTQ"]

    def test_state_and_q_normalized(self):
        q = ScoreQuery.from_args({"state": " wa ", "q": "SeaT"})
        assert (q.state, q.q) == ("WA", "seat")

    def test_weights_feed_profile(self):
        q = ScoreQuery.from_args({"wSafety": "2", "budgetMax": "1800", "valuesDiversity": "true"})
        profile = q.profile()
        assert profile.safety == 2.0
        assert profile.community == 0.0
        assert profile.cost_quality == 0.0
        assert profile.budget_max == 1800.0
        assert profile.diversity_emphasis is True

    def test_no_primary_weights_uses_preset(self):
        profile = ScoreQuery.from_args({"wMobility": "1"}).profile()
        assert (profile.safety, profile.community, profile.cost_quality) == (None, None, None)
        assert profile.mobility == 1.0

    def test_cache_params_exclude_paging(self):
        a = ScoreQuery.from_args({"limit": "5", "offset": "10", "state": "WA"})
        b = ScoreQuery.from_args({"state": "WA"})
        assert a.cache_params() == b.cache_params()
        assert "limit" not in a.cache_params()


class TestRankLocations:

    def test_sorted_by_composite_desc(self):
        results = _rank()
        assert _names(results) == ["Alpha", "Delta", "Bravo", "Charlie"]
        assert [r["composite"] for r in results] == [95, 76, 53, 12]

    def test_sort_by_dimension_asc(self):
        assert _names(_rank(sortBy="safety", sortDir="asc")) == ["Charlie", "Bravo", "Delta", "Alpha"]

    def test_ties_broken_by_name_then_state(self):
        twins = [
            _loc(1, "Springfield", "OR", 5, 300, 0.5, 1500, 60),
            _loc(2, "Springfield", "IL", 5, 300, 0.5, 1500, 60),
            _loc(3, "Riverside", "CA", 5, 300, 0.5, 1500, 60),
        ]
        query = ScoreQuery.from_args({})
        results = rank_locations(twins, query.profile(), query)
        assert [(r["name"], r["state"]) for r in results] == [
            ("Riverside", "CA"), ("Springfield", "IL"), ("Springfield", "OR"),
        ]

    def test_min_safety_filter(self):
        assert _names(_rank(minSafety="60")) == ["Alpha", "Delta"]

    def test_min_community_filter(self):
        assert _names(_rank(minCommunity="50")) == ["Alpha", "Delta", "Bravo"]

    def test_state_filter(self):
        assert _names(_rank(state="wa")) == ["Alpha", "Charlie"]

    def test_text_search(self):
        assert _names(_rank(q="AL")) == ["Alpha"]
        assert _names(_rank(q="tx")) == ["Delta"]

    def test_bias_filter_keeps_only_locations_with_data(self):
        query = ScoreQuery.from_args({"biasType": "Anti-LGBTQ"})
        results = rank_locations(LOCATIONS, query.profile(), query, {2: 2, 4: 5})
        assert _names(results) == ["Delta", "Bravo"]
        assert [r["biasIncidents"] for r in results] == [5, 2]

    def test_no_bias_field_without_bias_filter(self):
        assert "biasIncidents" not in _rank()[0]

    def test_weights_change_order(self):
        results = _rank(wSafety="0", wCommunity="0", wCostQuality="1")
        assert _names(results)[0] == "Alpha"
        assert _names(results)[-1] == "Charlie"

    def test_single_primary_weight_ranks_on_that_dimension_only(self):
        results = _rank(wSafety="1")
        assert [r["composite"] for r in results] == [r["dims"]["safety"] for r in results]
        assert _names(results) == ["Alpha", "Delta", "Bravo", "Charlie"]

    def test_malformed_location_skipped(self):
        bad = _loc(9, "Broken", "ZZ", None, None, 0.5, 1000, 50)
        query = ScoreQuery.from_args({})
        results = rank_locations(LOCATIONS + [bad], query.profile(), query)
        assert "Broken" not in _names(results)
        assert len(results) == 4


class TestPaginate:

    def test_window(self):
        assert paginate(list(range(10)), limit=3, offset=4) == [4, 5, 6]

    def test_past_end(self):
        assert paginate(list(range(3)), limit=5, offset=10) == []


class TestProfileFromArgs:

    def test_ignores_sort_and_paging(self):
        profile = profile_from_args({"sortBy": "vibes", "limit": "ten", "wSafety": "3"})
        assert profile.safety == 3.0
        assert profile.community == 0.0

    def test_defaults_to_preset(self):
        profile = profile_from_args({"valuesDiversity": "true", "budgetMax": "2000"})
        assert profile.safety is None
        assert profile.diversity_emphasis is True
        assert profile.budget_max == 2000.0

    def test_bad_budget(self):
        with pytest.raises(ValueError, match="budgetMax"):
            profile_from_args({"budgetMax": "lots"})
