"""Tests for the metrics store (models.py)."""

import pytest

from models import (
    add_hate_crime,
    bias_incidents_by_location,
    dataset_fingerprint,
    dataset_last_updated,
    dataset_summary,
    delete_locations_except,
    find_location_by_name,
    get_location,
    get_location_stats,
    list_locations,
    load_location_metrics,
    replace_hate_crimes,
    set_crime_stats,
    upsert_location,
)


class TestUpsertLocation:

    def test_returns_stable_id(self):
        first = upsert_location("Seattle", "wa", diversity_index=0.6)
        second = upsert_location("Seattle", "WA", diversity_index=0.65)
        assert first == second
        row = get_location(first)
        assert row["state"] == "WA"
        assert row["diversity_index"] == 0.65

    def test_same_name_different_state(self):
        a = upsert_location("Portland", "OR")
        b = upsert_location("Portland", "ME")
        assert a != b
        assert [r["state"] for r in list_locations()] == ["ME", "OR"]

    def test_flags_stored_as_int(self):
        loc_id = upsert_location("Austin", "TX", has_transit=True, inclusion_friendly=False)
        row = get_location(loc_id)
        assert row["has_transit"] == 1
        assert row["inclusion_friendly"] == 0


class TestLookup:

    def test_find_by_name_case_insensitive(self, seeded):
        assert find_location_by_name("alpha")["id"] == seeded["Alpha"]

    def test_find_by_name_and_state(self, seeded):
        assert find_location_by_name("Alpha", "or") is None
        assert find_location_by_name("Alpha", "wa")["id"] == seeded["Alpha"]

    def test_get_location_missing(self):
        assert get_location(999) is None


class TestLoadLocationMetrics:

    def test_joins_crime_and_bias(self, seeded):
        by_name = {m.name: m for m in load_location_metrics()}
        delta = by_name["Delta"]
        assert delta.location_id == seeded["Delta"]
        assert delta.region == "TX"
        assert delta.hate_crime_rate_per_100k == 10
        assert delta.violent_crime_rate_per_100k == 400
        assert delta.median_monthly_housing_cost == 1500
        assert delta.bias_incidents == {"Anti-Black": 1, "Anti-LGBTQ": 5}
        assert by_name["Charlie"].bias_incidents == {}

    def test_subset(self, seeded):
        metrics = load_location_metrics([seeded["Bravo"]])
        assert [m.name for m in metrics] == ["Bravo"]

    def test_empty_subset(self, seeded):
        assert load_location_metrics([]) == []

    def test_location_without_crime_row(self):
        upsert_location("Nowhere", "KS")
        (m,) = load_location_metrics()
        assert m.hate_crime_rate_per_100k is None
        assert m.violent_crime_rate_per_100k is None
        assert m.has_transit is None


class TestStats:

    def test_location_stats(self, seeded):
        stats = get_location_stats(seeded["Delta"])
        assert stats["crimeStats"] == {"hateCrimeRate": 10, "violentRate": 400, "propertyRate": 1000}
        assert stats["hateCrimes"]["byBias"] == [
            {"biasType": "Anti-Black", "incidents": 1},
            {"biasType": "Anti-LGBTQ", "incidents": 5},
        ]

    def test_stats_without_crime_row(self):
        loc_id = upsert_location("Nowhere", "KS")
        assert get_location_stats(loc_id) == {"hateCrimes": {"byBias": []}, "crimeStats": None}

    def test_bias_incidents_summed_across_types(self, seeded):
        totals = bias_incidents_by_location(["Anti-Black", "Anti-LGBTQ"])
        assert totals == {seeded["Alpha"]: 3, seeded["Bravo"]: 2, seeded["Delta"]: 6}

    def test_bias_incidents_excludes_locations_without_data(self, seeded):
        totals = bias_incidents_by_location(["Anti-LGBTQ"])
        assert seeded["Alpha"] not in totals
        assert seeded["Charlie"] not in totals

    def test_bias_incidents_empty_types(self, seeded):
        assert bias_incidents_by_location([]) == {}


class TestDatasetFingerprint:

    def test_summary_counts(self, seeded):
        summary = dataset_summary()
        assert summary["counts"] == {"locations": 4, "crimeStats": 4, "hateCrimes": 4}
        assert summary["sums"]["hateCrimesIncidents"] == 11
        assert summary["sums"]["medianHousingCost"] == 8500

    def test_empty_dataset(self):
        summary = dataset_summary()
        assert summary["counts"] == {"locations": 0, "crimeStats": 0, "hateCrimes": 0}
        assert dataset_last_updated() == {"locations": None, "crimeStats": None, "hateCrimes": None}

    def test_stable_without_changes(self, seeded):
        assert dataset_fingerprint() == dataset_fingerprint()

    def test_reingesting_identical_data_keeps_fingerprint(self, seeded):
        before = dataset_fingerprint()
        upsert_location("Alpha", "WA", diversity_index=0.9, median_housing_cost=1000, health_index=90)
        assert dataset_fingerprint() == before

    def test_new_incident_changes_fingerprint(self, seeded):
        before = dataset_fingerprint()
        add_hate_crime(seeded["Charlie"], "Anti-Asian", 2)
        assert dataset_fingerprint() != before

    def test_changed_metric_changes_fingerprint(self, seeded):
        before = dataset_fingerprint()
        set_crime_stats(seeded["Bravo"], hate_crime_rate=30, violent_rate=1000, property_rate=1000)
        assert dataset_fingerprint() != before

    def test_last_updated_populated(self, seeded):
        updated = dataset_last_updated()
        assert all(updated.values())

    def test_swapped_metrics_change_fingerprint(self, seeded):
        # Counts and column sums are unchanged by a swap; the ordering is not.
        before = dataset_fingerprint()
        upsert_location("Alpha", "WA", diversity_index=0.2, median_housing_cost=4000, health_index=40)
        set_crime_stats(seeded["Alpha"], hate_crime_rate=50, violent_rate=2000, property_rate=1000)
        upsert_location("Charlie", "WA", diversity_index=0.9, median_housing_cost=1000, health_index=90)
        set_crime_stats(seeded["Charlie"], hate_crime_rate=0, violent_rate=0, property_rate=1000)
        assert dataset_summary()["sums"]["diversityIndex"] == pytest.approx(2.3)
        assert dataset_fingerprint() != before

    def test_moved_incidents_change_fingerprint(self, seeded):
        before = dataset_fingerprint()
        replace_hate_crimes(seeded["Alpha"], {"Anti-Black": 2})
        replace_hate_crimes(seeded["Delta"], {"Anti-Black": 2, "Anti-LGBTQ": 5})
        assert dataset_summary()["sums"]["hateCrimesIncidents"] == 11
        assert dataset_fingerprint() != before


class TestReplaceHateCrimes:

    def test_drops_categories_not_given(self, seeded):
        replace_hate_crimes(seeded["Delta"], {"Anti-LGBTQ": 7})
        assert load_location_metrics([seeded["Delta"]])[0].bias_incidents == {"Anti-LGBTQ": 7}

    def test_empty_mapping_clears(self, seeded):
        replace_hate_crimes(seeded["Alpha"], {})
        assert get_location_stats(seeded["Alpha"])["hateCrimes"]["byBias"] == []

    def test_other_locations_untouched(self, seeded):
        replace_hate_crimes(seeded["Alpha"], {})
        assert bias_incidents_by_location(["Anti-Black"]) == {seeded["Delta"]: 1}


class TestDeleteLocationsExcept:

    def test_removes_with_dependent_rows(self, seeded):
        removed = delete_locations_except([seeded["Alpha"], seeded["Bravo"]])
        assert removed == 2
        assert [r["name"] for r in list_locations()] == ["Alpha", "Bravo"]
        assert dataset_summary()["counts"] == {"locations": 2, "crimeStats": 2, "hateCrimes": 2}

    def test_empty_keep_list_clears_store(self, seeded):
        assert delete_locations_except([]) == 4
        assert list_locations() == []
