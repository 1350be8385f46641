"""
Tests for exposure aggregation.

Covers the four modes and, above all, which denominator each one uses.
"""

import math

import pytest

from conftest import make_facility
from src.exposure.aggregation import (
    AggregationSpec,
    PopulationPolicy,
    aggregate,
    aggregate_by_category,
    aggregate_by_juvenile,
    aggregate_by_threshold,
    aggregate_by_type,
    percentage,
    records_to_frame,
    summarize,
)
from src.exposure.proximity import ProximityPair, join_downstream
from src.watershed.models import DataQualityError


def _by_key(records):
    return {r.key: r for r in records}


@pytest.fixture
def universe():
    """Ten facilities: 4 STATE (1 juvenile), 4 FEDERAL, 2 LOCAL (1 juvenile)."""
    return [
        make_facility("S1", 1.0, facility_type="STATE", population=100),
        make_facility("S2", 1.0, facility_type="STATE", population=200),
        make_facility("S3", 1.0, facility_type="STATE", population=None),
        make_facility("S4", 1.0, facility_type="STATE", population=50, security_level="JUVENILE"),
        make_facility("F1", 1.0, facility_type="FEDERAL", population=1000),
        make_facility("F2", 1.0, facility_type="FEDERAL", population=1000),
        make_facility("F3", 1.0, facility_type="FEDERAL", population=1000),
        make_facility("F4", 1.0, facility_type="FEDERAL", population=1000),
        make_facility("L1", 1.0, facility_type="LOCAL", population=30),
        make_facility("L2", 1.0, facility_type="LOCAL", population=None, security_level="juvenile"),
    ]


@pytest.fixture
def pairs():
    """S1: 2 airports; S3: 1 airport + 1 landfill; S4: 1 landfill; L2: 6 landfills."""
    return (
        [
            ProximityPair("S1", "A1", "W1", "airport"),
            ProximityPair("S1", "A2", "W1", "airport"),
            ProximityPair("S3", "A1", "W1", "airport"),
            ProximityPair("S3", "D1", "W1", "landfill"),
            ProximityPair("S4", "D1", "W1", "landfill"),
        ]
        + [ProximityPair("L2", f"D{i}", "W2", "landfill") for i in range(6)]
    )


class TestPercentage:
    def test_regular(self):
        assert percentage(1, 4) == 25.0

    def test_zero_count(self):
        assert percentage(0, 5) == 0.0

    def test_empty_denominator_is_undefined(self):
        assert percentage(0, 0) is None


class TestThresholdMode:
    def test_more_than_zero_counts_distinct_facilities(self, pairs, universe):
        records = _by_key(aggregate_by_threshold(pairs, universe, thresholds=(0,)))

        rec = records["more than 0"]
        assert rec.facility_count == len({p.facility_id for p in pairs}) == 4
        assert rec.denominator == 10
        assert rec.percent == 40.0

    def test_more_than_one_excludes_single_source_facilities(self, pairs, universe):
        records = _by_key(aggregate_by_threshold(pairs, universe, thresholds=(0, 1, 5)))

        assert records["more than 1"].facility_count == 3  # S1, S3, L2
        assert records["more than 5"].facility_count == 1  # L2
        assert [r.key for r in aggregate_by_threshold(pairs, universe)] == [
            "more than 0", "more than 1", "more than 5",
        ]

    def test_juvenile_denominators_come_from_universe_subsets(self, pairs, universe):
        rec = _by_key(aggregate_by_threshold(pairs, universe, thresholds=(0,)))["more than 0"]

        # Juvenile universe: S4, L2; both matched
        assert rec.juvenile.count == 2
        assert rec.juvenile.denominator == 2
        assert rec.juvenile.percent == 100.0
        # Non-juvenile universe: 8; matched S1, S3
        assert rec.non_juvenile.count == 2
        assert rec.non_juvenile.denominator == 8
        assert rec.non_juvenile.percent == 25.0

    def test_population_excludes_unknown(self, pairs, universe):
        rec = _by_key(aggregate_by_threshold(pairs, universe, thresholds=(0,)))["more than 0"]

        # S1 100 + S3 unknown + S4 50 + L2 unknown
        assert rec.population == 150
        assert rec.unknown_population_count == 2
        assert rec.juvenile.population == 50
        assert rec.non_juvenile.population == 100

    def test_unknown_population_still_counted(self):
        """A facility with unknown population adds nothing to the sum but still counts."""
        universe = [make_facility("X", 1.0, population=None), make_facility("Y", 1.0, population=10)]
        pairs = [ProximityPair("X", "S", "W1", "airport")]

        rec = aggregate_by_threshold(pairs, universe, thresholds=(0,))[0]

        assert rec.facility_count == 1
        assert rec.population == 0
        assert rec.percent == 50.0

    def test_scenario_thresholds(self, scenario_sets):
        facilities, sources = scenario_sets
        pairs = join_downstream(facilities, sources)

        records = _by_key(aggregate_by_threshold(pairs, list(facilities), thresholds=(0, 1)))

        assert records["more than 0"].facility_count == 2
        # C lies below both S1 and S2
        assert records["more than 1"].facility_count == 1

    def test_no_pairs_gives_zero_rows(self, universe):
        records = aggregate_by_threshold([], universe, thresholds=(0, 1))

        assert [r.facility_count for r in records] == [0, 0]
        assert [r.percent for r in records] == [0.0, 0.0]

    def test_empty_universe_gives_undefined_percent(self):
        rec = aggregate_by_threshold([], [], thresholds=(0,))[0]

        assert rec.facility_count == 0
        assert rec.percent is None
        assert rec.juvenile.percent is None

    def test_require_known_population_policy(self, pairs, universe):
        with pytest.raises(DataQualityError):
            aggregate_by_threshold(
                pairs, universe, thresholds=(0,), population_policy=PopulationPolicy.REQUIRE_KNOWN
            )


class TestCategoryMode:
    def test_denominator_is_whole_universe(self, pairs, universe):
        records = _by_key(aggregate_by_category(pairs, universe))

        assert records["airport"].facility_count == 2  # S1, S3
        assert records["airport"].denominator == 10
        assert records["landfill"].facility_count == 3  # S3, S4, L2
        assert records["landfill"].percent == 30.0

    def test_listed_categories_without_matches_get_zero_rows(self, pairs, universe):
        records = aggregate_by_category(pairs, universe, categories=["military", "airport"])

        assert [r.key for r in records] == ["military", "airport", "landfill"]
        assert records[0].facility_count == 0
        assert records[0].percent == 0.0

    def test_missing_category_label_raises(self, universe):
        pairs = [ProximityPair("S1", "A1", "W1", None)]

        with pytest.raises(DataQualityError):
            aggregate_by_category(pairs, universe)


class TestTypeMode:
    def test_two_percentages_per_type(self, pairs, universe):
        records = _by_key(aggregate_by_type(pairs, universe))

        state = records["STATE"]
        assert state.facility_count == 3  # S1, S3, S4
        assert state.denominator == 4
        assert state.percent == 75.0
        assert state.percent_of_matched == 75.0  # 3 of 4 matched

        local = records["LOCAL"]
        assert local.facility_count == 1
        assert local.percent == 50.0
        assert local.percent_of_matched == 25.0

    def test_type_without_matches_has_zero_row(self, pairs, universe):
        federal = _by_key(aggregate_by_type(pairs, universe))["FEDERAL"]

        assert federal.facility_count == 0
        assert federal.denominator == 4
        assert federal.percent == 0.0

    def test_juvenile_percent_uses_juvenile_type_denominator(self, pairs, universe):
        records = _by_key(aggregate_by_type(pairs, universe))

        assert records["STATE"].juvenile.denominator == 1
        assert records["STATE"].juvenile.percent == 100.0
        assert records["STATE"].non_juvenile.denominator == 3
        assert math.isclose(records["STATE"].non_juvenile.percent, 200.0 / 3)
        # No juvenile federal facilities at all
        assert records["FEDERAL"].juvenile.denominator == 0
        assert records["FEDERAL"].juvenile.percent is None

    def test_no_matches_gives_undefined_matched_share(self, universe):
        records = aggregate_by_type([], universe)

        assert all(r.percent_of_matched is None for r in records)
        assert all(r.percent == 0.0 for r in records)


class TestJuvenileMode:
    def test_each_flag_against_its_own_subset(self, pairs, universe):
        records = _by_key(aggregate_by_juvenile(pairs, universe))

        assert records["juvenile"].facility_count == 2
        assert records["juvenile"].denominator == 2
        assert records["juvenile"].percent == 100.0
        assert records["non-juvenile"].facility_count == 2
        assert records["non-juvenile"].denominator == 8
        assert records["non-juvenile"].percent == 25.0

    def test_no_juvenile_facilities_is_undefined(self):
        universe = [make_facility("X", 1.0)]

        records = _by_key(aggregate_by_juvenile([], universe))

        assert records["juvenile"].percent is None
        assert records["non-juvenile"].percent == 0.0


class TestAggregateCore:
    def test_unknown_matched_facility_raises(self, universe):
        spec = AggregationSpec(mode="custom", key=lambda f, p: ["all"])

        with pytest.raises(DataQualityError):
            aggregate({"NOPE": []}, universe, spec)

    def test_blank_label_raises(self, universe):
        spec = AggregationSpec(mode="custom", key=lambda f, p: [" "])

        with pytest.raises(DataQualityError):
            aggregate({"S1": []}, universe, spec)

    def test_bad_denominator_rule(self):
        with pytest.raises(ValueError):
            AggregationSpec(mode="custom", key=lambda f, p: [], denominator="matched")


def test_summarize_is_idempotent(pairs, universe):
    first = summarize(pairs, universe, categories=["airport", "landfill"])
    second = summarize(pairs, universe, categories=["airport", "landfill"])

    assert set(first) == {"threshold", "category", "type", "juvenile"}
    assert first == second


def test_records_to_frame_flattens_subsets(pairs, universe):
    df = records_to_frame(aggregate_by_type(pairs, universe))

    assert len(df) == 3
    for col in ("mode", "key", "facility_count", "percent", "percent_of_matched",
                "juvenile_count", "juvenile_percent", "non_juvenile_denominator"):
        assert col in df.columns
    federal = df[df["key"] == "FEDERAL"].iloc[0]
    assert math.isnan(federal["juvenile_percent"])
