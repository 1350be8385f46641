"""
Tests for the downstream-proximity join.

Pairs must share a non-null watershed and the facility must sit strictly
lower than the source.
"""

import pytest

from conftest import make_facility, make_source
from src.exposure.proximity import (
    ProximityPair,
    bucket_by_watershed,
    join_downstream,
    sources_per_facility,
)
from src.watershed.models import NO_MATCH, DataQualityError, EnrichedPointSet


def _pair_ids(pairs):
    return sorted((p.facility_id, p.source_id) for p in pairs)


class TestJoinDownstream:
    """Join predicate and output shape."""

    def test_scenario_pairs(self, scenario_sets):
        """A(10) and C(5) lie below S1(30); C(5) also lies below S2(8)."""
        facilities, sources = scenario_sets

        pairs = join_downstream(facilities, sources)

        assert _pair_ids(pairs) == [("A", "S1"), ("C", "S1"), ("C", "S2")]
        assert all(p.watershed_code == "W1" for p in pairs)
        assert all(p.source_category == "airport" for p in pairs)

    def test_scenario_with_low_second_source(self):
        """With S2 below every facility only S1 produces pairs."""
        facilities = EnrichedPointSet(
            "facilities",
            (make_facility("A", 10.0), make_facility("B", 50.0), make_facility("C", 5.0)),
        )
        sources = EnrichedPointSet("airports", (make_source("S1", 30.0), make_source("S2", 4.0)))

        pairs = join_downstream(facilities, sources)

        assert _pair_ids(pairs) == [("A", "S1"), ("C", "S1")]

    def test_equal_elevation_does_not_pair(self):
        facilities = EnrichedPointSet("f", (make_facility("F", 20.0),))
        sources = EnrichedPointSet("s", (make_source("S", 20.0),))

        assert join_downstream(facilities, sources) == []

    def test_different_watersheds_do_not_pair(self):
        facilities = EnrichedPointSet("f", (make_facility("F", 1.0, code="W1"),))
        sources = EnrichedPointSet("s", (make_source("S", 100.0, code="W2"),))

        assert join_downstream(facilities, sources) == []

    def test_null_watershed_never_pairs(self):
        """Points outside every polygon never appear in a pair, even with each other."""
        facilities = EnrichedPointSet(
            "f", (make_facility("F1", 1.0, code=None), make_facility("F2", 1.0, code=NO_MATCH))
        )
        sources = EnrichedPointSet(
            "s", (make_source("S1", 100.0, code=None), make_source("S2", 100.0, code=NO_MATCH))
        )

        assert join_downstream(facilities, sources) == []

    def test_missing_elevation_is_skipped(self):
        facilities = EnrichedPointSet("f", (make_facility("F", None),))
        sources = EnrichedPointSet("s", (make_source("S", 100.0), make_source("T", None)))

        assert join_downstream(facilities, sources) == []

    def test_pairs_are_not_deduplicated(self):
        facilities = EnrichedPointSet("f", (make_facility("F", 1.0),))
        sources = EnrichedPointSet(
            "s", tuple(make_source(f"S{i}", 10.0 + i) for i in range(4))
        )

        pairs = join_downstream(facilities, sources)

        assert len(pairs) == 4
        assert {p.facility_id for p in pairs} == {"F"}

    def test_predicate_holds_for_all_pairs(self):
        facilities = EnrichedPointSet(
            "f",
            tuple(make_facility(f"F{i}", float(i * 7 % 23), code=f"W{i % 3}") for i in range(30)),
        )
        sources = EnrichedPointSet(
            "s",
            tuple(make_source(f"S{i}", float(i * 5 % 19), code=f"W{i % 4}") for i in range(25)),
        )
        fac = facilities.by_id()
        src = sources.by_id()

        pairs = join_downstream(facilities, sources)

        assert pairs
        for p in pairs:
            assert fac[p.facility_id].watershed_code == src[p.source_id].watershed_code
            assert fac[p.facility_id].elevation < src[p.source_id].elevation

    def test_inputs_are_not_mutated(self, scenario_sets):
        facilities, sources = scenario_sets
        before = (facilities.points, sources.points)

        first = join_downstream(facilities, sources)
        second = join_downstream(facilities, sources)

        assert (facilities.points, sources.points) == before
        assert first == second

    def test_mixed_units_raise(self):
        facilities = EnrichedPointSet("f", (make_facility("F", 1.0),))
        feet = make_source("S", 10.0)
        sources = EnrichedPointSet(
            "s", (feet.with_elevation(10.0, "Feet"),)
        )

        with pytest.raises(DataQualityError):
            join_downstream(facilities, sources)

    def test_missing_unit_mixed_with_known_unit_raises(self):
        facilities = EnrichedPointSet("f", (make_facility("F", 1.0).with_elevation(1.0, None),))
        sources = EnrichedPointSet("s", (make_source("S", 10.0).with_elevation(10.0, "Feet"),))

        with pytest.raises(DataQualityError):
            join_downstream(facilities, sources)

    def test_all_unitless_elevations_still_join(self):
        facilities = EnrichedPointSet("f", (make_facility("F", 1.0).with_elevation(1.0, None),))
        sources = EnrichedPointSet("s", (make_source("S", 10.0).with_elevation(10.0, ""),))

        assert _pair_ids(join_downstream(facilities, sources)) == [("F", "S")]


def test_bucket_by_watershed_skips_nulls():
    buckets = bucket_by_watershed(
        [make_source("S1", 1.0, code="W1"), make_source("S2", 1.0, code=None), make_source("S3", None)]
    )

    assert list(buckets) == ["W1"]
    assert [p.id for p in buckets["W1"]] == ["S1"]


def test_sources_per_facility_counts_distinct_sources():
    pairs = [
        ProximityPair("F1", "S1", "W1"),
        ProximityPair("F1", "S2", "W1"),
        ProximityPair("F1", "S2", "W1"),
        ProximityPair("F2", "S1", "W1"),
    ]

    assert sources_per_facility(pairs) == {"F1": 2, "F2": 1}
