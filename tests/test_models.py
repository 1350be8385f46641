"""
Tests for the point / polygon value objects.
"""

import dataclasses

import pytest
from shapely.geometry import box

from src.watershed.models import (
    NO_MATCH,
    ContaminationSource,
    DataQualityError,
    EnrichedPointSet,
    Facility,
    Point,
    WatershedPolygon,
    is_null_code,
)


class TestPoint:
    def test_points_are_immutable(self):
        p = Point(id="P", lon=1.0, lat=2.0)

        with pytest.raises(dataclasses.FrozenInstanceError):
            p.elevation = 5.0

    def test_with_watershed_returns_copy(self):
        p = Point(id="P", lon=1.0, lat=2.0)

        tagged = p.with_watershed("010100000001")

        assert tagged.watershed_code == "010100000001"
        assert p.watershed_code is None

    def test_no_match_marker_normalized_to_none(self):
        assert Point(id="P", lon=0, lat=0).with_watershed(NO_MATCH).watershed_code is None
        assert Point(id="P", lon=0, lat=0).with_watershed("").watershed_code is None

    def test_with_elevation(self):
        p = Point(id="P", lon=1.0, lat=2.0).with_elevation(12.5, "Meters")

        assert (p.elevation, p.elevation_unit) == (12.5, "Meters")
        assert p.coordinates == (1.0, 2.0)


class TestFacility:
    def test_type_is_required(self):
        with pytest.raises(DataQualityError):
            Facility(id="F", lon=0, lat=0)
        with pytest.raises(DataQualityError):
            Facility(id="F", lon=0, lat=0, facility_type="   ")

    def test_negative_population_rejected(self):
        with pytest.raises(DataQualityError):
            Facility(id="F", lon=0, lat=0, facility_type="STATE", population=-999)

    def test_unknown_population_is_none(self):
        fac = Facility(id="F", lon=0, lat=0, facility_type="STATE", population=None)

        assert fac.population is None

    @pytest.mark.parametrize("level,expected", [
        ("JUVENILE", True), ("juvenile ", True), ("MAXIMUM", False), (None, False),
    ])
    def test_is_juvenile(self, level, expected):
        fac = Facility(id="F", lon=0, lat=0, facility_type="STATE", security_level=level)

        assert fac.is_juvenile is expected

    def test_rebuild_keeps_subclass_fields(self):
        fac = Facility(id="F", lon=0, lat=0, facility_type="LOCAL", population=40)

        tagged = fac.with_watershed("W").with_elevation(3.0, "Meters")

        assert isinstance(tagged, Facility)
        assert tagged.facility_type == "LOCAL"
        assert tagged.population == 40


def test_source_category_is_required():
    with pytest.raises(DataQualityError):
        ContaminationSource(id="S", lon=0, lat=0)


def test_is_null_code():
    assert is_null_code(None)
    assert is_null_code(NO_MATCH)
    assert not is_null_code("010100000001")


class TestWatershedPolygon:
    def test_usable(self):
        assert WatershedPolygon("W", box(0, 0, 1, 1)).usable
        assert not WatershedPolygon("W", None).usable


class TestEnrichedPointSet:
    def test_list_is_frozen_to_tuple(self):
        ps = EnrichedPointSet("x", [Point(id="A", lon=0, lat=0), Point(id="B", lon=1, lat=1)])

        assert isinstance(ps.points, tuple)
        assert len(ps) == 2
        assert ps.ids() == ("A", "B")
        assert set(ps.by_id()) == {"A", "B"}

    def test_duplicate_ids_rejected(self):
        with pytest.raises(DataQualityError):
            EnrichedPointSet("x", (Point(id="A", lon=0, lat=0), Point(id="A", lon=1, lat=1)))

    def test_subset_and_matched_count(self):
        ps = EnrichedPointSet(
            "x",
            (
                Point(id="A", lon=0, lat=0, watershed_code="W1"),
                Point(id="B", lon=1, lat=1),
            ),
        )

        assert ps.matched_count == 1
        assert ps.subset(lambda p: p.watershed_code is None).ids() == ("B",)
