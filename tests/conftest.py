"""Pytest configuration and fixtures for watershed exposure tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import pytest
from shapely.geometry import box

from src.watershed.models import ContaminationSource, EnrichedPointSet, Facility, WatershedPolygon


@pytest.fixture
def grid_polygons():
    """Four 1x1 degree watersheds tiling (0,0)-(2,2)."""
    return [
        WatershedPolygon("010100000001", box(0, 0, 1, 1)),
        WatershedPolygon("010100000002", box(1, 0, 2, 1)),
        WatershedPolygon("010100000003", box(0, 1, 1, 2)),
        WatershedPolygon("010100000004", box(1, 1, 2, 2)),
    ]


def make_facility(fid, elevation, code="W1", **kwargs):
    kwargs.setdefault("facility_type", "STATE")
    return Facility(
        id=fid, lon=0.5, lat=0.5, watershed_code=code,
        elevation=elevation, elevation_unit="Meters", **kwargs,
    )


def make_source(sid, elevation, code="W1", category="airport"):
    return ContaminationSource(
        id=sid, lon=0.5, lat=0.5, watershed_code=code,
        elevation=elevation, elevation_unit="Meters", category=category,
    )


@pytest.fixture
def scenario_sets():
    """Facilities A(10), B(50), C(5) and sources S1(30), S2(8), all in W1."""
    facilities = EnrichedPointSet(
        "facilities",
        (
            make_facility("A", 10.0, population=100),
            make_facility("B", 50.0, population=200),
            make_facility("C", 5.0, population=None),
        ),
    )
    sources = EnrichedPointSet("airports", (make_source("S1", 30.0), make_source("S2", 8.0)))
    return facilities, sources


@pytest.fixture
def cache_dir(tmp_path):
    """Temporary cache directory for tests."""
    cache = tmp_path / "cache"
    cache.mkdir()
    return cache
