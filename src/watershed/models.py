"""
Value objects shared by every pipeline stage.

Points are created by the ingestion layer, rebuilt (never mutated) by the
containment resolver and the elevation client, and frozen into an
EnrichedPointSet once both fields are attached.

Example:
    from src.watershed.models import Facility, EnrichedPointSet

    fac = Facility(id="F1", lon=-70.2, lat=43.7, facility_type="STATE", population=None)
    fac.is_juvenile  # False
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

# Written to persisted datasets for points that fell in no watershed polygon.
NO_MATCH = "NO_MATCH"

JUVENILE_SECURITY_LEVEL = "JUVENILE"


class DataQualityError(ValueError):
    """Raised when an input record violates its category schema."""


def is_null_code(code: Optional[str]) -> bool:
    """True when a watershed code means "no containing polygon"."""
    return code is None or code == NO_MATCH or code == ""


@dataclass(frozen=True)
class Point:
    """
    A geographic point in the reference datum (lon/lat degrees).

    Attributes:
        id: Unique identifier within its category
        lon: Longitude in decimal degrees
        lat: Latitude in decimal degrees
        watershed_code: HUC-12 code of the containing polygon, None if none
        elevation: Ground elevation, None until enriched (or if the service had no value)
        elevation_unit: Unit string reported by the elevation service
    """

    id: str
    lon: float
    lat: float
    watershed_code: Optional[str] = None
    elevation: Optional[float] = None
    elevation_unit: Optional[str] = None

    def with_watershed(self, code: Optional[str]) -> "Point":
        return replace(self, watershed_code=None if is_null_code(code) else code)

    def with_elevation(self, value: Optional[float], unit: Optional[str]) -> "Point":
        return replace(self, elevation=value, elevation_unit=unit)

    @property
    def coordinates(self) -> Tuple[float, float]:
        return (self.lon, self.lat)


@dataclass(frozen=True)
class Facility(Point):
    """
    A facility point (e.g. a correctional facility).

    ``facility_type`` is required; ``population`` is None when the source
    inventory marked it unknown.
    """

    facility_type: str = ""
    population: Optional[int] = None
    security_level: Optional[str] = None
    status: Optional[str] = None
    state: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        if not self.facility_type or not str(self.facility_type).strip():
            raise DataQualityError(f"Facility '{self.id}' has no facility type")
        if self.population is not None and self.population < 0:
            raise DataQualityError(
                f"Facility '{self.id}' has negative population {self.population}; "
                "unknown values must be normalized to None at ingestion"
            )

    @property
    def is_juvenile(self) -> bool:
        return (self.security_level or "").strip().upper() == JUVENILE_SECURITY_LEVEL


@dataclass(frozen=True)
class ContaminationSource(Point):
    """A suspected or known contamination source labelled by industry/category."""

    category: str = ""
    detail: Optional[str] = None

    def __post_init__(self):
        if not self.category or not str(self.category).strip():
            raise DataQualityError(f"Source '{self.id}' has no category label")


@dataclass(frozen=True)
class WatershedPolygon:
    """
    A HUC-12 watershed boundary.

    ``geometry`` is a shapely polygonal geometry, or None once the validator
    has declared it unrepairable.
    """

    code: str
    geometry: Any

    @property
    def usable(self) -> bool:
        return self.geometry is not None and not self.geometry.is_empty


@dataclass(frozen=True)
class EnrichedPointSet:
    """
    Immutable snapshot of a point collection after watershed and elevation
    attachment. The unit of persistence between enrichment and analysis.
    """

    category: str
    points: Tuple[Point, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not isinstance(self.points, tuple):
            object.__setattr__(self, "points", tuple(self.points))
        ids = [p.id for p in self.points]
        if len(set(ids)) != len(ids):
            raise DataQualityError(f"Duplicate point identifiers in '{self.category}' set")

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[Point]:
        return iter(self.points)

    def ids(self) -> Tuple[str, ...]:
        return tuple(p.id for p in self.points)

    def by_id(self) -> Dict[str, Point]:
        return {p.id: p for p in self.points}

    def subset(self, predicate: Callable[[Point], bool]) -> "EnrichedPointSet":
        return EnrichedPointSet(self.category, tuple(p for p in self.points if predicate(p)))

    @property
    def matched_count(self) -> int:
        """Number of points that fell inside some watershed."""
        return sum(1 for p in self.points if not is_null_code(p.watershed_code))
