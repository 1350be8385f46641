"""
Polygon validity repair ahead of containment tests.

Watershed boundary files routinely contain self-intersecting rings. Every
polygon is run through shapely's ``make_valid``; polygonal parts of the
result are kept, anything that collapses to nothing polygonal is reported as
unrepairable and excluded from containment.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from shapely.geometry import GeometryCollection, MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity, make_valid

from src.watershed.models import WatershedPolygon

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationReport:
    """
    Result of validating a polygon collection.

    Attributes:
        polygons: Same length and order as the input; unrepairable entries
            keep their code but carry ``geometry=None``
        repaired: Codes of polygons that were invalid and got repaired
        unrepairable: Codes of polygons excluded from containment
    """

    polygons: Tuple[WatershedPolygon, ...]
    repaired: Tuple[str, ...] = field(default_factory=tuple)
    unrepairable: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def usable(self) -> Tuple[WatershedPolygon, ...]:
        return tuple(p for p in self.polygons if p.usable)


def _polygonal_part(geom: BaseGeometry) -> Optional[BaseGeometry]:
    """Keep only the polygonal pieces of a repaired geometry."""
    if geom is None or geom.is_empty:
        return None
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    if isinstance(geom, GeometryCollection):
        parts: List[Polygon] = []
        for part in geom.geoms:
            if isinstance(part, Polygon) and not part.is_empty:
                parts.append(part)
            elif isinstance(part, MultiPolygon):
                parts.extend(p for p in part.geoms if not p.is_empty)
        if not parts:
            return None
        return parts[0] if len(parts) == 1 else MultiPolygon(parts)
    # Lines or points: the ring collapsed
    return None


def repair_geometry(geom: BaseGeometry) -> Optional[BaseGeometry]:
    """
    Return a valid polygonal version of ``geom``, or None if it cannot be repaired.

    Valid polygons are returned unchanged.
    """
    if geom is None or geom.is_empty:
        return None
    if geom.is_valid:
        return _polygonal_part(geom)
    return _polygonal_part(make_valid(geom))


def validate_polygons(polygons: Sequence[WatershedPolygon]) -> ValidationReport:
    """
    Validate and repair a polygon collection.

    Args:
        polygons: Watershed polygons as loaded

    Returns:
        ValidationReport with a polygon tuple of equal size and order
    """
    logger.info(f"Validating {len(polygons)} watershed polygons...")

    out: List[WatershedPolygon] = []
    repaired: List[str] = []
    unrepairable: List[str] = []

    for poly in polygons:
        geom = poly.geometry
        if geom is not None and not geom.is_empty and geom.is_valid:
            fixed = _polygonal_part(geom)
        else:
            if geom is not None and not geom.is_empty:
                logger.debug(f"Invalid geometry for {poly.code}: {explain_validity(geom)}")
            fixed = repair_geometry(geom)
            if fixed is not None:
                repaired.append(poly.code)

        if fixed is None:
            unrepairable.append(poly.code)
        out.append(WatershedPolygon(code=poly.code, geometry=fixed))

    if repaired:
        logger.info(f"Repaired {len(repaired)} invalid polygon geometries")
    if unrepairable:
        logger.warning(
            f"{len(unrepairable)} polygons could not be repaired and are excluded "
            f"from containment: {unrepairable[:10]}{'...' if len(unrepairable) > 10 else ''}"
        )

    return ValidationReport(
        polygons=tuple(out),
        repaired=tuple(repaired),
        unrepairable=tuple(unrepairable),
    )
