"""
Point-in-watershed resolution.

Builds an STR-packed R-tree over the watershed polygons once, then tags each
point with the HUC-12 code of the polygon containing it. Only polygons whose
bounding box intersects a point are tested exactly.

Usage::

    from src.watershed.geometry import validate_polygons
    from src.watershed.containment import WatershedIndex

    report = validate_polygons(polygons)
    index = WatershedIndex(report.polygons)
    tagged = index.resolve(points)

Boundary points: a point on a shared edge intersects more than one polygon.
The candidate with the lowest index (input order of the polygon collection)
is chosen, so results are stable across runs.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, TypeVar

import numpy as np
import shapely
from shapely.strtree import STRtree

from src.watershed.models import Point, WatershedPolygon

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=Point)


class WatershedIndex:
    """
    Spatial index over a validated watershed polygon collection.

    The index is read-only after construction and can be queried from
    several threads at once.

    Attributes:
        codes: Watershed codes of the indexed polygons, in index order
        skipped: Number of input polygons left out because they had no geometry
    """

    def __init__(self, polygons: Sequence[WatershedPolygon]):
        usable = [p for p in polygons if p.usable]
        self.skipped = len(polygons) - len(usable)
        self.codes = np.array([p.code for p in usable], dtype=object)
        self._geoms = np.array([p.geometry for p in usable], dtype=object)
        self._tree = STRtree(self._geoms)

        if self.skipped:
            logger.warning(f"Watershed index built without {self.skipped} unusable polygons")
        logger.info(f"Built watershed index over {len(usable)} polygons")

    def __len__(self) -> int:
        return len(self.codes)

    def lookup(self, lons: np.ndarray, lats: np.ndarray) -> List[Optional[str]]:
        """
        Find the containing watershed code for each coordinate.

        Args:
            lons: Longitudes in the reference datum
            lats: Latitudes in the reference datum

        Returns:
            List of codes (None where no polygon contains the coordinate)
        """
        n = len(lons)
        result: List[Optional[str]] = [None] * n
        if n == 0 or len(self.codes) == 0:
            return result

        pts = shapely.points(np.asarray(lons, dtype=float), np.asarray(lats, dtype=float))
        # Bounding-box prefilter then exact, boundary-inclusive test
        input_idx, tree_idx = self._tree.query(pts, predicate="intersects")
        if len(input_idx) == 0:
            return result

        # Lowest polygon index wins for each point
        order = np.lexsort((tree_idx, input_idx))
        input_sorted = input_idx[order]
        tree_sorted = tree_idx[order]
        first_points, first_pos = np.unique(input_sorted, return_index=True)

        for point_i, pos in zip(first_points, first_pos):
            result[int(point_i)] = self.codes[tree_sorted[pos]]
        return result

    def resolve(self, points: Sequence[P], max_workers: int = 1) -> List[P]:
        """
        Tag points with their watershed code.

        Args:
            points: Points in the reference datum
            max_workers: Number of threads; >1 splits the points into
                partitions queried concurrently against the shared index

        Returns:
            New point objects in the input order, ``watershed_code`` set
            (None where no polygon contains the point)
        """
        points = list(points)
        if not points:
            return []

        lons = np.array([p.lon for p in points], dtype=float)
        lats = np.array([p.lat for p in points], dtype=float)

        if max_workers > 1 and len(points) > max_workers:
            bounds = np.array_split(np.arange(len(points)), max_workers)
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                parts = executor.map(lambda idx: self.lookup(lons[idx], lats[idx]), bounds)
                codes: List[Optional[str]] = [c for part in parts for c in part]
        else:
            codes = self.lookup(lons, lats)

        tagged = [p.with_watershed(code) for p, code in zip(points, codes)]

        unmatched = sum(1 for code in codes if code is None)
        logger.info(
            f"Resolved watersheds for {len(points)} points "
            f"({len(points) - unmatched} matched, {unmatched} outside all polygons)"
        )
        return tagged


def resolve_watersheds(
    points: Sequence[P],
    polygons: Sequence[WatershedPolygon],
    max_workers: int = 1,
) -> List[P]:
    """
    Convenience wrapper: build a WatershedIndex and resolve ``points``.

    ``polygons`` should already have been through ``validate_polygons``.
    """
    return WatershedIndex(polygons).resolve(points, max_workers=max_workers)
