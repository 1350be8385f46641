"""
Downstream-proximity join between facilities and contamination sources.

A facility is treated as potentially downstream of a source when both lie in
the same HUC-12 watershed and the facility sits strictly lower. This is a
proxy for hydrological flow, not a flow model.

The join is a hash join: sources are bucketed by watershed code once, then
each facility probes its own bucket. Every qualifying (facility, source)
combination becomes one ProximityPair; no deduplication happens here.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from src.watershed.models import (
    ContaminationSource,
    DataQualityError,
    EnrichedPointSet,
    Point,
    is_null_code,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProximityPair:
    """A facility with a higher-elevation source in its watershed."""

    facility_id: str
    source_id: str
    watershed_code: str
    source_category: Optional[str] = None


def _check_units(points: Iterable[Point]) -> None:
    """Elevations must share one unit; a unit-less elevation only passes if all are unit-less."""
    units = set()
    unitless = 0
    for p in points:
        if p.elevation is None:
            continue
        if p.elevation_unit and p.elevation_unit.strip():
            units.add(p.elevation_unit.strip().lower())
        else:
            unitless += 1
    if len(units) > 1:
        raise DataQualityError(f"Elevations use mixed units: {sorted(units)}")
    if units and unitless:
        raise DataQualityError(
            f"{unitless} elevations have no unit while others are in {units.pop()!r}"
        )


def bucket_by_watershed(points: Iterable[Point]) -> Dict[str, List[Point]]:
    """Group points with a watershed code and an elevation by that code."""
    buckets: Dict[str, List[Point]] = defaultdict(list)
    for p in points:
        if is_null_code(p.watershed_code) or p.elevation is None:
            continue
        buckets[p.watershed_code].append(p)
    return buckets


def join_downstream(
    facilities: EnrichedPointSet,
    sources: EnrichedPointSet,
) -> List[ProximityPair]:
    """
    Pair each facility with every source in its watershed at higher elevation.

    Args:
        facilities: Enriched facility set
        sources: Enriched source set

    Returns:
        ProximityPairs in facility order, then source order within a watershed

    Raises:
        DataQualityError: If the two sets report elevations in different units
    """
    _check_units(list(facilities) + list(sources))

    buckets = bucket_by_watershed(sources)

    pairs: List[ProximityPair] = []
    skipped = 0
    for fac in facilities:
        if is_null_code(fac.watershed_code) or fac.elevation is None:
            skipped += 1
            continue
        for src in buckets.get(fac.watershed_code, ()):
            if fac.elevation < src.elevation:
                pairs.append(
                    ProximityPair(
                        facility_id=fac.id,
                        source_id=src.id,
                        watershed_code=fac.watershed_code,
                        source_category=(
                            src.category if isinstance(src, ContaminationSource) else None
                        ),
                    )
                )

    matched = len({p.facility_id for p in pairs})
    logger.info(
        f"Joined {len(facilities)} facilities against {len(sources)} '{sources.category}' "
        f"sources: {len(pairs)} pairs, {matched} distinct facilities "
        f"({skipped} facilities without watershed or elevation)"
    )
    return pairs


def sources_per_facility(pairs: Sequence[ProximityPair]) -> Dict[str, int]:
    """Number of distinct qualifying sources for each facility that has any."""
    seen: Dict[str, set] = defaultdict(set)
    for pair in pairs:
        seen[pair.facility_id].add(pair.source_id)
    return {fid: len(srcs) for fid, srcs in seen.items()}
