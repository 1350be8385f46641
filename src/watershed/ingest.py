"""
Ingestion boundary: GeoDataFrames in, schema structs out.

File loading itself (shapefile, geodatabase, CSV) is left to geopandas; this
module takes the loaded frames, reprojects them to the reference datum, and
builds Facility / ContaminationSource / WatershedPolygon objects. Unknown
population sentinels become None here and nowhere else.
"""

import logging
import math
from typing import Any, Dict, List, Optional

import geopandas as gpd
import pandas as pd

from src import config
from src.watershed.models import (
    ContaminationSource,
    DataQualityError,
    Facility,
    WatershedPolygon,
)

logger = logging.getLogger(__name__)

# HIFLD prison boundaries column names
FACILITY_COLUMNS: Dict[str, str] = {
    "id": "FACILITYID",
    "population": "POPULATION",
    "facility_type": "TYPE",
    "security_level": "SECURELVL",
    "status": "STATUS",
    "state": "STATE",
    "name": "NAME",
}

SOURCE_COLUMNS: Dict[str, str] = {
    "id": "id",
    "category": "category",
    "detail": "detail",
}

HUC12_COLUMN = "huc12"


def normalize_population(value: Any, sentinel: int = config.POPULATION_SENTINEL) -> Optional[int]:
    """
    Convert a raw population value to an int, or None when unknown.

    The sentinel, any negative number, NaN, and blanks all mean "unknown".

    Examples:
        >>> normalize_population(-999) is None
        True
        >>> normalize_population("1200")
        1200
    """
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            raise DataQualityError(f"Population value {value!r} is not numeric")
    if value is None or pd.isna(value):
        return None
    value = int(value)
    if value == sentinel or value < 0:
        return None
    return value


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    return text or None


def to_reference_crs(gdf: gpd.GeoDataFrame, crs: str = config.TARGET_CRS) -> gpd.GeoDataFrame:
    """Reproject to the reference datum; frames without a CRS are rejected."""
    if gdf.crs is None:
        raise DataQualityError("Input layer has no coordinate reference system")
    if gdf.crs != crs:
        logger.info(f"Reprojecting {len(gdf)} features from {gdf.crs} to {crs}")
        gdf = gdf.to_crs(crs)
    return gdf


def _point_coords(gdf: gpd.GeoDataFrame) -> List[tuple]:
    geoms = gdf.geometry
    if not (geoms.geom_type == "Point").all():
        # Facility inventories are often footprints; use a representative point
        logger.info("Non-point geometries found; using representative points")
        geoms = geoms.representative_point()
    return list(zip(geoms.x, geoms.y))


def facilities_from_frame(
    gdf: gpd.GeoDataFrame,
    columns: Optional[Dict[str, str]] = None,
    open_only: bool = False,
) -> List[Facility]:
    """
    Build Facility objects from a facility layer.

    Args:
        gdf: Facility layer (points or footprints)
        columns: Mapping of Facility field -> column name (defaults to FACILITY_COLUMNS)
        open_only: Drop facilities whose status is "CLOSED"

    Raises:
        DataQualityError: On a missing id or facility type
    """
    cols = {**FACILITY_COLUMNS, **(columns or {})}
    gdf = to_reference_crs(gdf)
    coords = _point_coords(gdf)

    facilities = []
    unknown_population = 0
    for (lon, lat), (_, row) in zip(coords, gdf.iterrows()):
        status = _clean(row.get(cols["status"]))
        if open_only and status and status.upper() == "CLOSED":
            continue
        fid = _clean(row.get(cols["id"]))
        if fid is None:
            raise DataQualityError(f"Facility row without identifier: {row.to_dict()}")
        population = normalize_population(row.get(cols["population"]))
        if population is None:
            unknown_population += 1
        facilities.append(
            Facility(
                id=fid,
                lon=float(lon),
                lat=float(lat),
                facility_type=_clean(row.get(cols["facility_type"])) or "",
                population=population,
                security_level=_clean(row.get(cols["security_level"])),
                status=status,
                state=_clean(row.get(cols["state"])),
                name=_clean(row.get(cols["name"])),
            )
        )

    logger.info(
        f"Loaded {len(facilities)} facilities ({unknown_population} with unknown population)"
    )
    return facilities


def sources_from_frame(
    gdf: gpd.GeoDataFrame,
    category: Optional[str] = None,
    columns: Optional[Dict[str, str]] = None,
) -> List[ContaminationSource]:
    """
    Build ContaminationSource objects from a source layer.

    Args:
        gdf: Source point layer
        category: Category label for every row; if None it is read from the
            category column
        columns: Mapping of field -> column name (defaults to SOURCE_COLUMNS)
    """
    cols = {**SOURCE_COLUMNS, **(columns or {})}
    gdf = to_reference_crs(gdf)
    coords = _point_coords(gdf)

    sources = []
    for i, ((lon, lat), (_, row)) in enumerate(zip(coords, gdf.iterrows())):
        sid = _clean(row.get(cols["id"])) or f"{category or 'source'}-{i}"
        label = category or _clean(row.get(cols["category"])) or ""
        sources.append(
            ContaminationSource(
                id=sid,
                lon=float(lon),
                lat=float(lat),
                category=label,
                detail=_clean(row.get(cols["detail"])),
            )
        )

    logger.info(f"Loaded {len(sources)} sources{f' ({category})' if category else ''}")
    return sources


def polygons_from_frame(gdf: gpd.GeoDataFrame, code_column: str = HUC12_COLUMN) -> List[WatershedPolygon]:
    """Build WatershedPolygon objects; codes are kept as 12-character strings."""
    if code_column not in gdf.columns:
        raise DataQualityError(f"Watershed layer has no '{code_column}' column")
    gdf = to_reference_crs(gdf)

    codes = gdf[code_column].astype(str).str.strip()
    if codes.duplicated().any():
        dupes = codes[codes.duplicated()].unique().tolist()
        logger.warning(f"Duplicate watershed codes, first occurrence wins: {dupes[:10]}")
    bad = codes[codes.str.len() != 12]
    if len(bad):
        logger.warning(f"{len(bad)} watershed codes are not 12 characters, e.g. {bad.iloc[0]!r}")

    return [WatershedPolygon(code=c, geometry=g) for c, g in zip(codes, gdf.geometry)]

