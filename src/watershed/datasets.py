"""
Persistence for enriched point sets.

An EnrichedPointSet is written as one GeoJSON file per category with every
original attribute plus ``watershed_code``, ``elevation`` and
``elevation_unit``. These files are the handoff between the expensive
enrichment stage and the analysis stage, so analysis can be re-run without
touching the elevation service.

EnrichmentCache keys those files by a hash of the inputs, the same way
DEM tiles are cached, so an unchanged point layer is never enriched twice.
"""

import dataclasses
import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Iterable, List, Optional, Type

import geopandas as gpd
import pandas as pd
from shapely.geometry import Point as ShapelyPoint

from src import config
from src.watershed.elevation import ElevationValue, PartialEnrichment
from src.watershed.models import (
    NO_MATCH,
    ContaminationSource,
    DataQualityError,
    EnrichedPointSet,
    Facility,
    Point,
    WatershedPolygon,
)

logger = logging.getLogger(__name__)

KIND_COLUMN = "point_kind"
_KINDS = {"facility": Facility, "source": ContaminationSource, "point": Point}
_GEOMETRY_FIELDS = ("lon", "lat")
_DERIVED_FIELDS = ("watershed_code", "elevation", "elevation_unit")


def _kind_of(point: Point) -> str:
    if isinstance(point, Facility):
        return "facility"
    if isinstance(point, ContaminationSource):
        return "source"
    return "point"


def to_geodataframe(point_set: EnrichedPointSet) -> gpd.GeoDataFrame:
    """
    Flatten an EnrichedPointSet into a GeoDataFrame in the reference datum.

    Null watershed codes are written as ``NO_MATCH``.
    """
    rows = []
    geoms = []
    for p in point_set:
        row = {k: v for k, v in dataclasses.asdict(p).items() if k not in _GEOMETRY_FIELDS}
        row["watershed_code"] = p.watershed_code or NO_MATCH
        row[KIND_COLUMN] = _kind_of(p)
        rows.append(row)
        geoms.append(ShapelyPoint(p.lon, p.lat))

    gdf = gpd.GeoDataFrame(pd.DataFrame(rows), geometry=geoms, crs=config.TARGET_CRS)
    gdf.attrs["category"] = point_set.category
    return gdf


def _value(raw):
    if raw is None:
        return None
    try:
        if pd.isna(raw):
            return None
    except (TypeError, ValueError):
        pass
    return raw


def from_geodataframe(gdf: gpd.GeoDataFrame, category: str) -> EnrichedPointSet:
    """Rebuild an EnrichedPointSet from a frame written by ``to_geodataframe``."""
    if KIND_COLUMN not in gdf.columns:
        raise DataQualityError(f"Enriched dataset '{category}' has no '{KIND_COLUMN}' column")
    if gdf.crs is not None and gdf.crs != config.TARGET_CRS:
        gdf = gdf.to_crs(config.TARGET_CRS)

    points: List[Point] = []
    for geom, (_, row) in zip(gdf.geometry, gdf.iterrows()):
        cls: Type[Point] = _KINDS.get(row[KIND_COLUMN])
        if cls is None:
            raise DataQualityError(f"Unknown point kind {row[KIND_COLUMN]!r}")
        kwargs = {}
        for f in dataclasses.fields(cls):
            if f.name in _GEOMETRY_FIELDS or f.name not in row:
                continue
            kwargs[f.name] = _value(row[f.name])
        kwargs["id"] = str(kwargs["id"])
        if kwargs.get("watershed_code") in (None, NO_MATCH):
            kwargs["watershed_code"] = None
        else:
            kwargs["watershed_code"] = str(kwargs["watershed_code"])
        if kwargs.get("elevation") is not None:
            kwargs["elevation"] = float(kwargs["elevation"])
        if kwargs.get("population") is not None:
            kwargs["population"] = int(kwargs["population"])
        points.append(cls(lon=float(geom.x), lat=float(geom.y), **kwargs))

    return EnrichedPointSet(category, tuple(points))


def save_enriched(point_set: EnrichedPointSet, path: Path) -> Path:
    """Write an EnrichedPointSet as GeoJSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Keep watershed codes as text so leading zeros survive
    to_geodataframe(point_set).to_file(path, driver="GeoJSON")
    logger.info(f"Saved {len(point_set)} enriched '{point_set.category}' points to {path}")
    return path


def load_enriched(path: Path, category: Optional[str] = None) -> EnrichedPointSet:
    """Read an EnrichedPointSet written by ``save_enriched``."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Enriched dataset not found: {path}")
    gdf = gpd.read_file(path)
    if "watershed_code" in gdf.columns:
        gdf["watershed_code"] = gdf["watershed_code"].astype(str)
    point_set = from_geodataframe(gdf, category or path.stem)
    logger.info(f"Loaded {len(point_set)} enriched points from {path.name}")
    return point_set


class EnrichmentCache:
    """
    Hash-validated store of enriched point sets.

    The cache key covers every input attribute of the points (coordinates,
    population, type, category and so on), the polygon layer's codes and
    geometries, and the elevation service URL. Any change to those
    produces a new key.

    Attributes:
        cache_dir: Directory where cache files are stored
        enabled: Whether caching is enabled
    """

    def __init__(self, cache_dir: Optional[Path] = None, enabled: bool = True):
        if cache_dir is None:
            cache_dir = config.ENRICHMENT_CACHE

        self.cache_dir = Path(cache_dir)
        self.enabled = enabled

        if self.enabled:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Enrichment cache initialized at: {self.cache_dir}")

    def compute_source_hash(
        self,
        points: Iterable[Point],
        polygons: Iterable[WatershedPolygon],
        service_url: str = "",
    ) -> str:
        """
        SHA256 over every input attribute of the points, the polygon layer
        (codes and WKB geometry) and the service URL.

        Derived fields (watershed code, elevation, unit) are left out since
        enrichment overwrites them.
        """
        h = hashlib.sha256()
        h.update(service_url.encode())
        for p in points:
            attrs = {k: v for k, v in dataclasses.asdict(p).items() if k not in _DERIVED_FIELDS}
            h.update(f"|{_kind_of(p)}:{json.dumps(attrs, sort_keys=True, default=repr)}".encode())
        h.update(b"#")
        keyed = sorted(
            (poly.code, poly.geometry.wkb_hex if poly.geometry is not None else "")
            for poly in polygons
        )
        for code, wkb_hex in keyed:
            h.update(f"|{code}:{wkb_hex}".encode())
        return h.hexdigest()

    def get_cache_path(self, source_hash: str, cache_name: str) -> Path:
        return self.cache_dir / f"{cache_name}_{source_hash}.geojson"

    def get_metadata_path(self, source_hash: str, cache_name: str) -> Path:
        return self.cache_dir / f"{cache_name}_{source_hash}_meta.json"

    def save_cache(self, point_set: EnrichedPointSet, source_hash: str, cache_name: str):
        """Store a point set; returns (cache_path, metadata_path) or (None, None) if disabled."""
        if not self.enabled:
            return None, None

        start_time = time.time()
        cache_path = save_enriched(point_set, self.get_cache_path(source_hash, cache_name))
        metadata_path = self.get_metadata_path(source_hash, cache_name)
        metadata = {
            "source_hash": source_hash,
            "category": point_set.category,
            "points": len(point_set),
            "matched": point_set.matched_count,
            "cache_time": time.time(),
        }
        with open(metadata_path, "w") as f:
            json.dump(metadata, f, indent=2)

        elapsed = time.time() - start_time
        logger.info(f"Cached enriched '{cache_name}' to {cache_path.name} ({elapsed:.2f}s)")
        return cache_path, metadata_path

    def load_cache(self, source_hash: str, cache_name: str) -> Optional[EnrichedPointSet]:
        """Return the cached point set, or None on a miss or unreadable file."""
        if not self.enabled:
            return None

        cache_path = self.get_cache_path(source_hash, cache_name)
        if not cache_path.exists():
            logger.debug(f"Cache miss: {cache_path.name}")
            return None

        try:
            metadata_path = self.get_metadata_path(source_hash, cache_name)
            category = cache_name
            if metadata_path.exists():
                with open(metadata_path) as f:
                    category = json.load(f).get("category", cache_name)
            return load_enriched(cache_path, category=category)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load cache {cache_path.name}: {e}")
            logger.debug("Cache will be regenerated")
            return None

    def get_partial_path(self, source_hash: str, cache_name: str) -> Path:
        return self.cache_dir / f"{cache_name}_{source_hash}_partial.json"

    def save_partial(self, partial: PartialEnrichment, source_hash: str, cache_name: str) -> Optional[Path]:
        """Store the completed batches of an interrupted enrichment run."""
        if not self.enabled:
            return None

        partial_path = self.get_partial_path(source_hash, cache_name)
        state = {
            "total": partial.total,
            "batch_size": partial.batch_size,
            "completed": {
                str(offset): [[v.value, v.unit] for v in values]
                for offset, values in partial.completed.items()
            },
            "failed": {str(offset): reason for offset, reason in partial.failed.items()},
        }
        with open(partial_path, "w") as f:
            json.dump(state, f)
        logger.info(
            f"Saved partial enrichment of '{cache_name}' "
            f"({partial.enriched_count}/{partial.total} points) to {partial_path.name}"
        )
        return partial_path

    def load_partial(self, source_hash: str, cache_name: str) -> Optional[PartialEnrichment]:
        """Return the saved partial run for this input, or None."""
        if not self.enabled:
            return None

        partial_path = self.get_partial_path(source_hash, cache_name)
        if not partial_path.exists():
            return None

        try:
            with open(partial_path) as f:
                state = json.load(f)
            return PartialEnrichment(
                total=state["total"],
                batch_size=state["batch_size"],
                completed={
                    int(offset): tuple(ElevationValue(value, unit) for value, unit in values)
                    for offset, values in state["completed"].items()
                },
                failed={int(offset): reason for offset, reason in state["failed"].items()},
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable partial run {partial_path.name}: {e}")
            return None

    def discard_partial(self, source_hash: str, cache_name: str) -> None:
        partial_path = self.get_partial_path(source_hash, cache_name)
        if partial_path.exists():
            partial_path.unlink()

    def clear_cache(self, cache_name: Optional[str] = None) -> int:
        """Delete cached files (all, or only those of ``cache_name``); returns the count."""
        if not self.enabled:
            return 0

        pattern = f"{cache_name}_*" if cache_name else "*"
        deleted_count = 0
        for cache_file in self.cache_dir.glob(pattern):
            if cache_file.is_file():
                cache_file.unlink()
                deleted_count += 1

        logger.info(f"Cleared {deleted_count} enrichment cache files")
        return deleted_count
