"""
Watershed enrichment package.

Core functionality:
- Schema structs for facilities, contamination sources and watershed polygons
- Geometry validation and repair
- WatershedIndex for point-in-polygon resolution
- ElevationClient for batched, retrying elevation lookups
- Enriched dataset persistence and caching
"""

from .models import (
    NO_MATCH,
    ContaminationSource,
    DataQualityError,
    EnrichedPointSet,
    Facility,
    Point,
    WatershedPolygon,
)
from .geometry import ValidationReport, validate_polygons
from .containment import WatershedIndex, resolve_watersheds
from .elevation import (
    ElevationClient,
    ElevationServiceError,
    PartialEnrichment,
    RetryPolicy,
    iter_batches,
)
from .datasets import EnrichmentCache, load_enriched, save_enriched

__all__ = [
    "NO_MATCH",
    "ContaminationSource",
    "DataQualityError",
    "EnrichedPointSet",
    "Facility",
    "Point",
    "WatershedPolygon",
    "ValidationReport",
    "validate_polygons",
    "WatershedIndex",
    "resolve_watersheds",
    "ElevationClient",
    "ElevationServiceError",
    "PartialEnrichment",
    "RetryPolicy",
    "iter_batches",
    "EnrichmentCache",
    "load_enriched",
    "save_enriched",
]
