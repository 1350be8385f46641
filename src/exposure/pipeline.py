"""
End-to-end exposure pipeline.

Stages:
1. validate: repair watershed polygons (once per pipeline)
2. enrich: resolve watersheds and fetch elevations for a point layer (cached)
3. analyze: join facilities to one source layer and aggregate
4. export: write one summary CSV per aggregation mode

Example:
    from src.exposure.pipeline import ExposurePipeline

    pipeline = ExposurePipeline(polygons, cache_enabled=True)
    facilities = pipeline.enrich(facility_points, "facilities")
    sources = pipeline.enrich(source_points, "airports")
    result = pipeline.analyze(facilities, sources)
    pipeline.export(result, "data/summary")
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from src import config
from src.exposure.aggregation import AggregateRecord, PopulationPolicy, records_to_frame, summarize
from src.exposure.proximity import ProximityPair, join_downstream
from src.watershed.containment import WatershedIndex
from src.watershed.datasets import EnrichmentCache
from src.watershed.elevation import ElevationClient, ElevationServiceError, PartialEnrichment
from src.watershed.geometry import ValidationReport, validate_polygons
from src.watershed.models import (
    ContaminationSource,
    DataQualityError,
    EnrichedPointSet,
    Facility,
    Point,
    WatershedPolygon,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisResult:
    """Pairs and summary tables for one facility set against one source set."""

    source_category: str
    pairs: tuple
    summary: Dict[str, List[AggregateRecord]]

    @property
    def matched_facilities(self) -> int:
        return len({p.facility_id for p in self.pairs})


class ExposurePipeline:
    """
    Runs enrichment and analysis over a fixed watershed polygon layer.

    Enrichment results are cached by input hash, so re-running analysis
    with different thresholds never re-queries the elevation service.
    """

    def __init__(
        self,
        polygons: Sequence[WatershedPolygon],
        *,
        elevation_client: Optional[ElevationClient] = None,
        cache_enabled: bool = True,
        force_rebuild: bool = False,
        cache_dir: Path | str = None,
        containment_workers: int = 1,
        verbose: bool = True,
    ):
        self.polygons = list(polygons)
        self.elevation_client = elevation_client or ElevationClient()
        self.cache_enabled = cache_enabled
        self.force_rebuild = force_rebuild
        self.containment_workers = containment_workers
        self.verbose = verbose

        self.cache = EnrichmentCache(
            cache_dir=Path(cache_dir) if cache_dir else None, enabled=cache_enabled
        )
        self._report: Optional[ValidationReport] = None
        self._index: Optional[WatershedIndex] = None

    def _log(self, msg: str, *args, level: str = "info"):
        """Log message if verbose with lazy formatting."""
        if self.verbose:
            getattr(logger, level)(msg, *args)

    def _should_use_cache(self) -> bool:
        return self.cache_enabled and not self.force_rebuild

    # ===== Stages =====

    def validate(self) -> ValidationReport:
        """Stage: repair polygon geometries (computed once)."""
        if self._report is None:
            self._log("[1/4] Validating %d watershed polygons", len(self.polygons))
            self._report = validate_polygons(self.polygons)
        return self._report

    @property
    def index(self) -> WatershedIndex:
        if self._index is None:
            self._index = WatershedIndex(self.validate().polygons)
        return self._index

    def enrich(
        self,
        points: Sequence[Point],
        category: str,
        resume: Optional[PartialEnrichment] = None,
    ) -> EnrichedPointSet:
        """
        Stage: attach watershed codes and elevations to a point layer.

        Args:
            points: Facilities or sources in the reference datum
            category: Name of the layer (used for cache files and reports)
            resume: PartialEnrichment from an earlier failed run over the same
                points; defaults to the one saved in the cache for this input

        Raises:
            ElevationServiceError: Enrichment stopped; its ``partial`` is
                saved so the next run over the same input picks it up
        """
        self._log("[2/4] Enriching %d '%s' points", len(points), category)

        source_hash = self.cache.compute_source_hash(
            points, self.polygons, self.elevation_client.url
        )
        if self._should_use_cache():
            cached = self.cache.load_cache(source_hash, cache_name=category)
            if cached is not None:
                self._log("      [Cache HIT] %d enriched points", len(cached))
                return cached
            if resume is None:
                resume = self.cache.load_partial(source_hash, cache_name=category)
                if resume is not None and resume.batch_size != self.elevation_client.batch_size:
                    self._log(
                        "      [Resume] Saved partial run used batches of %d; starting over",
                        resume.batch_size,
                    )
                    resume = None
                if resume is not None:
                    self._log(
                        "      [Resume] %d/%d points already enriched",
                        resume.enriched_count,
                        resume.total,
                    )

        tagged = self.index.resolve(points, max_workers=self.containment_workers)
        try:
            elevated = self.elevation_client.enrich(tagged, resume=resume)
        except ElevationServiceError as e:
            if e.partial is not None and self.cache_enabled:
                self.cache.save_partial(e.partial, source_hash, cache_name=category)
            raise
        enriched = EnrichedPointSet(category, tuple(elevated))
        self._log(
            "      [Fresh] %d/%d points inside a watershed", enriched.matched_count, len(enriched)
        )

        if self.cache_enabled:
            try:
                self.cache.save_cache(enriched, source_hash, cache_name=category)
                self.cache.discard_partial(source_hash, cache_name=category)
            except OSError as e:
                self._log("      [Cache] Failed to save: %s", e, level="warning")
        return enriched

    def analyze(
        self,
        facilities: EnrichedPointSet,
        sources: EnrichedPointSet,
        thresholds: Sequence[int] = config.DEFAULT_THRESHOLDS,
        categories: Optional[Sequence[str]] = None,
        population_policy: PopulationPolicy = PopulationPolicy.EXCLUDE_UNKNOWN,
    ) -> AnalysisResult:
        """
        Stage: join and aggregate one facility set against one source set.

        ``categories`` defaults to every category present in ``sources`` so
        categories without matches still get a zero row.
        """
        self._log("[3/4] Analyzing facilities against '%s'", sources.category)
        universe = [p for p in facilities if isinstance(p, Facility)]
        if len(universe) != len(facilities):
            raise DataQualityError(f"Facility set '{facilities.category}' contains non-facility points")

        if categories is None:
            categories = sorted(
                {p.category for p in sources if isinstance(p, ContaminationSource)}
            )

        pairs: List[ProximityPair] = join_downstream(facilities, sources)
        summary = summarize(pairs, universe, thresholds, categories, population_policy)
        return AnalysisResult(source_category=sources.category, pairs=tuple(pairs), summary=summary)

    def analyze_many(
        self,
        facilities: EnrichedPointSet,
        source_sets: Sequence[EnrichedPointSet],
        max_workers: int = 4,
        **kwargs,
    ) -> Dict[str, AnalysisResult]:
        """Analyze several source layers against the same facility set concurrently."""
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                s.category: executor.submit(self.analyze, facilities, s, **kwargs)
                for s in source_sets
            }
            return {category: f.result() for category, f in futures.items()}

    def export(self, result: AnalysisResult, output_dir: Path | str = config.SUMMARY_DIR) -> List[Path]:
        """Stage: write ``<source>_<mode>.csv`` for every aggregation mode."""
        self._log("[4/4] Exporting summaries for '%s'", result.source_category)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        written = []
        for mode, records in result.summary.items():
            path = output_dir / f"{result.source_category}_{mode}.csv"
            records_to_frame(records).to_csv(path, index=False)
            written.append(path)
        self._log("      Wrote %d summary files to %s", len(written), output_dir)
        return written
