#!/usr/bin/env python3
"""
Example: downstream exposure of facilities to contamination sources.

Loads a HUC-12 watershed layer, a facility layer and one or more source
layers, enriches each layer with watershed codes and elevations (cached
between runs), then writes threshold / category / type / juvenile summaries.

Usage:
    # Full run with two source layers
    python examples/run_exposure_analysis.py \\
        --watersheds data/raw/wbdhu12.gpkg \\
        --facilities data/raw/prison_boundaries.shp \\
        --source airports=data/raw/airports.shp \\
        --source military=data/raw/military_bases.shp

    # Only enrich (persist enriched layers, skip analysis)
    python examples/run_exposure_analysis.py ... --enrich-only

    # Analyze previously enriched files without touching the elevation service
    python examples/run_exposure_analysis.py \\
        --enriched-facilities data/enriched/facilities.geojson \\
        --enriched-source data/enriched/airports.geojson

    # Clear the enrichment cache
    python examples/run_exposure_analysis.py --clear
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import geopandas as gpd

from src import config
from src.exposure.pipeline import ExposurePipeline
from src.watershed.datasets import EnrichmentCache, load_enriched, save_enriched
from src.watershed.elevation import ElevationClient, ElevationServiceError, RetryPolicy
from src.watershed.ingest import facilities_from_frame, polygons_from_frame, sources_from_frame

logger = logging.getLogger(__name__)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Facility exposure to upstream contamination sources by HUC-12 watershed"
    )
    parser.add_argument("--watersheds", type=Path, help="HUC-12 polygon layer")
    parser.add_argument("--huc-column", default="huc12", help="Watershed code column (default: huc12)")
    parser.add_argument("--facilities", type=Path, help="Facility layer")
    parser.add_argument(
        "--source",
        action="append",
        default=[],
        metavar="NAME=PATH",
        help="Source layer; the name is used as its category (repeatable)",
    )
    parser.add_argument("--enriched-facilities", type=Path, help="Previously enriched facility file")
    parser.add_argument(
        "--enriched-source", action="append", default=[], type=Path,
        help="Previously enriched source file (repeatable)",
    )
    parser.add_argument("--open-only", action="store_true", help="Drop facilities with status CLOSED")
    parser.add_argument("--enrich-only", action="store_true", help="Stop after enrichment")
    parser.add_argument(
        "--thresholds", type=int, nargs="+", default=list(config.DEFAULT_THRESHOLDS),
        help="'More than N sources' thresholds (default: 0 1 5)",
    )
    parser.add_argument("--output", type=Path, default=config.SUMMARY_DIR, help="Summary directory")
    parser.add_argument("--enriched-dir", type=Path, default=config.ENRICHED_DIR)
    parser.add_argument("--service-url", default=config.ELEVATION_SERVICE_URL)
    parser.add_argument("--batch-size", type=int, default=config.ELEVATION_BATCH_SIZE)
    parser.add_argument("--workers", type=int, default=config.ELEVATION_MAX_WORKERS)
    parser.add_argument("--max-attempts", type=int, default=config.ELEVATION_MAX_ATTEMPTS)
    parser.add_argument("--no-cache", action="store_true", help="Disable enrichment cache")
    parser.add_argument("--force", action="store_true", help="Re-enrich even if cached")
    parser.add_argument("--clear", action="store_true", help="Clear enrichment cache and exit")
    parser.add_argument("--log-level", default=config.DEFAULT_LOG_LEVEL)
    return parser.parse_args()


def enrich_layers(args):
    """Load raw layers, enrich them and persist the enriched files."""
    polygons = polygons_from_frame(gpd.read_file(args.watersheds), code_column=args.huc_column)
    client = ElevationClient(
        args.service_url,
        batch_size=args.batch_size,
        max_workers=args.workers,
        retry=RetryPolicy(max_attempts=args.max_attempts),
    )
    pipeline = ExposurePipeline(
        polygons,
        elevation_client=client,
        cache_enabled=not args.no_cache,
        force_rebuild=args.force,
    )

    facilities = pipeline.enrich(
        facilities_from_frame(gpd.read_file(args.facilities), open_only=args.open_only),
        "facilities",
    )
    save_enriched(facilities, args.enriched_dir / "facilities.geojson")

    source_sets = []
    for spec in args.source:
        name, _, path = spec.partition("=")
        if not path:
            raise SystemExit(f"--source expects NAME=PATH, got {spec!r}")
        sources = pipeline.enrich(sources_from_frame(gpd.read_file(path), category=name), name)
        save_enriched(sources, args.enriched_dir / f"{name}.geojson")
        source_sets.append(sources)

    return pipeline, facilities, source_sets


def main():
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.clear:
        deleted = EnrichmentCache().clear_cache()
        print(f"Cleared {deleted} cache files")
        return 0

    if args.enriched_facilities:
        facilities = load_enriched(args.enriched_facilities, category="facilities")
        source_sets = [load_enriched(p) for p in args.enriched_source]
        pipeline = ExposurePipeline([], cache_enabled=False)
    else:
        if not (args.watersheds and args.facilities):
            print("Need --watersheds and --facilities (or --enriched-facilities)", file=sys.stderr)
            return 2
        try:
            pipeline, facilities, source_sets = enrich_layers(args)
        except ElevationServiceError as e:
            logger.error(f"Enrichment stopped: {e}")
            if e.partial is not None:
                logger.error(
                    f"{e.partial.enriched_count}/{e.partial.total} points enriched; "
                    f"first failing batch at offset {e.partial.first_failed_offset}"
                )
                if not args.no_cache:
                    logger.error("Completed batches were saved; rerun the same command to resume")
            return 1

    if args.enrich_only:
        return 0

    results = pipeline.analyze_many(facilities, source_sets, thresholds=args.thresholds)
    for category, result in results.items():
        pipeline.export(result, args.output)
        print(f"{category}: {result.matched_facilities} facilities with an upstream source")
    return 0


if __name__ == "__main__":
    sys.exit(main())
