"""Configuration module for the watershed exposure project.

Centralizes data paths and pipeline settings.
"""
from pathlib import Path

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
ENRICHED_DIR = DATA_DIR / "enriched"
SUMMARY_DIR = DATA_DIR / "summary"

# Cache directories (created as needed)
CACHE_DIR = DATA_DIR / "cache"
ENRICHMENT_CACHE = CACHE_DIR / "enrichment"

# Ensure cache directories exist
for cache_dir in [ENRICHMENT_CACHE]:
    cache_dir.mkdir(parents=True, exist_ok=True)

# Reference datum for all point and polygon geometries
TARGET_CRS = "EPSG:4326"
TARGET_WKID = 4326

# Elevation service
ELEVATION_SERVICE_URL = "https://elevation.example.org/api/v1/points"
ELEVATION_BATCH_SIZE = 5000
ELEVATION_TIMEOUT = 60.0  # seconds per attempt
ELEVATION_MAX_ATTEMPTS = 5
ELEVATION_BACKOFF_BASE = 1.0  # seconds before the second attempt
ELEVATION_BACKOFF_FACTOR = 2.0
ELEVATION_MAX_BACKOFF = 30.0
ELEVATION_MAX_WORKERS = 2
ELEVATION_MIN_INTERVAL = 0.5  # seconds between requests (rate limit)

# Population value used by facility inventories for "unknown"
POPULATION_SENTINEL = -999

# Qualifying-source thresholds ("more than N")
DEFAULT_THRESHOLDS = (0, 1, 5)

# Default settings
DEFAULT_LOG_LEVEL = "INFO"
