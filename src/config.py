"""Configuration module for the terrain watershed project.

Centralizes data paths and default analysis settings.
"""
from pathlib import Path

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
DEM_DIR = DATA_DIR / "dem"
SITES_FILE = DATA_DIR / "sites.csv"

# Output directories (created as needed)
OUTPUT_DIR = DATA_DIR / "outputs"
CACHE_DIR = DATA_DIR / "cache"
ANALYSIS_CACHE = CACHE_DIR / "analysis"

# Ensure output directories exist
for output_dir in [OUTPUT_DIR, ANALYSIS_CACHE]:
    output_dir.mkdir(parents=True, exist_ok=True)

# Default settings
DEFAULT_DEM_PATTERN = "*.tif"
DEFAULT_ZOOM = 11  # Elevation tile zoom level requested from the raster supplier
DEFAULT_MAX_BREACH_DISTANCE = 10  # cells
DEFAULT_STREAM_THRESHOLD = 500  # upstream cells
DEFAULT_SNAP_DISTANCE = 100.0  # map units
DEFAULT_RUGGEDNESS_WINDOW = 3
DEFAULT_MIN_TAN_SLOPE = 1e-4
DEFAULT_MAX_WORKERS = 4
DEFAULT_LOG_LEVEL = "INFO"
