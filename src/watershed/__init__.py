"""
Raster watershed delineation and terrain metrics.

Core functionality:
- Grid: georeferenced raster passed between stages
- Depression resolution (least-cost breaching + priority-flood fill)
- D8 flow direction and accumulation
- Stream extraction, pour point snapping and watershed delineation
- Terrain metrics (slope, aspect, ruggedness, wetness index) and zonal means
- Site pipeline running many independent pour points in parallel
"""

from .errors import (
    WatershedError,
    GridMismatch,
    InvalidInput,
    NoStreamWithinRadius,
    InvalidOutlet,
    EmptyMask,
    UnresolvableDepression,
    Cancelled,
)
from .grid import Grid, ensure_aligned
from .conditioning import resolve_depressions, breach_depressions, fill_depressions
from .routing import FlowRouting, route_flow, compute_flow_direction, compute_flow_accumulation
from .streams import extract_streams
from .snapping import PourPoint, snap_pour_point
from .delineation import delineate_watershed, label_watersheds
from .terrain_metrics import TerrainMetrics, compute_terrain_metrics, zonal_mean
from .raster_io import read_grid, write_grid
from .pipeline import (
    AnalysisConfig,
    CancellationToken,
    SiteResult,
    TerrainAnalysis,
    analyze_site,
    analyze_sites,
    analyze_terrain,
    load_sites_csv,
)

__all__ = [
    "WatershedError",
    "GridMismatch",
    "InvalidInput",
    "NoStreamWithinRadius",
    "InvalidOutlet",
    "EmptyMask",
    "UnresolvableDepression",
    "Cancelled",
    "Grid",
    "ensure_aligned",
    "resolve_depressions",
    "breach_depressions",
    "fill_depressions",
    "FlowRouting",
    "route_flow",
    "compute_flow_direction",
    "compute_flow_accumulation",
    "extract_streams",
    "PourPoint",
    "snap_pour_point",
    "delineate_watershed",
    "label_watersheds",
    "TerrainMetrics",
    "compute_terrain_metrics",
    "zonal_mean",
    "read_grid",
    "write_grid",
    "AnalysisConfig",
    "CancellationToken",
    "SiteResult",
    "TerrainAnalysis",
    "analyze_site",
    "analyze_sites",
    "analyze_terrain",
    "load_sites_csv",
]
