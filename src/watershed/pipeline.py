"""
Site analysis pipeline.

Runs the terrain-wide stages once per DEM and then fans independent sites
(pour points) out over a worker pool:

    DEM -> resolve_depressions -> route_flow -> {extract_streams, terrain metrics}
    per site: snap_pour_point -> delineate_watershed -> zonal means

Terrain-wide grids are read-only and shared by every site worker.
"""

from dataclasses import asdict, dataclass, field, fields
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union
import csv
import logging
import threading

import numpy as np
from tqdm import tqdm

from src import config
from src.watershed.conditioning import resolve_depressions
from src.watershed.delineation import delineate_watershed
from src.watershed.errors import Cancelled, InvalidInput, WatershedError
from src.watershed.grid import Grid
from src.watershed.raster_io import write_grids
from src.watershed.routing import route_flow
from src.watershed.snapping import PourPoint, reproject_pour_point, snap_pour_point
from src.watershed.streams import extract_streams
from src.watershed.terrain_metrics import TerrainMetrics, compute_terrain_metrics

logger = logging.getLogger(__name__)


@dataclass
class AnalysisConfig:
    """Parameters for a terrain/watershed analysis, supplied up front."""

    max_breach_distance: int = config.DEFAULT_MAX_BREACH_DISTANCE
    """Maximum breach path length in cells (0 = fill only)."""

    max_breach_depth: Optional[float] = None
    """Maximum lowering of any single cell while breaching."""

    epsilon: Optional[float] = None
    """Gradient imposed on filled flats (None = 1e-5 per metre of cell size)."""

    stream_threshold: int = config.DEFAULT_STREAM_THRESHOLD
    """Minimum upstream cell count of a stream cell."""

    snap_distance: float = config.DEFAULT_SNAP_DISTANCE
    """Maximum pour point snap distance in map units."""

    ruggedness_window: int = config.DEFAULT_RUGGEDNESS_WINDOW
    min_tan_slope: float = config.DEFAULT_MIN_TAN_SLOPE
    with_hillshade: bool = False

    zoom: int = config.DEFAULT_ZOOM
    """Resolution level of the supplied DEM (recorded with saved outputs)."""

    max_workers: int = config.DEFAULT_MAX_WORKERS

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "AnalysisConfig":
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise InvalidInput(f"Unknown analysis settings: {sorted(unknown)}")
        return cls(**values).validate()

    def validate(self) -> "AnalysisConfig":
        if self.max_breach_distance < 0:
            raise InvalidInput(f"max_breach_distance must be >= 0, got {self.max_breach_distance}")
        if self.stream_threshold < 1:
            raise InvalidInput(f"stream_threshold must be >= 1, got {self.stream_threshold}")
        if self.snap_distance < 0:
            raise InvalidInput(f"snap_distance must be >= 0, got {self.snap_distance}")
        if self.max_workers < 1:
            raise InvalidInput(f"max_workers must be >= 1, got {self.max_workers}")
        return self


class CancellationToken:
    """Caller-controlled flag checked between pipeline stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise Cancelled(f"Analysis cancelled before {stage}")


def _checkpoint(cancel: Optional[CancellationToken], stage: str) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled(stage)


@dataclass(eq=False)
class TerrainAnalysis:
    """Terrain-wide grids shared by every site."""

    dem: Grid
    conditioned_dem: Grid
    flow_direction: Grid
    flow_accumulation: Grid
    streams: Grid
    metrics: TerrainMetrics
    config: AnalysisConfig

    def grids(self) -> Dict[str, Grid]:
        """Every grid of the analysis, keyed by output name."""
        grids = {
            "dem_conditioned": self.conditioned_dem,
            "flow_direction": self.flow_direction,
            "flow_accumulation": self.flow_accumulation,
            "streams": self.streams,
            "slope": self.metrics.slope,
            "aspect": self.metrics.aspect,
            "ruggedness": self.metrics.ruggedness,
            "wetness_index": self.metrics.wetness_index,
        }
        if self.metrics.hillshade is not None:
            grids["hillshade"] = self.metrics.hillshade
        return grids

    def save(self, directory: Union[str, Path]) -> Dict[str, str]:
        return write_grids(self.grids(), directory, metadata={"config": asdict(self.config)})


@dataclass(eq=False)
class SiteResult:
    """Watershed and zonal statistics for one pour point."""

    label: str
    pour_point: PourPoint
    snapped_point: Optional[PourPoint] = None
    watershed: Optional[Grid] = None
    cell_count: int = 0
    area_m2: float = 0.0
    means: Dict[str, float] = field(default_factory=dict)
    """Mean slope, aspect, ruggedness and wetness_index inside the watershed."""

    error: Optional[WatershedError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def summary(self) -> Dict[str, Any]:
        """Flat record for tabular output (no grids)."""
        record = {
            "label": self.label,
            "x": self.snapped_point.x if self.snapped_point else self.pour_point.x,
            "y": self.snapped_point.y if self.snapped_point else self.pour_point.y,
            "snap_distance": self.snapped_point.snap_distance if self.snapped_point else None,
            "cell_count": self.cell_count,
            "area_m2": self.area_m2,
            "error": str(self.error) if self.error else None,
        }
        for name, value in self.means.items():
            record[f"mean_{name}"] = value
        return record


def analyze_terrain(
    dem: Grid,
    analysis_config: Optional[AnalysisConfig] = None,
    cancel: Optional[CancellationToken] = None,
) -> TerrainAnalysis:
    """
    Run the terrain-wide stages: conditioning, routing, streams, metrics.
    """
    cfg = (analysis_config or AnalysisConfig()).validate()
    dem.validate()

    _checkpoint(cancel, "depression resolution")
    conditioned = resolve_depressions(
        dem, cfg.max_breach_distance, max_breach_depth=cfg.max_breach_depth, epsilon=cfg.epsilon
    )

    _checkpoint(cancel, "flow routing")
    routing = route_flow(conditioned)

    _checkpoint(cancel, "stream extraction")
    streams = extract_streams(routing.accumulation, cfg.stream_threshold)

    _checkpoint(cancel, "terrain metrics")
    metrics = compute_terrain_metrics(
        conditioned,
        routing.accumulation,
        ruggedness_window=cfg.ruggedness_window,
        min_tan_slope=cfg.min_tan_slope,
        with_hillshade=cfg.with_hillshade,
    )

    logger.info(
        f"Terrain analysis complete: {dem.shape[0]}x{dem.shape[1]} grid, "
        f"{int(np.count_nonzero(streams.data)):,} stream cells"
    )
    return TerrainAnalysis(
        dem=dem,
        conditioned_dem=conditioned,
        flow_direction=routing.direction,
        flow_accumulation=routing.accumulation,
        streams=streams,
        metrics=metrics,
        config=cfg,
    )


def analyze_site(
    analysis: TerrainAnalysis,
    point: PourPoint,
    cancel: Optional[CancellationToken] = None,
) -> SiteResult:
    """
    Snap, delineate and summarise one site.

    Raises the stage's WatershedError on failure.
    """
    _checkpoint(cancel, f"snapping {point.label!r}")
    snapped = snap_pour_point(point, analysis.streams, analysis.config.snap_distance)

    _checkpoint(cancel, f"delineating {point.label!r}")
    watershed = delineate_watershed(analysis.flow_direction, snapped)

    _checkpoint(cancel, f"zonal statistics for {point.label!r}")
    means = analysis.metrics.zonal_means(watershed)

    cell_count = int(np.count_nonzero(watershed.data))
    dx, dy = watershed.cell_size_meters()
    return SiteResult(
        label=point.label,
        pour_point=point,
        snapped_point=snapped,
        watershed=watershed,
        cell_count=cell_count,
        area_m2=cell_count * dx * dy,
        means=means,
    )


def analyze_sites(
    dem: Union[Grid, TerrainAnalysis],
    points: Sequence[PourPoint],
    analysis_config: Optional[AnalysisConfig] = None,
    points_crs: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
    show_progress: bool = False,
) -> Dict[str, SiteResult]:
    """
    Analyse several independent sites in parallel.

    Parameters
    ----------
    dem : Grid or TerrainAnalysis
        Raw DEM (terrain stages run first) or a finished terrain analysis.
    points : sequence of PourPoint
        Sites with unique labels.
    analysis_config : AnalysisConfig, optional
        Ignored when a TerrainAnalysis is passed.
    points_crs : str, optional
        CRS of the point coordinates if it differs from the DEM's
        (e.g. 'EPSG:4326' for longitude/latitude).
    cancel : CancellationToken, optional
        Checked between stages; raises Cancelled.

    Returns
    -------
    dict
        Site label -> SiteResult, in input order. Sites that failed carry
        the error in SiteResult.error.
    """
    labels = [p.label for p in points]
    if len(set(labels)) != len(labels):
        raise InvalidInput("Site labels must be unique")

    if isinstance(dem, TerrainAnalysis):
        analysis = dem
    else:
        analysis = analyze_terrain(dem, analysis_config, cancel)

    grid_crs = analysis.flow_direction.crs
    if points_crs is not None and points_crs != grid_crs:
        if grid_crs is None:
            raise InvalidInput(f"Cannot reproject sites from {points_crs}: DEM has no CRS")
        points = [reproject_pour_point(p, points_crs, grid_crs) for p in points]

    results = {}
    with ThreadPoolExecutor(max_workers=analysis.config.max_workers) as executor:
        future_map = {executor.submit(analyze_site, analysis, p, cancel): p for p in points}
        with tqdm(total=len(points), desc="Delineating sites", disable=not show_progress) as pbar:
            for future in as_completed(future_map):
                point = future_map[future]
                try:
                    results[point.label] = future.result()
                except Cancelled:
                    raise
                except WatershedError as e:
                    logger.error(f"Site {point.label!r} failed: {e}")
                    results[point.label] = SiteResult(label=point.label, pour_point=point, error=e)
                finally:
                    pbar.update(1)

    failed = sum(1 for r in results.values() if not r.ok)
    logger.info(f"Analysed {len(results)} sites ({failed} failed)")
    return {label: results[label] for label in labels}


def load_sites_csv(path: Union[str, Path]) -> List[PourPoint]:
    """
    Read a site table with columns label, x, y.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    InvalidInput
        If columns are missing or a coordinate is not a number.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Site file not found: {path}")

    points = []
    with open(path, newline="") as f:
        reader = csv.DictReader(f)
        missing = {"label", "x", "y"} - set(reader.fieldnames or [])
        if missing:
            raise InvalidInput(f"Site file {path} is missing columns: {sorted(missing)}")

        for line_number, row in enumerate(reader, start=2):
            try:
                x, y = float(row["x"]), float(row["y"])
            except (TypeError, ValueError) as e:
                raise InvalidInput(f"{path}:{line_number}: bad coordinate ({row['x']}, {row['y']})") from e
            points.append(PourPoint(label=row["label"].strip(), x=x, y=y))

    logger.info(f"Loaded {len(points)} sites from {path}")
    return points
