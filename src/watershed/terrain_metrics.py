"""
Per-cell terrain metrics and watershed-masked (zonal) reductions.

Metrics:
- Slope (degrees) and aspect (degrees clockwise from north, the direction
  the slope faces) using Horn's 3x3 method
- Ruggedness: elevation standard deviation within a square window
- Topographic wetness index: ln(a / tan(slope)), a = specific catchment area
- Hillshade for display underlays

Missing neighbours (grid edge or no-data) are replaced by the centre cell's
value, so metrics are defined on every valid cell.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import logging
import math

import numpy as np
from scipy import ndimage

from src.watershed.errors import EmptyMask, InvalidInput
from src.watershed.grid import Grid, ensure_aligned

logger = logging.getLogger(__name__)

FLAT_ASPECT = -1.0
"""Aspect assigned to cells with zero gradient."""


def _neighbourhood(dem: Grid) -> Tuple[np.ndarray, ...]:
    """
    The nine cells of each 3x3 window as shifted arrays (a..i, row-major).

    Missing neighbours take the centre cell's value.
    """
    valid = dem.valid_mask
    z = np.where(valid, dem.data, np.nan).astype(np.float64)
    padded = np.pad(z, 1, constant_values=np.nan)
    rows, cols = z.shape

    windows = []
    for dr in range(3):
        for dc in range(3):
            shifted = padded[dr:dr + rows, dc:dc + cols]
            windows.append(np.where(np.isnan(shifted), z, shifted))
    return tuple(windows)


def _horn_gradient(dem: Grid) -> Tuple[np.ndarray, np.ndarray]:
    """
    Horn (1981) gradient.

    Returns
    -------
    (dz_east, dz_north)
        Elevation change per metre toward east and toward north.
    """
    a, b, c, d, _, f, g, h, i = _neighbourhood(dem)
    dx, dy = dem.cell_size_meters()
    dz_east = ((c + 2 * f + i) - (a + 2 * d + g)) / (8.0 * dx)
    dz_north = ((a + 2 * b + c) - (g + 2 * h + i)) / (8.0 * dy)
    return dz_east, dz_north


def compute_slope_aspect(dem: Grid) -> Tuple[Grid, Grid]:
    """
    Slope and aspect from the steepest 3x3 gradient.

    Returns
    -------
    slope : Grid
        Degrees from horizontal, NaN on no-data.
    aspect : Grid
        Degrees clockwise from north of the downslope direction (0-360),
        FLAT_ASPECT (-1) where the gradient is zero, NaN on no-data.
    """
    dem.validate()
    dz_east, dz_north = _horn_gradient(dem)
    valid = dem.valid_mask

    magnitude = np.hypot(dz_east, dz_north)
    slope = np.degrees(np.arctan(magnitude))

    aspect = np.degrees(np.arctan2(-dz_east, -dz_north)) % 360.0
    aspect[magnitude == 0] = FLAT_ASPECT

    slope[~valid] = np.nan
    aspect[~valid] = np.nan
    return dem.like(slope, nodata=np.nan), dem.like(aspect, nodata=np.nan)


def compute_ruggedness(dem: Grid, window: int = 3) -> Grid:
    """
    Local relief as the standard deviation of valid elevations in a
    window x window neighbourhood.
    """
    if window < 3 or window % 2 == 0:
        raise InvalidInput(f"Ruggedness window must be an odd size >= 3, got {window}")
    dem.validate()

    valid = dem.valid_mask
    # Centre on the mean elevation to limit cancellation in E[z^2] - E[z]^2
    z = np.where(valid, dem.data, 0.0).astype(np.float64)
    z = np.where(valid, z - z[valid].mean(), 0.0)
    weight = valid.astype(np.float64)

    count = ndimage.uniform_filter(weight, size=window, mode="constant")
    mean = ndimage.uniform_filter(z, size=window, mode="constant")
    mean_sq = ndimage.uniform_filter(z * z, size=window, mode="constant")

    with np.errstate(invalid="ignore", divide="ignore"):
        mean = mean / count
        variance = np.maximum(mean_sq / count - mean * mean, 0.0)

    ruggedness = np.sqrt(variance)
    ruggedness[~valid] = np.nan
    return dem.like(ruggedness, nodata=np.nan)


def compute_wetness_index(slope: Grid, flow_accum: Grid, min_tan_slope: float = 1e-4) -> Grid:
    """
    Topographic wetness index ln(a / tan(slope)).

    a is the specific catchment area: upstream area divided by the cell
    width. tan(slope) is clamped to at least min_tan_slope so flat cells
    stay finite.
    """
    if not min_tan_slope > 0:
        raise InvalidInput(f"min_tan_slope must be positive, got {min_tan_slope}")
    ensure_aligned(slope, flow_accum)

    dx, dy = slope.cell_size_meters()
    valid = slope.valid_mask & flow_accum.valid_mask
    specific_area = flow_accum.data.astype(np.float64) * math.sqrt(dx * dy)
    tan_slope = np.maximum(np.tan(np.radians(np.where(valid, slope.data, 0.0))), min_tan_slope)

    twi = np.full(slope.shape, np.nan, dtype=np.float64)
    twi[valid] = np.log(specific_area[valid] / tan_slope[valid])
    return slope.like(twi, nodata=np.nan)


def compute_hillshade(dem: Grid, azimuth: float = 315.0, altitude: float = 45.0) -> Grid:
    """
    Analytical hillshade (0-255) for a light source at azimuth (degrees
    clockwise from north) and altitude (degrees above the horizon).
    """
    dem.validate()
    dz_east, dz_north = _horn_gradient(dem)

    zenith = math.radians(90.0 - altitude)
    slope = np.arctan(np.hypot(dz_east, dz_north))
    aspect = np.arctan2(-dz_east, -dz_north)

    shade = (
        math.cos(zenith) * np.cos(slope)
        + math.sin(zenith) * np.sin(slope) * np.cos(math.radians(azimuth) - aspect)
    )
    shade = np.clip(shade, 0.0, 1.0) * 255.0
    shade[~dem.valid_mask] = np.nan
    return dem.like(shade, nodata=np.nan)


def _zonal_selection(metric: Grid, mask: Grid, exclude: Optional[float] = None) -> np.ndarray:
    ensure_aligned(metric, mask)
    selected = mask.data.astype(bool) & mask.valid_mask & metric.valid_mask
    if exclude is not None:
        selected &= metric.data != exclude
    if not np.any(selected):
        raise EmptyMask("No valid cells fall inside the mask")
    return selected


def zonal_mean(metric: Grid, mask: Grid, exclude: Optional[float] = None) -> float:
    """
    Arithmetic mean of metric over masked, non-no-data cells.

    Cells equal to exclude (e.g. FLAT_ASPECT) are left out.

    Raises
    ------
    EmptyMask
        If no cells qualify.
    GridMismatch
        If metric and mask are not aligned.
    """
    selected = _zonal_selection(metric, mask, exclude)
    return float(np.mean(metric.data[selected], dtype=np.float64))


def circular_mean_aspect(aspect: Grid, mask: Grid) -> float:
    """
    Vector-averaged aspect in degrees (0-360) over masked, non-flat cells.

    Unlike the arithmetic mean, 350 and 10 average to 0, not 180.
    """
    selected = _zonal_selection(aspect, mask, exclude=FLAT_ASPECT)
    radians = np.radians(aspect.data[selected])
    return float(np.degrees(np.arctan2(np.mean(np.sin(radians)), np.mean(np.cos(radians)))) % 360.0)


@dataclass(eq=False)
class TerrainMetrics:
    """Per-cell terrain metric grids sharing one georeferencing."""

    slope: Grid
    """Slope in degrees."""

    aspect: Grid
    """Aspect in degrees clockwise from north, FLAT_ASPECT on flat cells."""

    ruggedness: Grid
    """Elevation standard deviation in the ruggedness window."""

    wetness_index: Grid
    """Topographic wetness index."""

    hillshade: Optional[Grid] = None

    def zonal_means(self, mask: Grid) -> Dict[str, float]:
        """
        Mean of each metric inside mask.

        Flat cells are excluded from the aspect mean; if every masked cell is
        flat the aspect mean is NaN while the other means are still reported.
        An empty mask raises EmptyMask.
        """
        means = {"slope": zonal_mean(self.slope, mask)}
        try:
            means["aspect"] = zonal_mean(self.aspect, mask, exclude=FLAT_ASPECT)
        except EmptyMask:
            logger.debug("Every masked cell is flat; aspect mean is undefined")
            means["aspect"] = float("nan")
        means["ruggedness"] = zonal_mean(self.ruggedness, mask)
        means["wetness_index"] = zonal_mean(self.wetness_index, mask)
        return means


def compute_terrain_metrics(
    dem: Grid,
    flow_accum: Grid,
    ruggedness_window: int = 3,
    min_tan_slope: float = 1e-4,
    with_hillshade: bool = False,
) -> TerrainMetrics:
    """
    Compute every terrain metric for an elevation grid.

    Parameters
    ----------
    dem : Grid
        Elevation grid (the conditioned DEM in the standard pipeline).
    flow_accum : Grid
        Flow accumulation counts aligned with dem.
    ruggedness_window : int, default 3
        Odd window size for compute_ruggedness().
    min_tan_slope : float, default 1e-4
        Lower clamp on tan(slope) for the wetness index.
    with_hillshade : bool, default False
        Also compute a default hillshade.
    """
    ensure_aligned(dem, flow_accum)
    slope, aspect = compute_slope_aspect(dem)
    ruggedness = compute_ruggedness(dem, ruggedness_window)
    wetness = compute_wetness_index(slope, flow_accum, min_tan_slope)
    hillshade = compute_hillshade(dem) if with_hillshade else None

    logger.info(
        f"Terrain metrics: mean slope {np.nanmean(slope.data):.2f} deg, "
        f"mean TWI {np.nanmean(wetness.data):.2f}"
    )
    return TerrainMetrics(
        slope=slope,
        aspect=aspect,
        ruggedness=ruggedness,
        wetness_index=wetness,
        hillshade=hillshade,
    )
