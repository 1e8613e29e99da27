"""
Pour point representation and snapping onto the stream network.
"""

from dataclasses import dataclass, replace
from typing import Optional
import logging
import math

import numpy as np
from rasterio.warp import transform as warp_transform

from src.watershed.errors import InvalidInput, NoStreamWithinRadius
from src.watershed.grid import Grid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PourPoint:
    """Labelled outlet coordinate in the CRS of the grids it is used with."""

    label: str
    x: float
    y: float
    snapped: bool = False
    """True once the point has been moved onto a stream cell."""

    snap_distance: Optional[float] = None
    """Distance moved by snapping, in map units."""

    def __post_init__(self):
        if not (math.isfinite(self.x) and math.isfinite(self.y)):
            raise InvalidInput(f"Pour point {self.label!r} has a non-finite coordinate ({self.x}, {self.y})")


def reproject_pour_point(point: PourPoint, src_crs: str, dst_crs: str) -> PourPoint:
    """
    Transform a pour point between coordinate reference systems.

    Typically used to bring a longitude/latitude site ('EPSG:4326') into the
    projected CRS of the DEM.
    """
    xs, ys = warp_transform(src_crs, dst_crs, [point.x], [point.y])
    return replace(point, x=float(xs[0]), y=float(ys[0]))


def snap_pour_point(point: PourPoint, streams: Grid, max_snap_distance: float) -> PourPoint:
    """
    Move a pour point onto the nearest stream cell.

    Scans stream cells around the cell that contains the point and returns a
    new PourPoint at the centre of the nearest one. Distances run from the
    input coordinate to each candidate cell centre, so the reported
    snap_distance never exceeds max_snap_distance. Ties go to the smallest
    row-major index. A point inside a stream cell snaps to that cell's centre
    when the radius allows it.

    Raises
    ------
    InvalidInput
        If the point lies outside the grid or max_snap_distance is negative.
    NoStreamWithinRadius
        If no stream cell centre lies within max_snap_distance.
    """
    if not max_snap_distance >= 0:
        raise InvalidInput(f"max_snap_distance must be >= 0, got {max_snap_distance}")

    row, col = streams.rowcol(point.x, point.y)
    if not streams.contains(row, col):
        raise InvalidInput(
            f"Pour point {point.label!r} at ({point.x}, {point.y}) lies outside the grid"
        )

    # One extra cell covers the offset of the point within its own cell
    dx, dy = streams.cell_size
    radius_rows = int(math.ceil(max_snap_distance / dy)) + 1
    radius_cols = int(math.ceil(max_snap_distance / dx)) + 1

    r0 = max(0, row - radius_rows)
    r1 = min(streams.rows, row + radius_rows + 1)
    c0 = max(0, col - radius_cols)
    c1 = min(streams.cols, col + radius_cols + 1)

    window = streams.data[r0:r1, c0:c1].astype(bool) & streams.valid_mask[r0:r1, c0:c1]
    cand_rows, cand_cols = np.nonzero(window)
    cand_rows = cand_rows + r0
    cand_cols = cand_cols + c0

    t = streams.transform
    cand_x = t.c + (cand_cols + 0.5) * t.a + (cand_rows + 0.5) * t.b
    cand_y = t.f + (cand_cols + 0.5) * t.d + (cand_rows + 0.5) * t.e
    distances = np.hypot(cand_x - point.x, cand_y - point.y)
    within = distances <= max_snap_distance
    if not np.any(within):
        raise NoStreamWithinRadius(
            f"No stream cell within {max_snap_distance} of pour point {point.label!r} "
            f"at ({point.x}, {point.y})"
        )

    cand_rows = cand_rows[within]
    cand_cols = cand_cols[within]
    distances = distances[within]

    flat_index = cand_rows * streams.cols + cand_cols
    best = np.lexsort((flat_index, distances))[0]
    snap_row, snap_col = int(cand_rows[best]), int(cand_cols[best])
    moved = float(distances[best])

    x, y = streams.xy(snap_row, snap_col)
    logger.debug(f"Snapped {point.label!r} to cell ({snap_row}, {snap_col}), moved {moved:.2f}")
    return replace(point, x=x, y=y, snapped=True, snap_distance=moved)
