"""
Georeferenced raster grid shared by every stage of the watershed engine.

A Grid couples a 2-D numpy array with its affine transform, CRS identifier and
no-data sentinel. The array is stored read-only: stages hand grids to each
other by reference and build new grids for their outputs instead of modifying
what they were given.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import logging
import math

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine, from_origin

from src.watershed.errors import GridMismatch, InvalidInput

logger = logging.getLogger(__name__)

# Metres per degree of latitude, used to convert geographic cell sizes
METERS_PER_DEGREE = 111320.0


@dataclass(eq=False)
class Grid:
    """Uniform 2-D raster with georeferencing metadata."""

    data: np.ndarray
    """Cell values indexed as data[row, col]."""

    transform: Affine = Affine.identity()
    """Affine transform mapping (col, row) to map coordinates."""

    crs: Optional[str] = None
    """Coordinate reference system identifier (e.g. 'EPSG:32611')."""

    nodata: Optional[float] = None
    """No-data sentinel. NaN is allowed for float grids."""

    def __post_init__(self):
        data = np.array(self.data, copy=True)
        if data.ndim != 2:
            raise InvalidInput(f"Grid data must be 2-D, got shape {data.shape}")
        data.setflags(write=False)
        self.data = data

        if self.crs is not None and not isinstance(self.crs, str):
            self.crs = self.crs.to_string()

    @classmethod
    def from_array(
        cls,
        data: np.ndarray,
        cell_size: float = 1.0,
        origin: Tuple[float, float] = (0.0, 0.0),
        crs: Optional[str] = None,
        nodata: Optional[float] = None,
    ) -> "Grid":
        """
        Build a north-up grid from an array, a square cell size and the
        (west, north) coordinate of its upper-left corner.
        """
        west, north = origin
        transform = from_origin(west, north, cell_size, cell_size)
        return cls(data=data, transform=transform, crs=crs, nodata=nodata)

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def cols(self) -> int:
        return self.data.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def cell_size(self) -> Tuple[float, float]:
        """(x, y) cell size in CRS units, always positive."""
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def is_geographic(self) -> bool:
        if self.crs is None:
            return False
        return CRS.from_user_input(self.crs).is_geographic

    def cell_size_meters(self) -> Tuple[float, float]:
        """
        (x, y) cell size in metres.

        Geographic grids are converted at the latitude of the grid centre;
        projected grids are assumed to already be in metres.
        """
        dx, dy = self.cell_size
        if not self.is_geographic:
            return dx, dy

        _, lat_center = self.transform * (self.cols / 2.0, self.rows / 2.0)
        meters_x = dx * METERS_PER_DEGREE * math.cos(math.radians(lat_center))
        return meters_x, dy * METERS_PER_DEGREE

    @property
    def nodata_mask(self) -> np.ndarray:
        """Boolean mask, True where the cell holds no data."""
        if np.issubdtype(self.data.dtype, np.floating):
            mask = ~np.isfinite(self.data)
        else:
            mask = np.zeros(self.shape, dtype=bool)

        if self.nodata is not None and not (isinstance(self.nodata, float) and math.isnan(self.nodata)):
            mask |= self.data == self.nodata
        return mask

    @property
    def valid_mask(self) -> np.ndarray:
        return ~self.nodata_mask

    @property
    def valid_count(self) -> int:
        return int(np.count_nonzero(self.valid_mask))

    def contains(self, row: int, col: int) -> bool:
        return 0 <= row < self.rows and 0 <= col < self.cols

    def xy(self, row: int, col: int) -> Tuple[float, float]:
        """Map coordinate of the centre of cell (row, col)."""
        x, y = self.transform * (col + 0.5, row + 0.5)
        return float(x), float(y)

    def rowcol(self, x: float, y: float) -> Tuple[int, int]:
        """
        Cell containing map coordinate (x, y).

        The result may lie outside the grid; check it with contains().
        """
        if not (math.isfinite(x) and math.isfinite(y)):
            raise InvalidInput(f"Coordinate must be finite, got ({x}, {y})")
        col, row = ~self.transform * (x, y)
        return int(math.floor(row)), int(math.floor(col))

    def like(self, data: np.ndarray, nodata: Optional[float] = None) -> "Grid":
        """New grid with this grid's georeferencing and the given values."""
        if data.shape != self.shape:
            raise GridMismatch(f"Data shape {data.shape} does not match grid shape {self.shape}")
        return Grid(data=data, transform=self.transform, crs=self.crs, nodata=nodata)

    def validate(self) -> "Grid":
        """
        Check the grid is usable for analysis.

        Raises
        ------
        InvalidInput
            If the grid is empty, has no valid cells, or its transform is
            rotated or has a zero, negative-size or non-finite cell size.
        """
        if self.rows == 0 or self.cols == 0:
            raise InvalidInput(f"Grid is empty (shape {self.shape})")

        t = self.transform
        if t.b != 0 or t.d != 0:
            raise InvalidInput(f"Rotated transforms are not supported: {t}")

        dx, dy = self.cell_size
        if not (math.isfinite(dx) and math.isfinite(dy)) or dx <= 0 or dy <= 0:
            raise InvalidInput(f"Degenerate cell size ({dx}, {dy})")

        if self.valid_count == 0:
            raise InvalidInput("Grid has no valid cells")
        return self

    def is_aligned(self, other: "Grid") -> bool:
        return (
            self.shape == other.shape
            and self.transform.almost_equals(other.transform)
            and self.crs == other.crs
        )


def ensure_aligned(*grids: Grid) -> None:
    """
    Raise GridMismatch unless all grids share shape, transform and CRS.

    Grids are never resampled to match each other.
    """
    if not grids:
        return
    reference = grids[0]
    for other in grids[1:]:
        if reference.shape != other.shape:
            raise GridMismatch(f"Grid shapes differ: {reference.shape} vs {other.shape}")
        if not reference.transform.almost_equals(other.transform):
            raise GridMismatch(
                f"Grid transforms differ: {tuple(reference.transform)[:6]} "
                f"vs {tuple(other.transform)[:6]}"
            )
        if reference.crs != other.crs:
            raise GridMismatch(f"Grid CRS differ: {reference.crs} vs {other.crs}")
