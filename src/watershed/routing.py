"""
D8 flow routing: flow direction and flow accumulation.

Flow directions use ESRI's power-of-2 D8 encoding for compatibility with
GIS workflows:

     8   4   2
    16   x   1
    32  64 128

    0   = outlet (valid cell with no lower neighbour)
    255 = no-data

Each valid cell drains entirely to its steepest-descent neighbour, so the
direction grid forms a forest of trees rooted at outlets. Accumulation is a
single topological pass (Kahn's algorithm) over that forest.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple
import logging
import math

import numpy as np
from numba import jit, prange

from src.watershed.errors import InvalidInput
from src.watershed.grid import Grid, ensure_aligned

logger = logging.getLogger(__name__)

FLOW_OUTLET = 0
FLOW_NODATA = 255

# Neighbour order doubles as the tie-break priority: clockwise from east.
D8_ROW = np.array([0, 1, 1, 1, 0, -1, -1, -1], dtype=np.int64)
D8_COL = np.array([1, 1, 0, -1, -1, -1, 0, 1], dtype=np.int64)
D8_CODE = np.array([1, 128, 64, 32, 16, 8, 4, 2], dtype=np.uint8)

# direction_code -> (row_offset, col_offset)
D8_OFFSETS = {int(code): (int(dr), int(dc)) for code, dr, dc in zip(D8_CODE, D8_ROW, D8_COL)}

VALID_CODES = frozenset(D8_OFFSETS) | {FLOW_OUTLET, FLOW_NODATA}


@dataclass(eq=False)
class FlowRouting:
    """Output of route_flow(): direction and accumulation grids."""

    direction: Grid
    """uint8 D8 codes; 0 = outlet, 255 = no-data."""

    accumulation: Grid
    """int64 upstream cell counts (>= 1 on valid cells, 0 on no-data)."""

    def __iter__(self) -> Iterator[Grid]:
        yield self.direction
        yield self.accumulation

    @property
    def outlets(self) -> List[Tuple[int, int]]:
        return find_outlets(self.direction)


def neighbour_distances(grid: Grid) -> np.ndarray:
    """Distance to each D8 neighbour, in metres, in D8_CODE order."""
    dx, dy = grid.cell_size_meters()
    diagonal = math.hypot(dx, dy)
    return np.array(
        [dx if dr == 0 else dy if dc == 0 else diagonal for dr, dc in zip(D8_ROW, D8_COL)],
        dtype=np.float64,
    )


@jit(nopython=True, parallel=True, cache=True)
def _flow_direction_jit(
    dem: np.ndarray, valid: np.ndarray, distances: np.ndarray, flow_dir: np.ndarray
) -> None:
    """
    JIT-compiled D8 steepest descent.

    A neighbour replaces the current best only if its slope is strictly
    greater, so ties go to the earliest neighbour in clockwise order.
    """
    rows, cols = dem.shape
    for i in prange(rows):
        for j in range(cols):
            if not valid[i, j]:
                flow_dir[i, j] = FLOW_NODATA
                continue

            best_slope = 0.0
            best_code = FLOW_OUTLET
            for k in range(8):
                ni = i + D8_ROW[k]
                nj = j + D8_COL[k]
                if 0 <= ni < rows and 0 <= nj < cols and valid[ni, nj]:
                    slope = (dem[i, j] - dem[ni, nj]) / distances[k]
                    if slope > best_slope:
                        best_slope = slope
                        best_code = D8_CODE[k]
            flow_dir[i, j] = best_code


def compute_flow_direction(conditioned_dem: Grid) -> Grid:
    """
    Compute D8 flow direction from a conditioned DEM.

    Each valid cell flows to the neighbour with the steepest downward
    gradient (drop divided by centre-to-centre distance). Cells with no
    lower valid neighbour are outlets (0); flow never enters no-data cells.

    Parameters
    ----------
    conditioned_dem : Grid
        Elevation grid, normally the output of resolve_depressions().

    Returns
    -------
    Grid
        uint8 direction codes with nodata = 255.
    """
    conditioned_dem.validate()
    valid = conditioned_dem.valid_mask
    dem = np.where(valid, conditioned_dem.data, np.inf).astype(np.float64)

    flow_dir = np.zeros(conditioned_dem.shape, dtype=np.uint8)
    _flow_direction_jit(dem, valid, neighbour_distances(conditioned_dem), flow_dir)

    outlet_count = int(np.count_nonzero(flow_dir == FLOW_OUTLET))
    logger.debug(f"Flow direction: {outlet_count:,} outlet cells")
    return conditioned_dem.like(flow_dir, nodata=FLOW_NODATA)


@jit(nopython=True, cache=True)
def _accumulate_jit(flow_dir: np.ndarray, acc: np.ndarray) -> int:
    """
    JIT-compiled topological accumulation (Kahn's algorithm).

    acc holds each cell's own contribution on entry and the accumulated
    total on exit. Returns the number of cells processed; fewer than the
    number of valid cells means the direction grid contains a cycle.
    """
    rows, cols = flow_dir.shape
    indegree = np.zeros((rows, cols), dtype=np.int32)
    receiver = np.full(rows * cols, -1, dtype=np.int64)

    for i in range(rows):
        for j in range(cols):
            code = flow_dir[i, j]
            if code == FLOW_OUTLET or code == FLOW_NODATA:
                continue
            for k in range(8):
                if D8_CODE[k] == code:
                    ni = i + D8_ROW[k]
                    nj = j + D8_COL[k]
                    if 0 <= ni < rows and 0 <= nj < cols and flow_dir[ni, nj] != FLOW_NODATA:
                        receiver[i * cols + j] = ni * cols + nj
                        indegree[ni, nj] += 1
                    break

    queue = np.empty(rows * cols, dtype=np.int64)
    head = 0
    tail = 0
    for i in range(rows):
        for j in range(cols):
            if flow_dir[i, j] != FLOW_NODATA and indegree[i, j] == 0:
                queue[tail] = i * cols + j
                tail += 1

    while head < tail:
        idx = queue[head]
        head += 1
        target = receiver[idx]
        if target < 0:
            continue
        ti = target // cols
        tj = target % cols
        acc[ti, tj] += acc[idx // cols, idx % cols]
        indegree[ti, tj] -= 1
        if indegree[ti, tj] == 0:
            queue[tail] = target
            tail += 1

    return head


def _check_flow_direction(flow_dir: Grid) -> None:
    codes = set(np.unique(flow_dir.data).tolist())
    invalid = codes - VALID_CODES
    if invalid:
        raise InvalidInput(f"Invalid D8 codes in flow direction grid: {sorted(invalid)}")


def _accumulate(flow_dir: Grid, acc: np.ndarray) -> np.ndarray:
    _check_flow_direction(flow_dir)
    data = np.ascontiguousarray(flow_dir.data)
    processed = _accumulate_jit(data, acc)

    expected = int(np.count_nonzero(data != FLOW_NODATA))
    if processed < expected:
        raise RuntimeError(
            f"Cycle detected in flow network: {expected - processed:,} cells never "
            "reached in-degree 0. The DEM was not properly conditioned."
        )
    return acc


def compute_flow_accumulation(flow_dir: Grid) -> Grid:
    """
    Count the cells draining through each cell, itself included.

    Returns
    -------
    Grid
        int64 counts, >= 1 on valid cells, 0 (nodata) elsewhere.

    Raises
    ------
    RuntimeError
        If the direction grid contains a cycle.
    """
    valid = flow_dir.data != FLOW_NODATA
    acc = valid.astype(np.int64)
    _accumulate(flow_dir, acc)
    return flow_dir.like(acc, nodata=0)


def weighted_flow_accumulation(flow_dir: Grid, weights: Grid) -> Grid:
    """
    Accumulate a per-cell weight downstream (e.g. precipitation).

    Every valid flow cell must carry a valid weight.

    Returns
    -------
    Grid
        float64 totals of upstream weight, NaN on no-data.
    """
    ensure_aligned(flow_dir, weights)
    valid = flow_dir.data != FLOW_NODATA
    missing = valid & weights.nodata_mask
    if np.any(missing):
        raise InvalidInput(f"{int(np.count_nonzero(missing)):,} valid flow cells have no weight")

    acc = np.where(valid, weights.data, 0.0).astype(np.float64)
    _accumulate(flow_dir, acc)
    acc[~valid] = np.nan
    return flow_dir.like(acc, nodata=np.nan)


def route_flow(conditioned_dem: Grid) -> FlowRouting:
    """
    Compute D8 flow direction and flow accumulation.

    Examples
    --------
    >>> direction, accumulation = route_flow(conditioned)
    """
    direction = compute_flow_direction(conditioned_dem)
    accumulation = compute_flow_accumulation(direction)
    logger.info(
        f"Flow routing: {conditioned_dem.valid_count:,} cells, "
        f"max accumulation {int(accumulation.data.max()):,}"
    )
    return FlowRouting(direction=direction, accumulation=accumulation)


def find_outlets(flow_dir: Grid) -> List[Tuple[int, int]]:
    """(row, col) of every outlet cell in row-major order."""
    rows, cols = np.nonzero(flow_dir.data == FLOW_OUTLET)
    return [(int(r), int(c)) for r, c in zip(rows, cols)]


def downstream_cell(flow_dir: Grid, row: int, col: int) -> Optional[Tuple[int, int]]:
    """Receiver of (row, col), or None for outlets and no-data cells."""
    code = int(flow_dir.data[row, col])
    if code not in D8_OFFSETS:
        return None
    dr, dc = D8_OFFSETS[code]
    return row + dr, col + dc


def contributing_area(accumulation: Grid) -> Grid:
    """Upstream area in square metres (cell count x cell area)."""
    dx, dy = accumulation.cell_size_meters()
    area = accumulation.data.astype(np.float64) * dx * dy
    area[accumulation.nodata_mask | (accumulation.data == 0)] = np.nan
    return accumulation.like(area, nodata=np.nan)
