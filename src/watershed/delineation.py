"""
Watershed delineation over a D8 flow direction grid.

Walks the flow network upstream from an outlet: starting at the outlet cell,
every neighbour whose direction code points into a visited cell is added to
the watershed, until no unvisited cell drains into the visited set.
"""

from typing import Dict, Sequence, Tuple, Union
import logging

import numpy as np
from numba import jit

from src.watershed.errors import InvalidInput, InvalidOutlet
from src.watershed.grid import Grid
from src.watershed.routing import D8_CODE, D8_COL, D8_ROW, FLOW_NODATA
from src.watershed.snapping import PourPoint

logger = logging.getLogger(__name__)

Outlet = Union[PourPoint, Tuple[float, float]]


@jit(nopython=True, cache=True)
def _label_upstream_jit(
    flow_dir: np.ndarray,
    start_row: int,
    start_col: int,
    stop: np.ndarray,
    labels: np.ndarray,
    label: int,
) -> int:
    """
    Breadth-first upstream traversal from (start_row, start_col).

    Unlabelled cells draining into the visited set receive label, except
    cells flagged in stop, which are not entered. Returns the number of
    cells labelled.
    """
    rows, cols = flow_dir.shape
    queue = np.empty(rows * cols, dtype=np.int64)
    head = 0
    tail = 0

    labels[start_row, start_col] = label
    queue[tail] = start_row * cols + start_col
    tail += 1

    while head < tail:
        idx = queue[head]
        head += 1
        r = idx // cols
        c = idx % cols
        for k in range(8):
            # the neighbour at (r - dr, c - dc) drains here if it points along (dr, dc)
            nr = r - D8_ROW[k]
            nc = c - D8_COL[k]
            if 0 <= nr < rows and 0 <= nc < cols:
                if flow_dir[nr, nc] == D8_CODE[k] and labels[nr, nc] == 0 and not stop[nr, nc]:
                    labels[nr, nc] = label
                    queue[tail] = nr * cols + nc
                    tail += 1

    return tail


def _outlet_cell(flow_dir: Grid, outlet: Outlet) -> Tuple[int, int]:
    if isinstance(outlet, PourPoint):
        x, y, name = outlet.x, outlet.y, outlet.label
    else:
        x, y = outlet
        name = f"({x}, {y})"

    try:
        row, col = flow_dir.rowcol(x, y)
    except InvalidInput as e:
        raise InvalidOutlet(f"Outlet {name} is not a valid coordinate: {e}") from e

    if not flow_dir.contains(row, col):
        raise InvalidOutlet(f"Outlet {name} lies outside the flow direction grid")
    if flow_dir.data[row, col] == FLOW_NODATA:
        raise InvalidOutlet(f"Outlet {name} falls on a no-data flow direction cell ({row}, {col})")
    return row, col


def delineate_watershed(flow_dir: Grid, outlet: Outlet) -> Grid:
    """
    Mark every cell that drains to the outlet, the outlet included.

    Parameters
    ----------
    flow_dir : Grid
        D8 flow direction grid from compute_flow_direction().
    outlet : PourPoint or (x, y)
        Outlet coordinate, normally a snapped pour point.

    Returns
    -------
    Grid
        Boolean watershed mask.

    Raises
    ------
    InvalidOutlet
        If the outlet is outside the grid or on a no-data cell.
    """
    row, col = _outlet_cell(flow_dir, outlet)

    labels = np.zeros(flow_dir.shape, dtype=np.int32)
    stop = np.zeros(flow_dir.shape, dtype=np.bool_)
    count = _label_upstream_jit(np.ascontiguousarray(flow_dir.data), row, col, stop, labels, 1)

    logger.debug(f"Watershed at ({row}, {col}): {count:,} cells")
    return flow_dir.like(labels == 1)


def label_watersheds(flow_dir: Grid, outlets: Sequence[Outlet]) -> Tuple[Grid, Dict[int, Outlet]]:
    """
    Label the sub-watersheds of several outlets at once.

    Each cell takes the label of the first outlet on its downstream path, so
    nested outlets split the larger watershed. Labels are 1-based in the
    order outlets were given; 0 means the cell drains to none of them.

    Returns
    -------
    labels : Grid
        int32 label grid (nodata 0).
    legend : dict
        Label -> outlet.
    """
    cells = [_outlet_cell(flow_dir, outlet) for outlet in outlets]
    if len(set(cells)) != len(cells):
        raise InvalidInput("Two or more outlets fall on the same cell")

    stop = np.zeros(flow_dir.shape, dtype=np.bool_)
    for row, col in cells:
        stop[row, col] = True

    data = np.ascontiguousarray(flow_dir.data)
    labels = np.zeros(flow_dir.shape, dtype=np.int32)
    legend = {}
    for label, ((row, col), outlet) in enumerate(zip(cells, outlets), start=1):
        _label_upstream_jit(data, row, col, stop, labels, label)
        legend[label] = outlet

    return flow_dir.like(labels, nodata=0), legend
