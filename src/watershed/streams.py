"""
Stream network extraction by flow-accumulation threshold.
"""

import logging
import math

import numpy as np

from src.watershed.errors import InvalidInput
from src.watershed.grid import Grid

logger = logging.getLogger(__name__)


def extract_streams(flow_accum: Grid, threshold: int) -> Grid:
    """
    Mark cells whose flow accumulation reaches threshold.

    A cell is a stream cell iff its accumulation is >= threshold and it is not
    no-data. No smoothing or thinning is applied.

    Parameters
    ----------
    flow_accum : Grid
        Flow accumulation counts from compute_flow_accumulation().
    threshold : int
        Minimum upstream cell count, at least 1.

    Returns
    -------
    Grid
        Boolean stream grid (no nodata sentinel; no-data cells are False).
    """
    if threshold < 1:
        raise InvalidInput(f"Stream threshold must be >= 1, got {threshold}")

    streams = flow_accum.valid_mask & (flow_accum.data >= threshold)
    logger.debug(f"Stream extraction: {int(np.count_nonzero(streams)):,} cells >= {threshold}")
    return flow_accum.like(streams)


def threshold_from_area(grid: Grid, area_m2: float) -> int:
    """
    Convert a minimum contributing area (square metres) to a cell count.

    Rounds up so the resulting threshold never represents less area than
    requested.
    """
    if not area_m2 > 0:
        raise InvalidInput(f"Area must be positive, got {area_m2}")
    dx, dy = grid.cell_size_meters()
    return max(1, int(math.ceil(area_m2 / (dx * dy))))
