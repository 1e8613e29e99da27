"""Pytest configuration and fixtures for watershed engine tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import pytest
import numpy as np

from src.watershed.grid import Grid


def make_v_valley(rows=9, cols=9):
    """V-shaped valley draining south along the centre column."""
    i, j = np.mgrid[0:rows, 0:cols]
    center = cols // 2
    return (100.0 + np.abs(j - center) * 2.0 - i).astype(np.float64)


@pytest.fixture
def v_valley_dem():
    """9x9 V-valley DEM with 10 m cells in a projected CRS."""
    return Grid.from_array(make_v_valley(), cell_size=10.0, origin=(500000.0, 4000090.0), crs="EPSG:32611")


@pytest.fixture
def pit_dem():
    """
    7x7 plane tilted down toward the east edge with a pit at the centre.

    The pit (95) sits 1 below its lowest neighbour and drains once a
    3-cell channel is cut to the east edge (94).
    """
    _, j = np.mgrid[0:7, 0:7]
    z = 100.0 - j
    z[3, 3] = 95.0
    return Grid.from_array(z, cell_size=1.0)


@pytest.fixture
def nodata_border_dem():
    """
    5x5 flat grid at 100 with a no-data border; the interior cell of the
    valid 3x3 block is lowered by 10.
    """
    z = np.full((5, 5), -9999.0)
    z[1:4, 1:4] = 100.0
    z[2, 2] = 90.0
    return Grid.from_array(z, cell_size=1.0, nodata=-9999.0)


@pytest.fixture
def terrace_dem():
    """
    9x9 flat terrace at 50 inside a rim at 60, drained eastward by a row of
    10s that reaches the edge. Has flats but no pits.
    """
    z = np.full((9, 9), 60.0)
    z[1:8, 1:8] = 50.0
    z[4, 5:] = 10.0
    return Grid.from_array(z, cell_size=1.0)


@pytest.fixture
def shallow_rim_dem():
    """
    5x5 block at 60 with a pit (50) at (2, 1) held in by two rim cells at
    50.4, beyond which the east edge drops to 0.
    """
    z = np.full((5, 5), 60.0)
    z[2, 1] = 50.0
    z[2, 2:4] = 50.4
    z[2, 4] = 0.0
    return Grid.from_array(z, cell_size=1.0)


@pytest.fixture
def sample_dem():
    """Create a small synthetic DEM with a central peak for metric tests."""
    x = np.linspace(-10, 10, 40)
    y = np.linspace(-10, 10, 40)
    X, Y = np.meshgrid(x, y)
    Z = 1000 + 100 * np.exp(-(X**2 + Y**2) / 50)
    return Grid.from_array(Z.astype(np.float64), cell_size=30.0, origin=(0.0, 1200.0))


@pytest.fixture
def project_root():
    """Get the project root directory."""
    return Path(__file__).parent.parent
