"""
GeoTIFF persistence for Grid objects.

Round-trips preserve shape, transform, CRS, no-data value and dtype (boolean
grids are stored as uint8 and tagged so they read back as bool).
"""

from pathlib import Path
from typing import Dict, Optional, Tuple, Union
import datetime
import json
import logging

import numpy as np
import rasterio

from src.watershed.grid import Grid

logger = logging.getLogger(__name__)

BOOL_TAG = "WATERSHED_DTYPE"
METADATA_FILE = "analysis_metadata.json"


def write_grid(grid: Grid, path: Union[str, Path]) -> Path:
    """Write a grid to a single-band, LZW-compressed GeoTIFF."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = grid.data
    is_bool = data.dtype == np.bool_
    if is_bool:
        data = data.astype(np.uint8)

    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=grid.rows,
        width=grid.cols,
        count=1,
        dtype=data.dtype,
        crs=grid.crs,
        transform=grid.transform,
        nodata=grid.nodata,
        compress="lzw",
    ) as dst:
        dst.write(data, 1)
        if is_bool:
            dst.update_tags(**{BOOL_TAG: "bool"})

    logger.debug(f"Wrote {grid.shape} {data.dtype} grid to {path}")
    return path


def read_grid(path: Union[str, Path]) -> Grid:
    """
    Read the first band of a raster into a Grid.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Raster file not found: {path}")

    with rasterio.open(path) as src:
        data = src.read(1)
        if src.tags().get(BOOL_TAG) == "bool":
            data = data.astype(bool)
        crs = src.crs.to_string() if src.crs else None
        return Grid(data=data, transform=src.transform, crs=crs, nodata=src.nodata)


def write_grids(
    grids: Dict[str, Grid],
    directory: Union[str, Path],
    metadata: Optional[Dict] = None,
) -> Dict[str, str]:
    """
    Write named grids as <name>.tif plus a JSON metadata file.

    Returns
    -------
    dict
        Grid name -> written file path.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    files = {}
    for name, grid in grids.items():
        files[name] = str(write_grid(grid, directory / f"{name}.tif"))

    full_metadata = {
        "timestamp": datetime.datetime.now().isoformat(),
        "files": files,
        "metadata": metadata or {},
    }
    with open(directory / METADATA_FILE, "w") as f:
        json.dump(full_metadata, f, indent=2)

    logger.info(f"Saved {len(files)} grids to {directory}")
    return files


def read_grids(directory: Union[str, Path]) -> Tuple[Dict[str, Grid], Dict]:
    """Read grids written by write_grids() together with their metadata."""
    directory = Path(directory)
    metadata_file = directory / METADATA_FILE
    if not metadata_file.exists():
        raise FileNotFoundError(f"No analysis metadata in {directory}")

    with open(metadata_file) as f:
        full_metadata = json.load(f)

    grids = {name: read_grid(directory / Path(path).name) for name, path in full_metadata["files"].items()}
    return grids, full_metadata.get("metadata", {})
