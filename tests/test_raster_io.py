"""
Tests for GeoTIFF persistence of grids.
"""

import json

import numpy as np
import pytest

from src.watershed.grid import Grid
from src.watershed.raster_io import METADATA_FILE, read_grid, read_grids, write_grid, write_grids
from src.watershed.routing import FLOW_NODATA, route_flow


class TestGridRoundTrip:
    """Tests for write_grid()/read_grid()."""

    def test_float_grid_preserves_georeferencing(self, tmp_path, v_valley_dem):
        path = write_grid(v_valley_dem, tmp_path / "dem.tif")
        loaded = read_grid(path)

        np.testing.assert_array_equal(loaded.data, v_valley_dem.data)
        assert loaded.is_aligned(v_valley_dem)
        assert loaded.crs == "EPSG:32611"
        assert loaded.data.dtype == np.float64

    def test_nodata_preserved(self, tmp_path, nodata_border_dem):
        loaded = read_grid(write_grid(nodata_border_dem, tmp_path / "border.tif"))
        assert loaded.nodata == -9999.0
        np.testing.assert_array_equal(loaded.valid_mask, nodata_border_dem.valid_mask)

    def test_bool_grid_reads_back_as_bool(self, tmp_path, v_valley_dem):
        mask = v_valley_dem.like(v_valley_dem.data > 100.0)
        loaded = read_grid(write_grid(mask, tmp_path / "mask.tif"))

        assert loaded.data.dtype == bool
        np.testing.assert_array_equal(loaded.data, mask.data)

    def test_flow_direction_round_trip(self, tmp_path, v_valley_dem):
        direction = route_flow(v_valley_dem).direction
        loaded = read_grid(write_grid(direction, tmp_path / "flow_dir.tif"))

        assert loaded.data.dtype == np.uint8
        assert loaded.nodata == FLOW_NODATA
        np.testing.assert_array_equal(loaded.data, direction.data)

    def test_creates_parent_directories(self, tmp_path, v_valley_dem):
        path = write_grid(v_valley_dem, tmp_path / "nested" / "dir" / "dem.tif")
        assert path.exists()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Raster file not found"):
            read_grid(tmp_path / "missing.tif")


class TestGridCollections:
    """Tests for write_grids()/read_grids()."""

    def test_writes_metadata(self, tmp_path, v_valley_dem):
        files = write_grids({"dem": v_valley_dem}, tmp_path / "out", metadata={"threshold": 20})

        assert set(files) == {"dem"}
        with open(tmp_path / "out" / METADATA_FILE) as f:
            saved = json.load(f)
        assert saved["metadata"] == {"threshold": 20}
        assert "timestamp" in saved

    def test_read_grids(self, tmp_path, v_valley_dem):
        routing = route_flow(v_valley_dem)
        write_grids(
            {"direction": routing.direction, "accumulation": routing.accumulation},
            tmp_path,
            metadata={"source": "valley"},
        )
        grids, metadata = read_grids(tmp_path)

        assert set(grids) == {"direction", "accumulation"}
        np.testing.assert_array_equal(grids["accumulation"].data, routing.accumulation.data)
        assert metadata == {"source": "valley"}

    def test_read_grids_without_metadata(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_grids(tmp_path)
