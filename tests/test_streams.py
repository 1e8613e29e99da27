"""
Tests for stream extraction by accumulation threshold.
"""

import numpy as np
import pytest

from src.watershed.errors import InvalidInput
from src.watershed.grid import Grid
from src.watershed.routing import route_flow
from src.watershed.streams import extract_streams, threshold_from_area


class TestExtractStreams:
    """Tests for extract_streams()."""

    def test_constant_accumulation_below_threshold(self):
        """Constant 500 with threshold 300 marks every cell."""
        accumulation = Grid.from_array(np.full((4, 6), 500, dtype=np.int64), nodata=0)
        streams = extract_streams(accumulation, 300)
        assert streams.data.dtype == bool
        assert streams.data.all()

    def test_constant_accumulation_above_threshold(self):
        """Constant 500 with threshold 600 marks nothing."""
        accumulation = Grid.from_array(np.full((4, 6), 500, dtype=np.int64), nodata=0)
        assert not extract_streams(accumulation, 600).data.any()

    def test_threshold_is_inclusive(self):
        accumulation = Grid.from_array(np.array([[4, 5, 6]], dtype=np.int64), nodata=0)
        np.testing.assert_array_equal(extract_streams(accumulation, 5).data, [[False, True, True]])

    def test_nodata_never_stream(self):
        accumulation = Grid.from_array(np.array([[0, 5]], dtype=np.int64), nodata=0)
        np.testing.assert_array_equal(extract_streams(accumulation, 1).data, [[False, True]])

    def test_v_valley_stream_is_centre_column(self, v_valley_dem):
        """With a high threshold only the valley floor is a stream."""
        _, accumulation = route_flow(v_valley_dem)
        streams = extract_streams(accumulation, 20)
        center = v_valley_dem.cols // 2

        assert streams.data[-1, center]
        off_centre = np.delete(streams.data, center, axis=1)
        assert not off_centre[:-1].any()

    def test_rejects_threshold_below_one(self):
        accumulation = Grid.from_array(np.ones((2, 2), dtype=np.int64), nodata=0)
        with pytest.raises(InvalidInput, match=">= 1"):
            extract_streams(accumulation, 0)


class TestThresholdFromArea:
    """Tests for converting an area to a cell-count threshold."""

    def test_rounds_up(self):
        grid = Grid.from_array(np.zeros((2, 2)), cell_size=10.0)
        assert threshold_from_area(grid, 250.0) == 3

    def test_at_least_one(self):
        grid = Grid.from_array(np.zeros((2, 2)), cell_size=10.0)
        assert threshold_from_area(grid, 1.0) == 1

    def test_rejects_non_positive(self):
        grid = Grid.from_array(np.zeros((2, 2)))
        with pytest.raises(InvalidInput):
            threshold_from_area(grid, 0.0)
