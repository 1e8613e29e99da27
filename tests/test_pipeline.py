"""
Tests for the site analysis pipeline.

Uses the 9x9 V-valley: with a stream threshold of 10 the stream network is
the valley floor from row 3 down, so a site near the bottom of the valley
snaps onto it and a site in the far corner does not.
"""

import json

import numpy as np
import pytest

from src.watershed.errors import Cancelled, InvalidInput, NoStreamWithinRadius
from src.watershed.pipeline import (
    AnalysisConfig,
    CancellationToken,
    SiteResult,
    TerrainAnalysis,
    analyze_site,
    analyze_sites,
    analyze_terrain,
    load_sites_csv,
)
from src.watershed.raster_io import METADATA_FILE
from src.watershed.snapping import PourPoint


@pytest.fixture
def valley_config():
    return AnalysisConfig(stream_threshold=10, snap_distance=30.0, max_workers=2)


@pytest.fixture
def valley_analysis(v_valley_dem, valley_config):
    return analyze_terrain(v_valley_dem, valley_config)


class TestAnalysisConfig:
    """Tests for analysis settings."""

    def test_defaults_come_from_config_module(self):
        from src import config

        cfg = AnalysisConfig()
        assert cfg.stream_threshold == config.DEFAULT_STREAM_THRESHOLD
        assert cfg.max_breach_distance == config.DEFAULT_MAX_BREACH_DISTANCE
        assert cfg.zoom == config.DEFAULT_ZOOM

    def test_from_dict(self):
        cfg = AnalysisConfig.from_dict({"stream_threshold": 50, "zoom": 12})
        assert cfg.stream_threshold == 50
        assert cfg.zoom == 12

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(InvalidInput, match="resolution"):
            AnalysisConfig.from_dict({"resolution": 30})

    def test_validate_rejects_bad_values(self):
        with pytest.raises(InvalidInput, match="stream_threshold"):
            AnalysisConfig(stream_threshold=0).validate()
        with pytest.raises(InvalidInput, match="max_workers"):
            AnalysisConfig(max_workers=0).validate()


class TestCancellationToken:
    """Tests for cooperative cancellation."""

    def test_not_cancelled_by_default(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled("anything")

    def test_cancel(self):
        token = CancellationToken()
        token.cancel()
        assert token.cancelled
        with pytest.raises(Cancelled, match="routing"):
            token.raise_if_cancelled("routing")


class TestAnalyzeTerrain:
    """Tests for the terrain-wide stages."""

    def test_produces_aligned_grids(self, v_valley_dem, valley_analysis):
        assert isinstance(valley_analysis, TerrainAnalysis)
        for name, grid in valley_analysis.grids().items():
            assert grid.is_aligned(v_valley_dem), name

    def test_streams_follow_valley_floor(self, v_valley_dem, valley_analysis):
        center = v_valley_dem.cols // 2
        assert valley_analysis.streams.data[3:, center].all()
        assert not valley_analysis.streams.data[:, :center - 1].any()

    def test_cancelled_before_start(self, v_valley_dem):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Cancelled):
            analyze_terrain(v_valley_dem, cancel=token)

    def test_save(self, tmp_path, valley_analysis):
        files = valley_analysis.save(tmp_path / "analysis")

        assert "flow_direction" in files
        assert "wetness_index" in files
        with open(tmp_path / "analysis" / METADATA_FILE) as f:
            saved = json.load(f)
        assert saved["metadata"]["config"]["stream_threshold"] == 10


class TestAnalyzeSite:
    """Tests for single-site analysis."""

    def test_outlet_site_covers_valley(self, v_valley_dem, valley_analysis):
        x, y = v_valley_dem.xy(8, 4)
        result = analyze_site(valley_analysis, PourPoint("outlet", x + 3.0, y - 2.0))

        assert result.ok
        assert result.cell_count == v_valley_dem.valid_count
        assert result.area_m2 == pytest.approx(81 * 100.0)
        assert result.snapped_point.snapped
        assert set(result.means) == {"slope", "aspect", "ruggedness", "wetness_index"}

    def test_site_off_stream_snaps(self, v_valley_dem, valley_analysis):
        """A site one cell east of the valley floor snaps onto it."""
        result = analyze_site(valley_analysis, PourPoint("side", *v_valley_dem.xy(5, 5)))
        assert (result.snapped_point.x, result.snapped_point.y) == v_valley_dem.xy(5, 4)
        assert result.cell_count == valley_analysis.flow_accumulation.data[5, 4]

    def test_no_stream_raises(self, v_valley_dem, valley_analysis):
        with pytest.raises(NoStreamWithinRadius):
            analyze_site(valley_analysis, PourPoint("corner", *v_valley_dem.xy(0, 0)))


class TestAnalyzeSites:
    """Tests for the parallel multi-site pipeline."""

    def test_results_keyed_in_input_order(self, v_valley_dem, valley_config):
        points = [
            PourPoint("b", *v_valley_dem.xy(8, 4)),
            PourPoint("a", *v_valley_dem.xy(5, 4)),
            PourPoint("c", *v_valley_dem.xy(4, 4)),
        ]
        results = analyze_sites(v_valley_dem, points, valley_config)

        assert list(results) == ["b", "a", "c"]
        assert all(isinstance(r, SiteResult) and r.ok for r in results.values())
        assert results["b"].cell_count > results["a"].cell_count > results["c"].cell_count

    def test_failed_site_does_not_stop_others(self, v_valley_dem, valley_analysis):
        points = [
            PourPoint("good", *v_valley_dem.xy(8, 4)),
            PourPoint("corner", *v_valley_dem.xy(0, 0)),
        ]
        results = analyze_sites(valley_analysis, points)

        assert results["good"].ok
        assert not results["corner"].ok
        assert isinstance(results["corner"].error, NoStreamWithinRadius)
        assert results["corner"].summary()["error"] is not None

    def test_reuses_terrain_analysis(self, v_valley_dem, valley_analysis):
        results = analyze_sites(valley_analysis, [PourPoint("outlet", *v_valley_dem.xy(8, 4))])
        assert results["outlet"].cell_count == 81

    def test_duplicate_labels_rejected(self, v_valley_dem, valley_analysis):
        point = PourPoint("same", *v_valley_dem.xy(8, 4))
        with pytest.raises(InvalidInput, match="unique"):
            analyze_sites(valley_analysis, [point, point])

    def test_points_crs_requires_grid_crs(self, pit_dem):
        analysis = analyze_terrain(pit_dem, AnalysisConfig(stream_threshold=2))
        with pytest.raises(InvalidInput, match="no CRS"):
            analyze_sites(analysis, [PourPoint("p", 3.5, -3.5)], points_crs="EPSG:4326")

    def test_cancelled_sites_raise(self, v_valley_dem, valley_analysis):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Cancelled):
            analyze_sites(valley_analysis, [PourPoint("outlet", *v_valley_dem.xy(8, 4))], cancel=token)

    def test_summary_record(self, v_valley_dem, valley_analysis):
        result = analyze_sites(valley_analysis, [PourPoint("outlet", *v_valley_dem.xy(8, 4))])["outlet"]
        record = result.summary()

        assert record["label"] == "outlet"
        assert record["cell_count"] == 81
        assert record["snap_distance"] == 0.0
        assert "mean_slope" in record
        assert record["error"] is None


class TestLoadSitesCsv:
    """Tests for reading site tables."""

    def test_reads_points(self, tmp_path):
        path = tmp_path / "sites.csv"
        path.write_text("label,x,y\nupper, 10.5,20\nlower,30,40.25\n")

        points = load_sites_csv(path)
        assert [p.label for p in points] == ["upper", "lower"]
        assert (points[1].x, points[1].y) == (30.0, 40.25)

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "sites.csv"
        path.write_text("name,x,y\na,1,2\n")
        with pytest.raises(InvalidInput, match="label"):
            load_sites_csv(path)

    def test_bad_coordinate(self, tmp_path):
        path = tmp_path / "sites.csv"
        path.write_text("label,x,y\na,one,2\n")
        with pytest.raises(InvalidInput, match=":2"):
            load_sites_csv(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_sites_csv(tmp_path / "nope.csv")
