"""
Tests for tile grid generation and tile scanning
"""

import json
import threading
import time
from dataclasses import replace

import numpy as np
import pytest

from plantakeoff.domain.models.plan import LegendPattern, MeasurementType, RasterImage, Tile
from plantakeoff.infrastructure.extractors.tile_scanner import TileScanner, generate_tile_grid
from plantakeoff.services.error_types import VisionTimeoutError
from plantakeoff.services.pipeline_contracts import TileMatchPayload

from conftest import FakeVisionClient

ONE_MATCH = json.dumps({"matches": [{"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2, "confidence": 0.9}]})

PATTERNS = [
    LegendPattern(name=f"Symbol {i}", category=f"cat{i}", measurement=MeasurementType.COUNT)
    for i in range(5)
]


class TestTileGrid:
    """Grid geometry"""

    def test_scenario_a_two_by_two(self):
        tiles = generate_tile_grid(1000, 800, tile_size=672, overlap=100)

        assert len(tiles) == 4
        assert [(t.row, t.column) for t in tiles] == [(0, 0), (0, 1), (1, 0), (1, 1)]
        assert [(t.x, t.y, t.width, t.height) for t in tiles] == [
            (0, 0, 672, 672),
            (572, 0, 428, 672),
            (0, 572, 672, 228),
            (572, 572, 428, 228),
        ]
        # Neighbours share a 100 px band
        assert tiles[0].x + tiles[0].width - tiles[1].x == 100
        assert tiles[0].y + tiles[0].height - tiles[2].y == 100

    @pytest.mark.parametrize("width,height,tile_size,overlap", [
        (1000, 800, 672, 100),
        (672, 672, 672, 64),
        (100, 50, 672, 64),
        (2000, 1300, 500, 0),
        (1345, 999, 300, 150),
    ])
    def test_union_covers_raster(self, width, height, tile_size, overlap):
        covered = np.zeros((height, width), dtype=bool)
        for tile in generate_tile_grid(width, height, tile_size, overlap):
            assert tile.x + tile.width <= width
            assert tile.y + tile.height <= height
            covered[tile.y:tile.y + tile.height, tile.x:tile.x + tile.width] = True

        assert covered.all()

    def test_raster_smaller_than_tile_gives_one_clipped_tile(self):
        tiles = generate_tile_grid(300, 200, tile_size=672, overlap=64)

        assert len(tiles) == 1
        assert (tiles[0].width, tiles[0].height) == (300, 200)

    @pytest.mark.parametrize("overlap", [672, 700, -1])
    def test_invalid_overlap_rejected(self, overlap):
        with pytest.raises(ValueError):
            generate_tile_grid(1000, 800, tile_size=672, overlap=overlap)


class TestMatchTranslation:
    """Tile fractions to full-raster pixels"""

    def test_local_to_global(self):
        tile = Tile(index=1, row=0, column=1, x=600, y=0, width=400, height=600, overlap=64)
        pattern = LegendPattern(name="Door", category="door", code="334")
        match = TileMatchPayload(x=0.5, y=0.25, width=0.1, height=0.1, confidence=0.9)

        detection = TileScanner.to_detection(match, tile, pattern)

        assert detection.bbox == (800, 150, 40, 60)
        assert detection.tile_origin == (600, 0)
        assert detection.source_tiles == [1]
        assert detection.classification_code == "334"

    def test_match_clipped_to_tile(self):
        tile = Tile(index=0, row=0, column=0, x=600, y=0, width=400, height=600, overlap=64)
        match = TileMatchPayload(x=0.9, y=0.0, width=0.5, height=0.5, confidence=0.9)

        detection = TileScanner.to_detection(match, tile, LegendPattern(name="Door", category="door"))

        assert detection.bbox == (960, 0, 40, 300)


class TestTileScan:
    """Request loop behaviour"""

    def test_min_confidence_filter(self, scan_config):
        answer = json.dumps({"matches": [
            {"x": 0.1, "y": 0.1, "width": 0.1, "height": 0.1, "confidence": 0.9},
            {"x": 0.5, "y": 0.5, "width": 0.1, "height": 0.1, "confidence": 0.5},
        ]})
        client = FakeVisionClient(responder=lambda pattern, n: answer)
        raster = RasterImage.blank(500, 500)

        result = TileScanner(client, scan_config).scan(raster, PATTERNS[:1])

        assert len(result.detections) == 1
        assert result.detections[0].confidence == pytest.approx(0.9)
        assert result.requests_issued == 1
        assert result.requests_failed == 0

    def test_invalid_matches_dropped(self, scan_config):
        answer = json.dumps({"matches": [
            {"x": 1.5, "y": 0.1, "width": 0.1, "height": 0.1, "confidence": 0.9},
            {"x": 0.1, "y": 0.1, "confidence": 0.9},
            {"x": 0.2, "y": 0.2, "width": 0.1, "height": 0.1, "confidence": 0.95},
        ]})
        client = FakeVisionClient(responder=lambda pattern, n: answer)

        result = TileScanner(client, scan_config).scan(RasterImage.blank(500, 500), PATTERNS[:1])

        assert len(result.detections) == 1
        assert result.detections[0].confidence == pytest.approx(0.95)

    def test_declined_answer_is_not_a_failure(self, scan_config):
        client = FakeVisionClient(responder=lambda pattern, n: "No matches found in this tile.")

        result = TileScanner(client, scan_config).scan(RasterImage.blank(500, 500), PATTERNS[:1])

        assert result.detections == []
        assert result.requests_failed == 0

    def test_unparsable_answer_counts_as_failed_request(self, scan_config):
        client = FakeVisionClient(responder=lambda pattern, n: "there is a door near the top, probably")

        result = TileScanner(client, scan_config).scan(RasterImage.blank(500, 500), PATTERNS[:1])

        assert result.detections == []
        assert result.requests_failed == 1
        assert result.failures[0].tile_index == 0

    def test_requests_issued_tile_major_in_legend_order(self, scan_config):
        client = FakeVisionClient()
        config = replace(scan_config, tile_overlap=100)

        TileScanner(client, config).scan(RasterImage.blank(1000, 800), PATTERNS[:2])

        assert [c["pattern"] for c in client.match_calls] == ["Symbol 0", "Symbol 1"] * 4

    def test_scenario_c_three_timeouts_of_twenty(self, scan_config):
        """3 of 20 requests time out: result returned, not timed out, failed ones add nothing"""
        failing = {2, 7, 13}

        def responder(pattern, n):
            if n in failing:
                return VisionTimeoutError("request timed out")
            return ONE_MATCH

        client = FakeVisionClient(responder=responder)
        config = replace(scan_config, tile_overlap=100)

        result = TileScanner(client, config).scan(RasterImage.blank(1000, 800), PATTERNS)

        assert result.requests_total == 20
        assert result.requests_issued == 20
        assert result.requests_failed == 3
        assert result.timed_out is False
        assert len(result.detections) == 17

    def test_request_timeout_capped_by_config(self, scan_config):
        client = FakeVisionClient()
        config = replace(scan_config, request_timeout_seconds=5.0)

        TileScanner(client, config).scan(RasterImage.blank(500, 500), PATTERNS[:1])

        assert 0 < client.match_calls[0]["options"]["timeout"] <= 5.0

    def test_expired_deadline_returns_empty_partial_result(self, scan_config):
        client = FakeVisionClient(responder=lambda pattern, n: ONE_MATCH)

        result = TileScanner(client, scan_config).scan(
            RasterImage.blank(500, 500), PATTERNS, deadline=time.monotonic() - 1
        )

        assert result.timed_out is True
        assert result.requests_issued == 0
        assert result.requests_skipped == 5
        assert result.detections == []

    def test_deadline_during_scan_keeps_partial_detections(self, scan_config):
        def slow(pattern, n):
            time.sleep(0.05)
            return ONE_MATCH

        client = FakeVisionClient(responder=slow)
        config = replace(scan_config, tile_overlap=100)

        result = TileScanner(client, config).scan(
            RasterImage.blank(1000, 800), PATTERNS, deadline=time.monotonic() + 0.3
        )

        assert result.timed_out is True
        assert 0 < result.requests_issued < 20
        assert len(result.detections) == result.requests_issued

    def test_cancellation_stops_issuing_requests(self, scan_config):
        cancel = threading.Event()

        def responder(pattern, n):
            if n == 3:
                cancel.set()
            return ONE_MATCH

        client = FakeVisionClient(responder=responder)

        result = TileScanner(client, scan_config).scan(
            RasterImage.blank(500, 500), PATTERNS, cancel_token=cancel
        )

        assert result.cancelled is True
        assert result.timed_out is False
        assert result.requests_issued == 3
        assert len(result.detections) == 3


class TestPooledScan:
    """Opt-in bounded concurrency"""

    def test_pool_matches_sequential_results(self, scan_config):
        config = replace(scan_config, tile_overlap=100)
        raster = RasterImage.blank(1000, 800)

        sequential = TileScanner(FakeVisionClient(responder=lambda p, n: ONE_MATCH), config).scan(raster, PATTERNS)
        pooled_client = FakeVisionClient(responder=lambda p, n: ONE_MATCH, concurrency=4)
        pooled = TileScanner(pooled_client, replace(config, max_workers=4)).scan(raster, PATTERNS)

        assert [(d.category, d.bbox) for d in pooled.detections] == [
            (d.category, d.bbox) for d in sequential.detections
        ]
        assert pooled.requests_issued == 20
        assert any(c["thread"].startswith("TileScan") for c in pooled_client.match_calls)

    def test_pool_capped_by_client_capability(self, scan_config):
        client = FakeVisionClient(responder=lambda p, n: ONE_MATCH, concurrency=1)

        TileScanner(client, replace(scan_config, max_workers=8)).scan(RasterImage.blank(500, 500), PATTERNS)

        assert {c["thread"] for c in client.match_calls} == {threading.current_thread().name}

    def test_pool_cancellation(self, scan_config):
        cancel = threading.Event()
        cancel.set()
        client = FakeVisionClient(responder=lambda p, n: ONE_MATCH, concurrency=4)

        result = TileScanner(client, replace(scan_config, max_workers=4)).scan(
            RasterImage.blank(1000, 800), PATTERNS, cancel_token=cancel
        )

        assert result.cancelled is True
        assert result.requests_issued == 0
