"""
Tile Scanner
Walks the cleaned plan in VLM-sized overlapping tiles and asks, per tile and legend
pattern, where that pattern occurs. Matches come back in tile fractions and are
translated to full-raster pixels.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

from plantakeoff.domain.models.plan import Detection, LegendPattern, RasterImage, Tile
from plantakeoff.infrastructure.extractors.vision_processor import VisionModelClient
from plantakeoff.services.error_types import TileRequestFailure, log_error_with_context
from plantakeoff.services.pipeline_contracts import TileMatchPayload
from plantakeoff.services.strict_json_parser import ParseFailure, StrictJSONParser
from plantakeoff.services.vision_config import ScanConfig

logger = logging.getLogger(__name__)

MATCH_PROMPT = """You are a quantity surveyor reading one tile of an architectural plan.

Find every occurrence of this legend pattern in the image:
  Pattern: {name}
  Category: {category}
{description}
Report each occurrence as a box in fractions of THIS tile (0.0-1.0, top-left origin)
with your confidence (0.0-1.0).

Return ONLY JSON:
{{"matches": [{{"x": 0.10, "y": 0.20, "width": 0.05, "height": 0.08, "confidence": 0.9}}]}}

If the pattern does not occur, return {{"matches": []}}.
"""


def generate_tile_grid(width: int, height: int, tile_size: int, overlap: int) -> List[Tile]:
    """
    Cover a width×height raster with overlapping tiles, row-major.

    Origins sit at multiples of (tile_size - overlap); the last tile of each
    axis is clipped to the raster edge, so neighbours share exactly `overlap` px.
    """
    if tile_size <= 0:
        raise ValueError(f"tile_size must be positive, got {tile_size}")
    if not 0 <= overlap < tile_size:
        raise ValueError(f"overlap must be in [0, tile_size), got {overlap} for tile_size {tile_size}")
    if width <= 0 or height <= 0:
        raise ValueError(f"Cannot tile an empty {width}×{height} raster")

    step = tile_size - overlap

    def origins(extent: int) -> List[int]:
        positions = [0]
        while positions[-1] + tile_size < extent:
            positions.append(positions[-1] + step)
        return positions

    tiles = []
    for row, y in enumerate(origins(height)):
        for column, x in enumerate(origins(width)):
            tiles.append(Tile(
                index=len(tiles),
                row=row,
                column=column,
                x=x,
                y=y,
                width=min(tile_size, width - x),
                height=min(tile_size, height - y),
                overlap=overlap,
            ))
    return tiles


def build_match_prompt(pattern: LegendPattern) -> str:
    description = f"  Description: {pattern.description}\n" if pattern.description else ""
    return MATCH_PROMPT.format(name=pattern.name, category=pattern.category, description=description)


@dataclass
class ScanResult:
    """Raw detections from all tiles plus request accounting"""
    detections: List[Detection]
    tiles: List[Tile]
    requests_total: int
    requests_issued: int = 0
    requests_failed: int = 0
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0
    failures: List[TileRequestFailure] = field(default_factory=list)

    @property
    def requests_skipped(self) -> int:
        return self.requests_total - self.requests_issued

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tiles": len(self.tiles),
            "detections": len(self.detections),
            "requests_total": self.requests_total,
            "requests_issued": self.requests_issued,
            "requests_failed": self.requests_failed,
            "requests_skipped": self.requests_skipped,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
        }


class _DetectionCollector:
    """Lock-guarded sink shared by the workers; closed once the scan returns"""

    def __init__(self):
        self._lock = threading.Lock()
        self._closed = False
        self._results: Dict[Tuple[int, int], List[Detection]] = {}
        self.failures: List[TileRequestFailure] = []
        self.issued = 0

    def claim(self) -> bool:
        """Count a request about to be sent; False once the scan is over"""
        with self._lock:
            if self._closed:
                return False
            self.issued += 1
            return True

    def add(self, key: Tuple[int, int], detections: List[Detection]):
        with self._lock:
            if not self._closed:
                self._results[key] = detections

    def fail(self, failure: TileRequestFailure):
        with self._lock:
            if not self._closed:
                self.failures.append(failure)

    def close(self):
        with self._lock:
            self._closed = True

    def ordered(self) -> List[Detection]:
        with self._lock:
            return [d for key in sorted(self._results) for d in self._results[key]]


class TileScanner:
    """
    Issues one VLM request per tile × legend pattern.

    Sequential by default; config.max_workers > 1 uses a bounded thread pool,
    capped by what the VLM client says it can take.
    """

    def __init__(self, vision_client: VisionModelClient, config: Optional[ScanConfig] = None):
        self.vision_client = vision_client
        self.config = config or ScanConfig()

    def scan(
        self,
        raster: RasterImage,
        patterns: List[LegendPattern],
        deadline: Optional[float] = None,
        cancel_token: Optional[threading.Event] = None
    ) -> ScanResult:
        """
        Scan every tile for every pattern

        Args:
            raster: Cleaned (cropped, redacted) plan raster
            patterns: Legend patterns, in the order they should be asked
            deadline: time.monotonic() value after which no request is issued
            cancel_token: Set to stop issuing requests

        Returns:
            ScanResult with partial detections on timeout or cancellation
        """
        self.config.validate()
        start_time = time.monotonic()
        if deadline is None:
            deadline = start_time + self.config.analysis_timeout_ms / 1000.0
        cancel_token = cancel_token or threading.Event()

        tiles = generate_tile_grid(raster.width, raster.height, self.config.tile_size, self.config.tile_overlap)
        jobs = [(tile, p_index, pattern) for tile in tiles for p_index, pattern in enumerate(patterns)]
        logger.info(
            f"Scanning {raster.width}×{raster.height} raster: {len(tiles)} tiles × "
            f"{len(patterns)} patterns = {len(jobs)} requests"
        )

        collector = _DetectionCollector()
        tile_images: Dict[int, bytes] = {}
        tile_lock = threading.Lock()

        def tile_png(tile: Tile) -> bytes:
            with tile_lock:
                if tile.index not in tile_images:
                    min_x, min_y, max_x, max_y = tile.bounds
                    tile_images[tile.index] = raster.crop(min_x, min_y, max_x, max_y).to_png_bytes()
                return tile_images[tile.index]

        def run(tile: Tile, p_index: int, pattern: LegendPattern):
            if cancel_token.is_set() or time.monotonic() >= deadline:
                return
            if not collector.claim():
                return
            self._scan_one(tile, p_index, pattern, tile_png(tile), deadline, collector)

        workers = min(self.config.max_workers, max(1, self.vision_client.max_concurrent_requests))
        if workers <= 1:
            timed_out, cancelled = self._run_sequential(jobs, run, deadline, cancel_token)
        else:
            timed_out, cancelled = self._run_pooled(jobs, run, workers, deadline, cancel_token)

        collector.close()
        result = ScanResult(
            detections=collector.ordered(),
            tiles=tiles,
            requests_total=len(jobs),
            requests_issued=collector.issued,
            requests_failed=len(collector.failures),
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=int((time.monotonic() - start_time) * 1000),
            failures=list(collector.failures),
        )
        logger.info(
            f"Scan finished: {len(result.detections)} raw detections, "
            f"{result.requests_issued}/{result.requests_total} requests issued, "
            f"{result.requests_failed} failed, timed_out={timed_out}, cancelled={cancelled}"
        )
        return result

    def _run_sequential(self, jobs, run, deadline: float, cancel_token: threading.Event) -> Tuple[bool, bool]:
        for tile, p_index, pattern in jobs:
            if cancel_token.is_set():
                logger.info("Scan cancelled")
                return False, True
            if time.monotonic() >= deadline:
                logger.warning("Scan deadline reached; returning partial detections")
                return True, False
            run(tile, p_index, pattern)
        return False, cancel_token.is_set()

    def _run_pooled(self, jobs, run, workers: int, deadline: float, cancel_token: threading.Event) -> Tuple[bool, bool]:
        timed_out = False
        cancelled = False
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="TileScan")
        try:
            pending = {executor.submit(run, tile, p_index, pattern) for tile, p_index, pattern in jobs}
            while pending:
                if cancel_token.is_set():
                    logger.info("Scan cancelled")
                    cancelled = True
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Scan deadline reached; returning partial detections")
                    timed_out = True
                    break
                done, pending = wait(pending, timeout=min(remaining, 0.25), return_when=FIRST_COMPLETED)
                for future in done:
                    # run() handles request errors itself; anything here is a bug
                    error = future.exception()
                    if error is not None:
                        logger.error(f"Tile worker crashed: {error}")
            for future in pending:
                future.cancel()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return timed_out, cancelled

    def _scan_one(
        self,
        tile: Tile,
        p_index: int,
        pattern: LegendPattern,
        image_bytes: bytes,
        deadline: float,
        collector: _DetectionCollector
    ):
        timeout = self.config.request_timeout(deadline)
        try:
            content = self.vision_client.generate(image_bytes, build_match_prompt(pattern), {"timeout": timeout})
        except Exception as e:
            failure = TileRequestFailure(tile.index, pattern.name, f"{type(e).__name__}: {e}")
            log_error_with_context(failure, {"stage": "tile_scan", "tile": tile.index})
            collector.fail(failure)
            return

        parsed = StrictJSONParser.parse_array(content, wrapper_keys=("matches", "detections", "items"))
        if not parsed.ok:
            if parsed.reason == ParseFailure.DECLINED:
                collector.add((tile.index, p_index), [])
                return
            failure = TileRequestFailure(tile.index, pattern.name, f"{parsed.reason.value} answer")
            log_error_with_context(failure, {"stage": "tile_scan", "excerpt": parsed.detail[:100]})
            collector.fail(failure)
            return

        detections = []
        for item in parsed.value:
            is_valid, match, error = StrictJSONParser.validate_against_schema(item, TileMatchPayload)
            if not is_valid:
                logger.debug(f"Tile {tile.index} / {pattern.name}: dropping invalid match {item}: {error}")
                continue
            if match.confidence < self.config.min_confidence:
                continue
            detection = self.to_detection(match, tile, pattern)
            if detection is not None:
                detections.append(detection)

        if detections:
            logger.debug(f"Tile {tile.index} / {pattern.name}: {len(detections)} matches")
        collector.add((tile.index, p_index), detections)

    @staticmethod
    def to_detection(match: TileMatchPayload, tile: Tile, pattern: LegendPattern) -> Optional[Detection]:
        """Translate a tile-fraction match to full-raster pixels, clipped to the tile"""
        min_x, min_y, max_x, max_y = tile.bounds
        x0 = min(max_x, max(min_x, tile.x + int(round(match.x * tile.width))))
        y0 = min(max_y, max(min_y, tile.y + int(round(match.y * tile.height))))
        x1 = min(max_x, tile.x + int(round((match.x + match.width) * tile.width)))
        y1 = min(max_y, tile.y + int(round((match.y + match.height) * tile.height)))
        if x1 <= x0 or y1 <= y0:
            return None
        return Detection(
            element_type=pattern.name,
            category=pattern.category,
            confidence=match.confidence,
            bbox=(x0, y0, x1 - x0, y1 - y0),
            tile_origin=(tile.x, tile.y),
            measurement_type=pattern.measurement,
            classification_code=pattern.code,
            source_tiles=[tile.index],
        )
