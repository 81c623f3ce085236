"""
Pytest configuration and fixtures
"""
import re
import threading
from typing import Callable, Dict, Any, List, Optional, Union

import numpy as np
import pytest

from plantakeoff.domain.models.plan import RasterImage
from plantakeoff.infrastructure.extractors.vision_processor import VisionModelClient
from plantakeoff.services.pipeline_contracts import AnalysisRequest
from plantakeoff.services.vision_config import ScanConfig

Reply = Union[str, Exception]

SCENARIO_B_BOUNDARY = '{"minX": 0.2, "maxX": 0.8, "minY": 0.1, "maxY": 0.9, "confidence": 0.95}'


def prompt_kind(prompt: str) -> str:
    if "BUILDING DRAWING ONLY" in prompt:
        return "boundary"
    if "List every piece of text" in prompt:
        return "text"
    return "match"


def prompt_pattern(prompt: str) -> Optional[str]:
    match = re.search(r"Pattern: (.+)", prompt)
    return match.group(1).strip() if match else None


class FakeVisionClient(VisionModelClient):
    """
    Scripted VLM. Boundary and text answers are fixed; match answers come from
    a responder called with (pattern name, call number) that returns text or an
    exception to raise.
    """

    def __init__(
        self,
        boundary: Reply = SCENARIO_B_BOUNDARY,
        text: Reply = "[]",
        responder: Optional[Callable[[str, int], Reply]] = None,
        concurrency: int = 1
    ):
        self.boundary = boundary
        self.text = text
        self.responder = responder or (lambda pattern, n: '{"matches": []}')
        self.concurrency = concurrency
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._match_calls = 0

    @property
    def max_concurrent_requests(self) -> int:
        return self.concurrency

    @property
    def match_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == "match"]

    def generate(self, image_bytes: bytes, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        kind = prompt_kind(prompt)
        with self._lock:
            self.calls.append({
                "kind": kind,
                "pattern": prompt_pattern(prompt),
                "options": options or {},
                "thread": threading.current_thread().name,
                "bytes": len(image_bytes),
            })
            if kind == "match":
                self._match_calls += 1
                number = self._match_calls

        if kind == "boundary":
            reply = self.boundary
        elif kind == "text":
            reply = self.text
        else:
            reply = self.responder(prompt_pattern(prompt), number)

        if isinstance(reply, Exception):
            raise reply
        return reply


def make_plan_array(width: int = 2000, height: int = 1500) -> np.ndarray:
    """White sheet with a hatched, outlined building in the Scenario B footprint"""
    pixels = np.full((height, width, 3), 255, dtype=np.uint8)
    x0, x1 = int(width * 0.2), int(width * 0.8)
    y0, y1 = int(height * 0.1), int(height * 0.9)
    pixels[y0:y1, x0:x1] = 160  # hatch fill
    wall = 20
    pixels[y0:y0 + wall, x0:x1] = 0
    pixels[y1 - wall:y1, x0:x1] = 0
    pixels[y0:y1, x0:x0 + wall] = 0
    pixels[y0:y1, x1 - wall:x1] = 0
    return pixels


@pytest.fixture
def plan_raster() -> RasterImage:
    return RasterImage.from_array(make_plan_array())


@pytest.fixture
def blank_raster() -> RasterImage:
    return RasterImage.blank(1000, 800)


@pytest.fixture
def scan_config() -> ScanConfig:
    return ScanConfig(
        tile_size=672,
        tile_overlap=64,
        min_confidence=0.7,
        max_workers=1,
        analysis_timeout_ms=60_000,
        request_timeout_seconds=30.0,
        render_dpi=300,
        text_region_dir="/tmp/plantakeoff_test_text_regions",
    )


@pytest.fixture
def legend_payload() -> List[Dict[str, Any]]:
    return [
        {"name": "Door", "category": "door", "code": "334"},
        {"name": "Wall hatch", "category": "wall", "measurement": "area", "code": "331"},
        {"name": "Section marker", "category": "marker", "measurement": "none"},
    ]


@pytest.fixture
def analysis_request(legend_payload) -> AnalysisRequest:
    return AnalysisRequest.model_validate({
        "tileSize": 672,
        "overlap": 64,
        "minConfidence": 0.7,
        "legend": legend_payload,
        "scaleNotation": "1:100",
        "timeoutMs": 60_000,
    })
