"""
Boundary Detector
Locates the building footprint on the sheet and crops away title block, margins and legend
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

import numpy as np

from plantakeoff.domain.models.plan import BoundingRegion, RasterImage
from plantakeoff.infrastructure.extractors.vision_processor import VisionModelClient
from plantakeoff.services.error_types import BoundaryNotFound, log_error_with_context
from plantakeoff.services.strict_json_parser import StrictJSONParser
from plantakeoff.services.vision_config import ScanConfig

logger = logging.getLogger(__name__)

BOUNDARY_PROMPT = """You are looking at a scanned architectural floor plan sheet.

Find the bounding box of the BUILDING DRAWING ONLY. Exclude the title block,
the legend, revision tables, north arrow, sheet margins and any notes.

Return ONLY JSON with the box as fractions of the image width and height (0.0-1.0):
{"minX": 0.0, "maxX": 1.0, "minY": 0.0, "maxY": 1.0, "confidence": 0.0}
"""

KEY_ALIASES = {
    "min_x": ("minX", "min_x", "minx", "x_min"),
    "max_x": ("maxX", "max_x", "maxx", "x_max"),
    "min_y": ("minY", "min_y", "miny", "y_min"),
    "max_y": ("maxY", "max_y", "maxy", "y_max"),
}

DECIMAL_PATTERN = re.compile(r'(?<![\d.])(\d*\.\d+|\d+)(?![\d.])')


@dataclass
class BoundaryVerification:
    """Pixel statistics of the cropped region"""
    white_ratio: float
    dark_ratio: float
    mid_ratio: float
    contains_building: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "white_ratio": round(self.white_ratio, 4),
            "dark_ratio": round(self.dark_ratio, 4),
            "mid_ratio": round(self.mid_ratio, 4),
            "contains_building": self.contains_building,
        }


@dataclass
class BoundaryResult:
    """Cropped building region; always present, possibly from the fallback"""
    region: BoundingRegion
    cropped: RasterImage
    verification: BoundaryVerification
    method: str  # 'json', 'fenced_json', 'embedded_json', 'regex', 'fallback'
    fallback: bool = False
    low_confidence: bool = False
    reason: str = ""

    @property
    def origin(self) -> Tuple[int, int]:
        return self.region.min_x, self.region.min_y

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region": self.region.to_dict(),
            "method": self.method,
            "fallback": self.fallback,
            "low_confidence": self.low_confidence,
            "reason": self.reason,
            "verification": self.verification.to_dict(),
        }


class BoundaryDetector:
    """
    Asks the VLM where the building is, then checks the answer against pixel statistics.

    Any failure degrades to a centre crop; detect() never raises.
    """

    def __init__(self, vision_client: VisionModelClient, config: Optional[ScanConfig] = None):
        self.vision_client = vision_client
        self.config = config or ScanConfig()

    def detect(self, raster: RasterImage, deadline: Optional[float] = None) -> BoundaryResult:
        """Crop to the building; deadline is a time.monotonic() value bounding the VLM request"""
        try:
            region, method = self._locate(raster, deadline)
        except BoundaryNotFound as e:
            log_error_with_context(e, {"stage": "boundary", "size": raster.size})
            return self._fallback(raster, e.message)

        cropped = raster.crop(region.min_x, region.min_y, region.max_x, region.max_y)
        verification = self.verify(cropped)
        if not verification.contains_building:
            logger.warning(
                f"Boundary crop looks empty (dark {verification.dark_ratio:.1%}, "
                f"mid {verification.mid_ratio:.1%}); keeping it with low confidence"
            )

        logger.info(
            f"Building boundary x[{region.min_x},{region.max_x}] y[{region.min_y},{region.max_y}] "
            f"via {method} (confidence {region.confidence:.2f})"
        )
        return BoundaryResult(
            region=region,
            cropped=cropped,
            verification=verification,
            method=method,
            low_confidence=not verification.contains_building,
        )

    def _locate(self, raster: RasterImage, deadline: Optional[float] = None) -> Tuple[BoundingRegion, str]:
        overview = raster.downscaled(self.config.overview_max_side)
        options = {"timeout": self.config.request_timeout(deadline)}
        try:
            content = self.vision_client.generate_for_raster(overview, BOUNDARY_PROMPT, options)
        except Exception as e:
            raise BoundaryNotFound(f"Boundary request failed: {e}") from e

        fractions, confidence, method = self.parse_response(content)

        try:
            return BoundingRegion.from_fractions(
                fractions["min_x"], fractions["max_x"],
                fractions["min_y"], fractions["max_y"],
                raster.width, raster.height,
                confidence=confidence,
            ), method
        except ValueError as e:
            raise BoundaryNotFound(f"Boundary answer violates region invariants: {e}", fractions) from e

    def parse_response(self, content: str) -> Tuple[Dict[str, float], float, str]:
        """
        Read four fractions and a confidence from the answer

        Returns:
            (fractions, confidence, method)

        Raises:
            BoundaryNotFound: Neither JSON nor the decimal fallback yields four values
        """
        parsed = StrictJSONParser.parse_object(content)
        if parsed.ok:
            fractions = self._fractions_from_json(parsed.value)
            if fractions is not None:
                confidence = self._confidence_from_json(parsed.value.get("confidence"))
                return fractions, confidence, parsed.method

        numbers = [float(n) for n in DECIMAL_PATTERN.findall(content or "")]
        numbers = [n for n in numbers if 0.0 <= n <= 1.0]
        if len(numbers) < 4:
            raise BoundaryNotFound(
                "Boundary answer has no usable coordinates",
                {"reason": parsed.reason.value if parsed.reason else "missing_keys"}
            )

        fractions = dict(zip(("min_x", "max_x", "min_y", "max_y"), numbers[:4]))
        confidence = numbers[4] if len(numbers) > 4 else self.config.regex_boundary_confidence
        logger.debug(f"Boundary recovered by regex: {fractions}")
        return fractions, confidence, "regex"

    def _confidence_from_json(self, value: Any) -> float:
        """Missing or non-numeric confidence gets the default; 0-100 answers are read as percentages"""
        try:
            confidence = float(value)
        except (TypeError, ValueError):
            return self.config.regex_boundary_confidence
        if 1.0 < confidence <= 100.0:
            confidence /= 100.0
        return min(1.0, max(0.0, confidence))

    @staticmethod
    def _fractions_from_json(data: Dict[str, Any]) -> Optional[Dict[str, float]]:
        fractions = {}
        for name, aliases in KEY_ALIASES.items():
            value = next((data[key] for key in aliases if key in data), None)
            if value is None:
                return None
            try:
                fractions[name] = float(value)
            except (TypeError, ValueError):
                return None
        return fractions

    def verify(self, cropped: RasterImage) -> BoundaryVerification:
        """Classify pixels as paper, ink or mid-tone and check that the crop holds a drawing"""
        gray = cropped.grayscale()
        total = gray.size
        white = np.count_nonzero(gray >= self.config.white_threshold) / total
        dark = np.count_nonzero(gray < self.config.dark_threshold) / total
        mid = max(0.0, 1.0 - white - dark)
        return BoundaryVerification(
            white_ratio=float(white),
            dark_ratio=float(dark),
            mid_ratio=float(mid),
            contains_building=bool(dark > self.config.min_dark_ratio and mid > self.config.min_mid_ratio),
        )

    def _fallback(self, raster: RasterImage, reason: str) -> BoundaryResult:
        """Centre crop keeping the inner fraction of both axes"""
        margin = (1.0 - self.config.fallback_crop_fraction) / 2
        region = BoundingRegion.from_fractions(
            margin, 1.0 - margin, margin, 1.0 - margin,
            raster.width, raster.height,
            confidence=self.config.fallback_confidence,
        )
        cropped = raster.crop(region.min_x, region.min_y, region.max_x, region.max_y)
        verification = self.verify(cropped)
        logger.warning(
            f"Using centre-crop fallback x[{region.min_x},{region.max_x}] "
            f"y[{region.min_y},{region.max_y}]: {reason}"
        )
        return BoundaryResult(
            region=region,
            cropped=cropped,
            verification=verification,
            method="fallback",
            fallback=True,
            low_confidence=True,
            reason=reason,
        )
