"""
Text Region Extractor / Redactor
Finds dimension strings, labels and legend text, stores them, and whites them out
so the tile scanner only sees drawing geometry
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

import numpy as np

from plantakeoff.domain.models.plan import RasterImage, TextCategory, TextRegion
from plantakeoff.infrastructure.extractors.vision_processor import VisionModelClient
from plantakeoff.services.error_types import TextParseFailure, log_error_with_context
from plantakeoff.services.strict_json_parser import ParseFailure, StrictJSONParser
from plantakeoff.services.text_region_store import TextRegionStore
from plantakeoff.services.vision_config import ScanConfig

logger = logging.getLogger(__name__)

TEXT_PROMPT = """List every piece of text visible on this architectural plan.

Group adjacent characters that belong together (one dimension string, one room
name, one legend entry) into a single item. For each item give its top-left
corner and size as fractions of the image (0.0-1.0) and a category:
dimension, label, legend, title or other.

Return ONLY a JSON array:
[{"text": "3.65", "x": 0.41, "y": 0.12, "width": 0.03, "height": 0.01, "category": "dimension"}]

If there is no text, return [].
"""

# "3.65" 0.41 0.12  |  "Kitchen": (0.2, 0.3)
TEXT_LINE_PATTERN = re.compile(
    r'"([^"\n]+)"\s*[:,]?\s*\(?\s*(\d*\.\d+|\d+)\s*[,;\s]\s*(\d*\.\d+|\d+)'
)

DIMENSION_PATTERNS = [
    re.compile(r'^\d+(?:[.,]\d+)?\s*(?:m|cm|mm|m²|m2|qm)?$', re.IGNORECASE),
    re.compile(r'^\d+\s*\'\s*-?\s*\d*(?:\s*\d+/\d+)?\s*"?$'),  # 12'-6"
    re.compile(r'^\d+(?:[.,]\d+)?\s*[x×]\s*\d+(?:[.,]\d+)?$', re.IGNORECASE),  # 3.00 x 4.50
]

TITLE_KEYWORDS = ("scale", "maßstab", "project", "projekt", "drawing", "sheet", "blatt", "date", "datum")
LEGEND_KEYWORDS = ("legend", "legende", "key")


def infer_category(text: str) -> TextCategory:
    """Guess a category from the text alone"""
    stripped = text.strip()
    if any(pattern.match(stripped) for pattern in DIMENSION_PATTERNS):
        return TextCategory.DIMENSION
    lowered = stripped.lower()
    if any(keyword in lowered for keyword in LEGEND_KEYWORDS):
        return TextCategory.LEGEND
    if any(keyword in lowered for keyword in TITLE_KEYWORDS):
        return TextCategory.TITLE
    if re.search(r'[a-zA-ZäöüÄÖÜß]', stripped):
        return TextCategory.LABEL
    return TextCategory.OTHER


@dataclass
class RedactionResult:
    """Cleaned raster plus the text that was removed from it"""
    cleaned: RasterImage
    regions: List[TextRegion] = field(default_factory=list)
    method: str = "none"  # json variants, 'regex' or 'none'
    content_ratio: float = 1.0
    over_redaction_suspected: bool = False
    parse_failure: Optional[str] = None
    stored_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "regions": len(self.regions),
            "method": self.method,
            "content_ratio": round(self.content_ratio, 4),
            "over_redaction_suspected": self.over_redaction_suspected,
            "parse_failure": self.parse_failure,
            "stored_at": self.stored_at,
        }


class TextRegionRedactor:
    """One VLM request for text groups, then white-out on a copy of the raster"""

    def __init__(
        self,
        vision_client: VisionModelClient,
        store: Optional[TextRegionStore] = None,
        config: Optional[ScanConfig] = None
    ):
        self.vision_client = vision_client
        self.store = store
        self.config = config or ScanConfig()

    def process(self, raster: RasterImage, job_id: str, deadline: Optional[float] = None) -> RedactionResult:
        """Extract, persist and redact; never raises on VLM or parse problems"""
        regions, method, failure = self.extract(raster, deadline)

        stored_at = None
        if self.store is not None:
            try:
                stored_at = self.store.save(job_id, regions)
            except OSError as e:
                logger.warning(f"Could not persist text regions for job {job_id}: {e}")

        cleaned = self.redact(raster, regions)
        content_ratio = self.content_ratio(cleaned)
        suspected = content_ratio < self.config.min_content_ratio
        if suspected:
            logger.warning(
                f"Only {content_ratio:.1%} of the raster is non-white after redacting "
                f"{len(regions)} text regions; over-redaction suspected"
            )

        logger.info(f"Redacted {len(regions)} text regions (method: {method})")
        return RedactionResult(
            cleaned=cleaned,
            regions=regions,
            method=method,
            content_ratio=content_ratio,
            over_redaction_suspected=suspected,
            parse_failure=failure,
            stored_at=stored_at,
        )

    def extract(
        self,
        raster: RasterImage,
        deadline: Optional[float] = None
    ) -> Tuple[List[TextRegion], str, Optional[str]]:
        """
        Ask the VLM for text groups

        Args:
            deadline: time.monotonic() value bounding the request timeout

        Returns:
            (regions in raster pixels, parse method, failure reason or None)
        """
        overview = raster.downscaled(self.config.overview_max_side)
        try:
            content = self.vision_client.generate_for_raster(
                overview, TEXT_PROMPT, {"timeout": self.config.request_timeout(deadline)}
            )
        except Exception as e:
            error = TextParseFailure(f"Text request failed: {e}")
            log_error_with_context(error, {"stage": "text_redaction"})
            return [], "none", "request_failed"

        parsed = StrictJSONParser.parse_array(content)
        if parsed.ok:
            regions = self._regions_from_items(parsed.value, raster)
            return regions, parsed.method, None

        if parsed.reason == ParseFailure.DECLINED:
            logger.info("VLM reports no text on the plan")
            return [], "none", None

        error = TextParseFailure(
            "Text answer was not a JSON array",
            {"reason": parsed.reason.value, "excerpt": parsed.detail[:100]}
        )
        log_error_with_context(error, {"stage": "text_redaction"})

        regions = self.parse_fallback(content, raster)
        if regions:
            logger.info(f"Recovered {len(regions)} text regions by pattern fallback")
            return regions, "regex", parsed.reason.value
        return [], "none", parsed.reason.value

    def _regions_from_items(self, items: List[Any], raster: RasterImage) -> List[TextRegion]:
        regions = []
        for item in items:
            if not isinstance(item, dict) or not str(item.get("text", "")).strip():
                continue
            try:
                x = float(item["x"])
                y = float(item["y"])
                width = float(item.get("width", self.config.fallback_text_width))
                height = float(item.get("height", self.config.fallback_text_height))
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping text item without coordinates: {item}")
                continue

            try:
                category = TextCategory(str(item.get("category", "")).lower())
            except ValueError:
                category = infer_category(str(item["text"]))

            region = self._to_region(str(item["text"]), x, y, width, height, category, raster)
            if region is not None:
                regions.append(region)
        return regions

    def parse_fallback(self, content: str, raster: RasterImage) -> List[TextRegion]:
        """Scan line by line for "text" x y triples and give each a default box"""
        regions = []
        for line in (content or "").splitlines():
            for match in TEXT_LINE_PATTERN.finditer(line):
                text = match.group(1).strip()
                region = self._to_region(
                    text,
                    float(match.group(2)),
                    float(match.group(3)),
                    self.config.fallback_text_width,
                    self.config.fallback_text_height,
                    infer_category(text),
                    raster,
                )
                if region is not None:
                    regions.append(region)
        return regions

    @staticmethod
    def _to_region(
        text: str,
        x: float,
        y: float,
        width: float,
        height: float,
        category: TextCategory,
        raster: RasterImage
    ) -> Optional[TextRegion]:
        if not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0) or width <= 0 or height <= 0:
            return None
        width = min(width, 1.0 - x)
        height = min(height, 1.0 - y)
        px = min(int(round(x * raster.width)), raster.width - 1)
        py = min(int(round(y * raster.height)), raster.height - 1)
        return TextRegion(
            text=text,
            x=px,
            y=py,
            width=max(1, min(int(round(width * raster.width)), raster.width - px)),
            height=max(1, min(int(round(height * raster.height)), raster.height - py)),
            category=category,
            x_fraction=x,
            y_fraction=y,
            width_fraction=width,
            height_fraction=height,
        )

    def redact(self, raster: RasterImage, regions: List[TextRegion]) -> RasterImage:
        """White out each padded region in a copy; the input raster is untouched"""
        if not regions:
            return raster
        buffer = raster.writable_copy()
        pad = self.config.redaction_padding
        for region in regions:
            x0 = max(0, region.x - pad)
            y0 = max(0, region.y - pad)
            x1 = min(raster.width, region.x + region.width + pad)
            y1 = min(raster.height, region.y + region.height + pad)
            buffer[y0:y1, x0:x1] = 255
        return RasterImage(pixels=buffer)

    def content_ratio(self, raster: RasterImage) -> float:
        """Fraction of pixels darker than paper"""
        gray = raster.grayscale()
        return float(np.count_nonzero(gray < self.config.white_threshold) / gray.size)
