"""
Plan Raster and Detection Models
Represents the plan raster, its regions, tiles and the element detections found on it
"""

import io
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple

import numpy as np
from PIL import Image


class TextCategory(Enum):
    """Kinds of text found on a plan sheet"""
    DIMENSION = "dimension"  # 3.65, 2'-6", 1200
    LABEL = "label"  # Room names, element callouts
    LEGEND = "legend"  # Legend / key entries
    TITLE = "title"  # Title block content
    OTHER = "other"


class MeasurementType(Enum):
    """How a legend pattern is quantified"""
    AREA = "area"  # Summed real-world area (m²)
    COUNT = "count"  # Number of instances
    NONE = "none"  # Reference element, located but not measured


# Units reported for each measurement type
MEASUREMENT_UNITS = {
    MeasurementType.AREA: "m²",
    MeasurementType.COUNT: "pcs",
    MeasurementType.NONE: "n/a",
}

# Categories quantified by area when the legend does not say
AREA_CATEGORIES = {"wall", "floor", "ceiling", "roof", "slab", "insulation", "screed"}


@dataclass(frozen=True)
class RasterImage:
    """
    Immutable plan raster.

    The pixel buffer is an H×W×C uint8 array flagged read-only. Every stage that
    "changes" an image builds a new RasterImage instead of writing in place.
    """
    pixels: np.ndarray

    def __post_init__(self):
        pixels = np.asarray(self.pixels)
        if pixels.ndim == 2:
            pixels = pixels[:, :, np.newaxis]
        if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise ValueError(f"Raster must be a non-empty H×W×C array, got shape {pixels.shape}")
        if pixels.dtype != np.uint8:
            pixels = np.clip(pixels, 0, 255).astype(np.uint8)
        else:
            pixels = pixels.copy()
        pixels.flags.writeable = False
        object.__setattr__(self, "pixels", pixels)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @classmethod
    def from_array(cls, array: np.ndarray) -> "RasterImage":
        return cls(pixels=array)

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterImage":
        """Build a raster from a Pillow image (converted to RGB unless grayscale)"""
        if image.mode not in ("L", "RGB"):
            image = image.convert("RGB")
        return cls(pixels=np.array(image))

    @classmethod
    def blank(cls, width: int, height: int, channels: int = 3, value: int = 255) -> "RasterImage":
        return cls(pixels=np.full((height, width, channels), value, dtype=np.uint8))

    def writable_copy(self) -> np.ndarray:
        """Return a mutable copy of the pixel buffer for producing a new raster"""
        return np.array(self.pixels, copy=True)

    def crop(self, min_x: int, min_y: int, max_x: int, max_y: int) -> "RasterImage":
        """Crop to [min_x, max_x) × [min_y, max_y), clamped to the raster"""
        x0 = max(0, min(int(min_x), self.width - 1))
        y0 = max(0, min(int(min_y), self.height - 1))
        x1 = max(x0 + 1, min(int(max_x), self.width))
        y1 = max(y0 + 1, min(int(max_y), self.height))
        return RasterImage(pixels=self.pixels[y0:y1, x0:x1])

    def grayscale(self) -> np.ndarray:
        """Luma (ITU-R 601) as a float array, H×W"""
        if self.channels < 3:
            return self.pixels[:, :, 0].astype(np.float32)
        rgb = self.pixels[:, :, :3].astype(np.float32)
        return rgb[:, :, 0] * 0.299 + rgb[:, :, 1] * 0.587 + rgb[:, :, 2] * 0.114

    def downscaled(self, max_side: int) -> "RasterImage":
        """Shrink so the longest side is at most max_side (no-op if already smaller)"""
        if max(self.width, self.height) <= max_side:
            return self
        image = self.to_pil()
        image.thumbnail((max_side, max_side), Image.LANCZOS)
        return RasterImage.from_pil(image)

    def to_pil(self) -> Image.Image:
        if self.channels < 3:
            return Image.fromarray(np.ascontiguousarray(self.pixels[:, :, 0]))
        return Image.fromarray(np.ascontiguousarray(self.pixels[:, :, :3]))

    def to_png_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.to_pil().save(buffer, format="PNG", optimize=True)
        return buffer.getvalue()


@dataclass(frozen=True)
class BoundingRegion:
    """
    Axis-aligned region of a raster in pixel space.

    Normalized fractions are derived from the source dimensions, so both
    representations always agree.
    """
    min_x: int
    max_x: int
    min_y: int
    max_y: int
    source_width: int
    source_height: int
    confidence: float = 1.0

    def __post_init__(self):
        if not (self.min_x < self.max_x and self.min_y < self.max_y):
            raise ValueError(
                f"Degenerate region x[{self.min_x},{self.max_x}] y[{self.min_y},{self.max_y}]"
            )
        if self.min_x < 0 or self.min_y < 0 or self.max_x > self.source_width or self.max_y > self.source_height:
            raise ValueError(
                f"Region x[{self.min_x},{self.max_x}] y[{self.min_y},{self.max_y}] outside "
                f"{self.source_width}×{self.source_height} image"
            )
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence {self.confidence} outside [0, 1]")

    @classmethod
    def from_fractions(
        cls,
        min_x: float,
        max_x: float,
        min_y: float,
        max_y: float,
        width: int,
        height: int,
        confidence: float = 1.0
    ) -> "BoundingRegion":
        """Convert normalized fractions to a pixel region of a width×height image"""
        for value in (min_x, max_x, min_y, max_y):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Boundary fraction {value} outside [0, 1]")
        return cls(
            min_x=int(round(min_x * width)),
            max_x=int(round(max_x * width)),
            min_y=int(round(min_y * height)),
            max_y=int(round(max_y * height)),
            source_width=width,
            source_height=height,
            confidence=confidence,
        )

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y

    @property
    def fractions(self) -> Dict[str, float]:
        return {
            "min_x": self.min_x / self.source_width,
            "max_x": self.max_x / self.source_width,
            "min_y": self.min_y / self.source_height,
            "max_y": self.max_y / self.source_height,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_x": self.min_x,
            "max_x": self.max_x,
            "min_y": self.min_y,
            "max_y": self.max_y,
            "fractions": self.fractions,
            "confidence": self.confidence,
        }


@dataclass
class TextRegion:
    """A group of glyphs (word, dimension string, label) found on the plan"""
    text: str
    x: int  # Pixel rect in the raster the text was read from
    y: int
    width: int
    height: int
    category: TextCategory = TextCategory.OTHER
    x_fraction: float = 0.0
    y_fraction: float = 0.0
    width_fraction: float = 0.0
    height_fraction: float = 0.0

    @property
    def position_key(self) -> str:
        """Stable key used when persisting regions"""
        return f"{self.x}_{self.y}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.position_key,
            "text": self.text,
            "category": self.category.value,
            "bbox": [self.x, self.y, self.width, self.height],
            "fractions": [self.x_fraction, self.y_fraction, self.width_fraction, self.height_fraction],
        }


@dataclass(frozen=True)
class Tile:
    """One VLM-sized window of the raster"""
    index: int
    row: int
    column: int
    x: int  # Origin in the parent raster
    y: int
    width: int
    height: int
    overlap: int

    @property
    def bounds(self) -> Tuple[int, int, int, int]:
        """(min_x, min_y, max_x, max_y) in parent raster space"""
        return self.x, self.y, self.x + self.width, self.y + self.height


@dataclass(frozen=True)
class LegendPattern:
    """A named symbol or hatch from the plan legend"""
    name: str
    category: str
    measurement: MeasurementType = MeasurementType.COUNT
    code: Optional[str] = None  # e.g. DIN 276 cost group "331"
    description: Optional[str] = None

    @property
    def unit(self) -> str:
        return MEASUREMENT_UNITS[self.measurement]


@dataclass
class Detection:
    """One matched instance of a legend pattern, in full-raster pixels"""
    element_type: str
    category: str
    confidence: float
    bbox: Tuple[int, int, int, int]  # x, y, width, height
    tile_origin: Tuple[int, int]
    measurement_type: MeasurementType = MeasurementType.COUNT
    classification_code: Optional[str] = None
    source_tiles: List[int] = field(default_factory=list)
    merged_count: int = 1

    @property
    def pixel_area(self) -> int:
        return int(self.bbox[2]) * int(self.bbox[3])

    @property
    def pixel_measurement(self) -> float:
        """Area in px² for area patterns, 1 per instance for counts"""
        if self.measurement_type == MeasurementType.AREA:
            return float(self.pixel_area)
        if self.measurement_type == MeasurementType.COUNT:
            return 1.0
        return 0.0

    @property
    def bounds(self) -> Tuple[int, int, int, int]:
        x, y, w, h = self.bbox
        return x, y, x + w, y + h


@dataclass
class ScaleCalibration:
    """Pixel ↔ metre conversion derived once per plan"""
    notation: str
    pixels_per_unit: float  # pixels per metre
    dpi: int
    assumed: bool = False
    method: str = "declared"  # 'declared' or 'assumed'
    unit: str = "m"

    def __post_init__(self):
        if self.pixels_per_unit <= 0:
            raise ValueError(f"pixels_per_unit must be > 0, got {self.pixels_per_unit}")

    def length_to_real(self, pixels: float) -> float:
        return pixels / self.pixels_per_unit

    def length_to_pixels(self, metres: float) -> float:
        return metres * self.pixels_per_unit

    def area_to_real(self, pixel_area: float) -> float:
        return pixel_area / (self.pixels_per_unit ** 2)

    def area_to_pixels(self, square_metres: float) -> float:
        return square_metres * (self.pixels_per_unit ** 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notation": self.notation,
            "pixels_per_unit": self.pixels_per_unit,
            "dpi": self.dpi,
            "assumed": self.assumed,
            "method": self.method,
            "unit": self.unit,
        }


@dataclass
class CategorySummary:
    """Quantity and confidence for one element category"""
    category: str
    measurement_type: MeasurementType
    unit: str
    total: float
    instance_count: int
    average_confidence: float
    needs_review: bool
    provisional: bool = False  # Computed on an assumed scale


@dataclass
class DetectedError:
    """A consistency problem found in the takeoff (reported, never fatal)"""
    error_type: str
    description: str
    severity: str = "warning"
    element_type: Optional[str] = None
    bbox: Optional[Tuple[int, int, int, int]] = None


@dataclass
class AnalysisResult:
    """Calibrated, deduplicated takeoff for one plan"""
    detections_by_category: Dict[str, List[Detection]]
    categories: Dict[str, CategorySummary]
    calibration: ScaleCalibration
    confidence_stats: Dict[str, float]
    processing_time_ms: int
    timed_out: bool = False
    cancelled: bool = False
    group_totals: Dict[str, Dict[str, float]] = field(default_factory=dict)
    requests_issued: int = 0
    requests_failed: int = 0
    requests_skipped: int = 0
    raw_detection_count: int = 0
    crop_origin: Tuple[int, int] = (0, 0)
    errors: List[DetectedError] = field(default_factory=list)

    @property
    def detections(self) -> List[Detection]:
        return [d for dets in self.detections_by_category.values() for d in dets]

    @property
    def totals(self) -> Dict[str, float]:
        return {name: summary.total for name, summary in self.categories.items()}

    @property
    def needs_review(self) -> List[str]:
        return [name for name, summary in self.categories.items() if summary.needs_review]
