"""
Vision Model and Scan Configuration
Centralized defaults for the VLM endpoint, tiling and the pixel heuristics
"""

import os
import time
from typing import Dict, Any, Optional
from dataclasses import dataclass, field

from plantakeoff.core.environment import get_env_float, get_env_int


@dataclass
class VisionModelConfig:
    """Configuration for the VLM endpoint"""
    name: str = field(default_factory=lambda: os.getenv("PLAN_VLM_MODEL", "gpt-4o-2024-11-20"))
    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    base_url: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_BASE_URL") or None)
    max_tokens: int = 1500
    temperature: float = 0.1  # Low temperature for consistent answers
    image_detail: str = "high"
    timeout_seconds: float = field(default_factory=lambda: get_env_float("PLAN_REQUEST_TIMEOUT_SECONDS", 60.0))
    max_concurrent_requests: int = 8

    def get_api_params(self) -> Dict[str, Any]:
        """Get chat-completions parameters for this model"""
        return {
            "model": self.name,
            "max_completion_tokens": self.max_tokens,
            "temperature": self.temperature,
        }


@dataclass
class ScanConfig:
    """
    Tuning knobs for the scan.

    The pixel thresholds are empirically chosen defaults; validate them
    against real plan sets before relying on them.
    """
    # Tiling (672 px is the effective input size of llava-class models)
    tile_size: int = field(default_factory=lambda: get_env_int("PLAN_TILE_SIZE", 672))
    tile_overlap: int = field(default_factory=lambda: get_env_int("PLAN_TILE_OVERLAP", 64))
    min_confidence: float = field(default_factory=lambda: get_env_float("PLAN_MIN_CONFIDENCE", 0.7))
    max_workers: int = field(default_factory=lambda: get_env_int("PLAN_MAX_WORKERS", 1))

    # Whole-job wall-clock budget and the cap for any single tile request
    analysis_timeout_ms: int = field(default_factory=lambda: get_env_int("PLAN_ANALYSIS_TIMEOUT_MS", 30 * 60 * 1000))
    request_timeout_seconds: float = field(default_factory=lambda: get_env_float("PLAN_REQUEST_TIMEOUT_SECONDS", 60.0))

    # Rasterization / calibration
    render_dpi: int = field(default_factory=lambda: get_env_int("PLAN_RENDER_DPI", 300))
    default_scale_notation: str = "1:100"

    # Whole-page requests (boundary, text) see a downscaled overview
    overview_max_side: int = 2048

    # Boundary detection
    white_threshold: int = 230  # gray >= this is paper
    dark_threshold: int = 100  # gray < this is ink
    min_dark_ratio: float = 0.01
    min_mid_ratio: float = 0.05
    fallback_crop_fraction: float = 0.6  # Centre crop keeps the inner 60%
    fallback_confidence: float = 0.5
    regex_boundary_confidence: float = 0.6

    # Text redaction
    redaction_padding: int = 4
    min_content_ratio: float = 0.05
    fallback_text_width: float = 0.03  # Box size for regex-recovered text, as a page fraction
    fallback_text_height: float = 0.015
    text_region_dir: str = field(default_factory=lambda: os.getenv("PLAN_TEXT_REGION_DIR", "/tmp/plantakeoff_text_regions"))

    # Aggregation
    dedup_overlap: float = 0.5  # intersection / smaller box
    review_confidence: Optional[float] = None  # defaults to min_confidence
    oversized_fraction: float = 0.8
    undersized_pixels: int = 5

    def validate(self) -> bool:
        """Validate configuration"""
        if self.tile_size <= 0:
            raise ValueError(f"tile_size must be positive, got {self.tile_size}")
        if not 0 <= self.tile_overlap < self.tile_size:
            raise ValueError(f"tile_overlap must be in [0, tile_size), got {self.tile_overlap}")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be in [0, 1], got {self.min_confidence}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")

        from plantakeoff.infrastructure.extractors.scale import ScaleCalibrator
        from plantakeoff.services.error_types import CalibrationMissing
        try:
            ScaleCalibrator.parse_ratio(self.default_scale_notation)
        except CalibrationMissing as e:
            raise ValueError(f"default_scale_notation is not a usable scale: {e.message}") from e
        return True

    def request_timeout(self, deadline: Optional[float] = None) -> float:
        """Per-request timeout in seconds, bounded by the time left before deadline"""
        if deadline is None:
            return self.request_timeout_seconds
        return max(0.001, min(self.request_timeout_seconds, deadline - time.monotonic()))

    @property
    def effective_review_confidence(self) -> float:
        if self.review_confidence is None:
            return self.min_confidence
        return self.review_confidence
