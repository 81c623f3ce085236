"""
Detection Aggregator
Merges the duplicates produced by overlapping tiles, converts pixel measurements to
real quantities and scores confidence per category
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

import numpy as np
from shapely.geometry import box

from plantakeoff.domain.models.plan import (
    MEASUREMENT_UNITS,
    AnalysisResult,
    CategorySummary,
    DetectedError,
    Detection,
    LegendPattern,
    MeasurementType,
    ScaleCalibration,
)
from plantakeoff.services.vision_config import ScanConfig

logger = logging.getLogger(__name__)


def overlap_ratio(a: Detection, b: Detection) -> float:
    """Intersection area over the smaller box's area"""
    poly_a = box(*a.bounds)
    poly_b = box(*b.bounds)
    smaller_area = min(poly_a.area, poly_b.area)
    if smaller_area <= 0:
        return 0.0
    return poly_a.intersection(poly_b).area / smaller_area


class DetectionAggregator:
    """Dedup, quantification, confidence scoring and consistency checks"""

    def __init__(self, config: Optional[ScanConfig] = None):
        self.config = config or ScanConfig()

    def deduplicate(self, detections: List[Detection]) -> List[Detection]:
        """
        Merge same-category detections whose boxes overlap by more than dedup_overlap.

        The higher-confidence geometry wins; source tiles and merge counts are unioned.
        Input detections are not modified.
        """
        by_category: Dict[str, List[Detection]] = {}
        for detection in detections:
            by_category.setdefault(detection.category, []).append(detection)

        merged: List[Detection] = []
        for category, items in by_category.items():
            # Stable sort keeps scan order among equal confidences
            ordered = sorted(items, key=lambda d: d.confidence, reverse=True)
            kept: List[Detection] = []
            for detection in ordered:
                target = next(
                    (k for k in kept if overlap_ratio(k, detection) > self.config.dedup_overlap),
                    None
                )
                if target is None:
                    kept.append(replace(detection, source_tiles=list(detection.source_tiles)))
                    continue
                target.source_tiles = sorted(set(target.source_tiles) | set(detection.source_tiles))
                target.merged_count += detection.merged_count
                if target.classification_code is None:
                    target.classification_code = detection.classification_code

            if len(kept) < len(items):
                logger.debug(f"Category {category}: merged {len(items)} detections into {len(kept)}")
            merged.extend(kept)
        return merged

    def quantify(
        self,
        detections: List[Detection],
        patterns: List[LegendPattern],
        calibration: ScaleCalibration
    ) -> Dict[str, CategorySummary]:
        """Per-category totals in real units with mean confidence and review flag"""
        measurement_by_category: Dict[str, MeasurementType] = {}
        for pattern in patterns:
            measurement_by_category.setdefault(pattern.category, pattern.measurement)
        for detection in detections:
            measurement_by_category.setdefault(detection.category, detection.measurement_type)

        review_threshold = self.config.effective_review_confidence
        summaries = {}
        for category, measurement in measurement_by_category.items():
            items = [d for d in detections if d.category == category]

            if measurement == MeasurementType.AREA:
                total = sum(calibration.area_to_real(d.pixel_area) for d in items)
            elif measurement == MeasurementType.COUNT:
                total = float(len(items))
            else:
                total = 0.0

            average = float(np.mean([d.confidence for d in items])) if items else 0.0
            needs_review = bool(items) and average < review_threshold
            if needs_review:
                logger.warning(
                    f"Category {category} average confidence {average:.2f} below "
                    f"{review_threshold:.2f}; flagged for review"
                )

            summaries[category] = CategorySummary(
                category=category,
                measurement_type=measurement,
                unit=MEASUREMENT_UNITS[measurement],
                total=total,
                instance_count=len(items),
                average_confidence=average,
                needs_review=needs_review,
                provisional=calibration.assumed and measurement == MeasurementType.AREA,
            )
        return summaries

    @staticmethod
    def group_totals(
        summaries: Dict[str, CategorySummary],
        group_mapping: Optional[Dict[str, str]]
    ) -> Dict[str, Dict[str, float]]:
        """Roll category totals up into groups, kept apart by unit"""
        groups: Dict[str, Dict[str, float]] = {}
        for category, group in (group_mapping or {}).items():
            summary = summaries.get(category.strip().lower())
            if summary is None:
                continue
            per_unit = groups.setdefault(group, {})
            per_unit[summary.unit] = per_unit.get(summary.unit, 0.0) + summary.total
        return groups

    @staticmethod
    def confidence_stats(detections: List[Detection]) -> Dict[str, float]:
        if not detections:
            return {"count": 0, "mean": 0.0, "min": 0.0, "max": 0.0, "std": 0.0}
        values = np.array([d.confidence for d in detections], dtype=float)
        return {
            "count": int(values.size),
            "mean": float(values.mean()),
            "min": float(values.min()),
            "max": float(values.max()),
            "std": float(values.std()),
        }

    def check_consistency(self, detections: List[Detection], raster_size: Tuple[int, int]) -> List[DetectedError]:
        """Flag implausibly large or tiny detections; nothing is removed"""
        width, height = raster_size
        errors = []
        for detection in detections:
            _, _, w, h = detection.bbox
            if w > self.config.oversized_fraction * width or h > self.config.oversized_fraction * height:
                errors.append(DetectedError(
                    error_type="oversized_element",
                    description=(
                        f"{detection.element_type} spans {w}×{h} px, more than "
                        f"{self.config.oversized_fraction:.0%} of the {width}×{height} plan"
                    ),
                    element_type=detection.element_type,
                    bbox=detection.bbox,
                ))
            elif w < self.config.undersized_pixels or h < self.config.undersized_pixels:
                errors.append(DetectedError(
                    error_type="undersized_element",
                    description=f"{detection.element_type} is only {w}×{h} px",
                    severity="info",
                    element_type=detection.element_type,
                    bbox=detection.bbox,
                ))
        if errors:
            logger.info(f"Consistency check found {len(errors)} suspicious detections")
        return errors

    def aggregate(
        self,
        detections: List[Detection],
        patterns: List[LegendPattern],
        calibration: ScaleCalibration,
        raster_size: Tuple[int, int],
        group_mapping: Optional[Dict[str, str]] = None
    ) -> AnalysisResult:
        """
        Build the calibrated takeoff from raw scan detections

        Args:
            detections: Raw detections in full-raster pixels
            patterns: Legend patterns (every category appears in the result)
            calibration: Pixel to metre conversion
            raster_size: (width, height) of the scanned raster
            group_mapping: Optional category -> group roll-up

        Returns:
            AnalysisResult; timing and request accounting are left for the caller
        """
        merged = self.deduplicate(detections)
        summaries = self.quantify(merged, patterns, calibration)

        by_category: Dict[str, List[Detection]] = {category: [] for category in summaries}
        for detection in merged:
            by_category.setdefault(detection.category, []).append(detection)

        stats = self.confidence_stats(merged)
        logger.info(
            f"Aggregated {len(detections)} raw detections into {len(merged)} "
            f"across {len(summaries)} categories (mean confidence {stats['mean']:.2f})"
        )

        return AnalysisResult(
            detections_by_category=by_category,
            categories=summaries,
            calibration=calibration,
            confidence_stats=stats,
            processing_time_ms=0,
            group_totals=self.group_totals(summaries, group_mapping),
            raw_detection_count=len(detections),
            errors=self.check_consistency(merged, raster_size),
        )
