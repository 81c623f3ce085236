"""
Pipeline Contracts - Strict Pydantic models for the external job interface
Validates the analysis request, the VLM match payloads and everything handed to exporters
"""

from dataclasses import replace
from typing import List, Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from plantakeoff.domain.models.plan import (
    AREA_CATEGORIES,
    AnalysisResult,
    LegendPattern,
    MeasurementType,
)
from plantakeoff.services.vision_config import ScanConfig


class LegendEntry(BaseModel):
    """One legend row supplied with the job"""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    measurement: Optional[str] = Field(None, description="area, count or none; inferred from category if omitted")
    code: Optional[str] = Field(None, description="Classification code, e.g. DIN 276 cost group")
    description: Optional[str] = None

    @field_validator('category')
    @classmethod
    def normalize_category(cls, v):
        return v.strip().lower()

    @field_validator('measurement')
    @classmethod
    def validate_measurement(cls, v):
        if v is None:
            return v
        v = v.strip().lower()
        valid = {m.value for m in MeasurementType}
        if v not in valid:
            raise ValueError(f"Invalid measurement type: {v} (expected one of {sorted(valid)})")
        return v

    @property
    def measurement_type(self) -> MeasurementType:
        if self.measurement:
            return MeasurementType(self.measurement)
        if self.category in AREA_CATEGORIES:
            return MeasurementType.AREA
        return MeasurementType.COUNT

    def to_pattern(self) -> LegendPattern:
        return LegendPattern(
            name=self.name,
            category=self.category,
            measurement=self.measurement_type,
            code=self.code,
            description=self.description,
        )


class AnalysisRequest(BaseModel):
    """Input configuration for one plan analysis job"""
    model_config = ConfigDict(populate_by_name=True)

    tile_size: int = Field(672, alias="tileSize", gt=0)
    overlap: int = Field(64, ge=0)
    min_confidence: float = Field(0.7, alias="minConfidence", ge=0.0, le=1.0)
    legend: List[LegendEntry] = Field(..., min_length=1)
    scale_notation: Optional[str] = Field(None, alias="scaleNotation")
    timeout_ms: int = Field(30 * 60 * 1000, alias="timeoutMs", gt=0)
    dpi: int = Field(300, gt=0)
    max_workers: int = Field(1, alias="maxWorkers", ge=1)
    dedup_overlap: float = Field(0.5, alias="dedupOverlap", gt=0.0, le=1.0)
    review_confidence: Optional[float] = Field(None, alias="reviewConfidence", ge=0.0, le=1.0)
    group_mapping: Dict[str, str] = Field(default_factory=dict, alias="groupMapping")

    @model_validator(mode='after')
    def validate_tiling_and_legend(self):
        if self.overlap >= self.tile_size:
            raise ValueError(f"overlap {self.overlap} must be smaller than tileSize {self.tile_size}")

        measurement_by_category: Dict[str, MeasurementType] = {}
        for entry in self.legend:
            existing = measurement_by_category.setdefault(entry.category, entry.measurement_type)
            if existing != entry.measurement_type:
                raise ValueError(
                    f"Category '{entry.category}' mixes {existing.value} and "
                    f"{entry.measurement_type.value} measurements"
                )
        return self

    @property
    def patterns(self) -> List[LegendPattern]:
        return [entry.to_pattern() for entry in self.legend]

    def to_scan_config(self, base: Optional[ScanConfig] = None) -> ScanConfig:
        """Overlay the per-job settings on the environment defaults"""
        base = base or ScanConfig()
        return replace(
            base,
            tile_size=self.tile_size,
            tile_overlap=self.overlap,
            min_confidence=self.min_confidence,
            max_workers=self.max_workers,
            analysis_timeout_ms=self.timeout_ms,
            render_dpi=self.dpi,
            dedup_overlap=self.dedup_overlap,
            review_confidence=self.review_confidence,
        )


class TileMatchPayload(BaseModel):
    """One match as returned by the VLM, in tile-normalized fractions"""
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., gt=0.0, le=1.0)
    height: float = Field(..., gt=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)


class DetectionOutput(BaseModel):
    """Detection as exposed to exporters"""
    model_config = ConfigDict(populate_by_name=True)

    type: str
    category: str
    bbox: List[int] = Field(..., min_length=4, max_length=4)
    confidence: float = Field(..., ge=0.0, le=1.0)
    measurement: float
    unit: str
    code: Optional[str] = None
    source_tiles: List[int] = Field(default_factory=list, alias="sourceTiles")


class CalibrationOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notation: str
    pixels_per_unit: float = Field(..., gt=0, alias="pixelsPerUnit")
    unit: str = "m"
    assumed: bool


class AnalysisOutput(BaseModel):
    """External output contract of a job"""
    model_config = ConfigDict(populate_by_name=True)

    detections: List[DetectionOutput]
    totals: Dict[str, float]
    units: Dict[str, str] = Field(default_factory=dict)
    group_totals: Dict[str, Dict[str, float]] = Field(default_factory=dict, alias="groupTotals")
    calibration: CalibrationOutput
    confidence: Dict[str, float] = Field(default_factory=dict)
    needs_review: List[str] = Field(default_factory=list, alias="needsReview")
    timed_out: bool = Field(..., alias="timedOut")
    cancelled: bool = False
    processing_time_ms: int = Field(..., ge=0, alias="processingTimeMs")

    @classmethod
    def from_result(cls, result: AnalysisResult) -> "AnalysisOutput":
        detections = []
        for category, items in result.detections_by_category.items():
            summary = result.categories[category]
            for detection in items:
                if summary.measurement_type == MeasurementType.AREA:
                    measurement = result.calibration.area_to_real(detection.pixel_area)
                else:
                    measurement = detection.pixel_measurement
                detections.append(DetectionOutput(
                    type=detection.element_type,
                    category=detection.category,
                    bbox=[int(v) for v in detection.bbox],
                    confidence=detection.confidence,
                    measurement=round(measurement, 4),
                    unit=summary.unit,
                    code=detection.classification_code,
                    source_tiles=sorted(detection.source_tiles),
                ))

        confidence = dict(result.confidence_stats)
        for name, summary in result.categories.items():
            confidence[f"category.{name}"] = summary.average_confidence

        return cls(
            detections=detections,
            totals={name: round(summary.total, 4) for name, summary in result.categories.items()},
            units={name: summary.unit for name, summary in result.categories.items()},
            group_totals=result.group_totals,
            calibration=CalibrationOutput(
                notation=result.calibration.notation,
                pixels_per_unit=result.calibration.pixels_per_unit,
                unit=result.calibration.unit,
                assumed=result.calibration.assumed,
            ),
            confidence=confidence,
            needs_review=result.needs_review,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
            processing_time_ms=result.processing_time_ms,
        )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ReasoningStep(BaseModel):
    """One step of the processing trace"""
    step: int
    description: str
    duration_ms: int = 0
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    outcome: str = ""


class Hypothesis(BaseModel):
    statement: str
    probability: float = Field(..., ge=0.0, le=1.0)


class ThinkingTrace(BaseModel):
    """Intermediate hypotheses, alternatives weighed and open uncertainties"""
    hypotheses: List[Hypothesis] = Field(default_factory=list)
    alternatives_considered: List[str] = Field(default_factory=list)
    uncertainties: List[str] = Field(default_factory=list)


class ComplianceFinding(BaseModel):
    """Result of checking one detection against a dimensional rule"""
    rule: str
    standard: str
    severity: str = "info"  # info, high, critical
    status: str = "compliant"  # compliant, violation
    description: str
    element_type: str
    measured: Optional[float] = None
    required: Optional[float] = None
    unit: str = "m"
    bbox: Optional[List[int]] = None
    provisional: bool = False


class DetectedErrorOutput(BaseModel):
    error_type: str
    description: str
    severity: str = "warning"
    element_type: Optional[str] = None
    bbox: Optional[List[int]] = None


class TextRegionOutput(BaseModel):
    key: str
    text: str
    category: str
    bbox: List[int]


class QuantityOutput(BaseModel):
    category: str
    total: float
    unit: str
    instances: int
    average_confidence: float
    needs_review: bool
    provisional: bool = False


class AnnotationPayload(BaseModel):
    """Everything an exporter needs to render overlays and takeoff sheets"""
    job_id: str
    detections: List[DetectionOutput] = Field(default_factory=list)
    quantities: List[QuantityOutput] = Field(default_factory=list)
    group_totals: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    calibration: Optional[CalibrationOutput] = None
    reasoning: List[ReasoningStep] = Field(default_factory=list)
    thinking: ThinkingTrace = Field(default_factory=ThinkingTrace)
    compliance: List[ComplianceFinding] = Field(default_factory=list)
    errors: List[DetectedErrorOutput] = Field(default_factory=list)
    text_regions: List[TextRegionOutput] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
