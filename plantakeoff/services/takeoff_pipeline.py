"""
Takeoff Pipeline - Runs one plan through boundary, redaction, scanning and aggregation
Stages run in order; only a failed rasterization aborts the job
"""

import time
import uuid
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

from plantakeoff.domain.models.plan import AnalysisResult, BoundingRegion, RasterImage, TextRegion
from plantakeoff.infrastructure.extractors.boundary_detector import BoundaryDetector, BoundaryResult
from plantakeoff.infrastructure.extractors.scale import ScaleCalibrator
from plantakeoff.infrastructure.extractors.text_redactor import RedactionResult, TextRegionRedactor
from plantakeoff.infrastructure.extractors.tile_scanner import ScanResult, TileScanner
from plantakeoff.infrastructure.extractors.vision_processor import VisionModelClient
from plantakeoff.infrastructure.utils.pdf_processor import PyMuPDFRasterizer, Rasterizer
from plantakeoff.services.annotation_collector import AnnotationCollector, TraceRecorder
from plantakeoff.services.compliance_checker import ComplianceChecker
from plantakeoff.services.detection_aggregator import DetectionAggregator
from plantakeoff.services.error_types import AnalysisTimeout, log_error_with_context
from plantakeoff.services.pipeline_contracts import AnalysisOutput, AnalysisRequest, AnnotationPayload
from plantakeoff.services.text_region_store import JsonFileTextRegionStore, TextRegionStore
from plantakeoff.services.vision_config import ScanConfig
from plantakeoff.utils.logging_utils import log_data_quality, log_operation, log_performance_metric

logger = logging.getLogger(__name__)


@dataclass
class TakeoffJobResult:
    """Everything one job produced"""
    job_id: str
    result: AnalysisResult
    output: AnalysisOutput
    annotations: AnnotationPayload
    boundary: BoundaryResult
    redaction: RedactionResult
    scan: ScanResult

    @property
    def text_regions(self) -> List[TextRegion]:
        return self.redaction.regions

    @property
    def cleaned_raster(self) -> RasterImage:
        return self.redaction.cleaned

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "output": self.output.to_json_dict(),
            "annotations": self.annotations.model_dump(),
            "boundary": self.boundary.to_dict(),
            "redaction": self.redaction.to_dict(),
            "scan": self.scan.to_dict(),
            "crop_origin": list(self.result.crop_origin),
        }


class TakeoffPipeline:
    """
    Orchestrates a takeoff job with injected collaborators.

    Stages: scale calibration, boundary crop, text redaction, tile scan,
    aggregation, compliance checks, annotation assembly.
    """

    def __init__(
        self,
        vision_client: VisionModelClient,
        text_store: Optional[TextRegionStore] = None,
        rasterizer: Optional[Rasterizer] = None,
        compliance_checker: Optional[ComplianceChecker] = None,
        config: Optional[ScanConfig] = None
    ):
        self.vision_client = vision_client
        self.config = config or ScanConfig()
        self.text_store = text_store if text_store is not None else JsonFileTextRegionStore(self.config.text_region_dir)
        self.rasterizer = rasterizer or PyMuPDFRasterizer()
        self.compliance_checker = compliance_checker or ComplianceChecker()
        self.annotation_collector = AnnotationCollector()

    def analyze_document(
        self,
        path: str,
        request: AnalysisRequest,
        job_id: Optional[str] = None,
        cancel_token: Optional[threading.Event] = None,
        page: int = 0
    ) -> TakeoffJobResult:
        """
        Rasterize a document page and analyze it

        Raises:
            ConversionError: The document could not be rasterized
        """
        started = time.monotonic()
        raster = self.rasterizer.rasterize(path, dpi=request.dpi, page=page)
        return self._run(raster, request, job_id, cancel_token, started, source=str(path))

    def analyze(
        self,
        raster: RasterImage,
        request: AnalysisRequest,
        job_id: Optional[str] = None,
        cancel_token: Optional[threading.Event] = None
    ) -> TakeoffJobResult:
        """Analyze an already rasterized plan"""
        return self._run(raster, request, job_id, cancel_token, time.monotonic())

    def _run(
        self,
        raster: RasterImage,
        request: AnalysisRequest,
        job_id: Optional[str],
        cancel_token: Optional[threading.Event],
        started: float,
        source: Optional[str] = None
    ) -> TakeoffJobResult:
        job_id = job_id or uuid.uuid4().hex[:12]
        cancel_token = cancel_token or threading.Event()
        config = request.to_scan_config(self.config)
        config.validate()
        deadline = started + request.timeout_ms / 1000.0
        patterns = request.patterns
        recorder = TraceRecorder()

        def halted() -> bool:
            return cancel_token.is_set() or time.monotonic() >= deadline

        with log_operation("plan_analysis", {"job_id": job_id, "size": raster.size, "patterns": len(patterns)}, logger):
            with recorder.step("Calibrate drawing scale") as step:
                calibration = ScaleCalibrator(config).calibrate(request.scale_notation, request.dpi)
                step["outcome"] = f"{calibration.notation} -> {calibration.pixels_per_unit:.1f} px/m"
                if calibration.assumed:
                    step["confidence"] = 0.5
                    recorder.add_uncertainty(
                        f"No usable scale declared; quantities assume {calibration.notation} at {calibration.dpi} DPI"
                    )

            with recorder.step("Locate building boundary") as step:
                if halted():
                    boundary = self._skipped_boundary(raster, BoundaryDetector(self.vision_client, config))
                else:
                    boundary = BoundaryDetector(self.vision_client, config).detect(raster, deadline)
                step["confidence"] = boundary.region.confidence
                step["outcome"] = f"{boundary.method}: {boundary.region.width}×{boundary.region.height} px"
                recorder.add_hypothesis(
                    f"Building drawing occupies x[{boundary.region.min_x},{boundary.region.max_x}] "
                    f"y[{boundary.region.min_y},{boundary.region.max_y}]",
                    boundary.region.confidence,
                )
                if boundary.fallback:
                    recorder.add_alternative("VLM boundary unavailable; centre crop of the sheet used instead")
                if boundary.low_confidence:
                    recorder.add_uncertainty("Boundary crop may not contain the full building")

            with recorder.step("Extract and redact text") as step:
                if halted():
                    redaction = RedactionResult(cleaned=boundary.cropped, method="skipped")
                else:
                    redaction = TextRegionRedactor(self.vision_client, self.text_store, config).process(
                        boundary.cropped, job_id, deadline
                    )
                step["outcome"] = f"{len(redaction.regions)} text regions via {redaction.method}"
                if redaction.parse_failure:
                    step["confidence"] = 0.5
                    recorder.add_uncertainty(f"Text answer {redaction.parse_failure}; some text may remain")
                if redaction.over_redaction_suspected:
                    recorder.add_uncertainty("Redaction left little drawing content; detections may be missing")

            with recorder.step("Scan tiles against legend") as step:
                scan = TileScanner(self.vision_client, config).scan(
                    redaction.cleaned, patterns, deadline=deadline, cancel_token=cancel_token
                )
                issued = max(1, scan.requests_issued)
                step["confidence"] = 1.0 - scan.requests_failed / issued
                step["outcome"] = (
                    f"{len(scan.detections)} raw detections from {scan.requests_issued}/"
                    f"{scan.requests_total} requests"
                )
                if scan.requests_failed:
                    recorder.add_uncertainty(f"{scan.requests_failed} tile requests failed and contribute nothing")

            with recorder.step("Aggregate detections") as step:
                result = DetectionAggregator(config).aggregate(
                    scan.detections, patterns, calibration, redaction.cleaned.size, request.group_mapping
                )
                step["confidence"] = result.confidence_stats["mean"] if result.detections else 1.0
                step["outcome"] = f"{len(result.detections)} detections in {len(result.categories)} categories"
                for category in result.needs_review:
                    recorder.add_uncertainty(f"Category {category} has low average confidence")

            with recorder.step("Check clear widths") as step:
                compliance = self.compliance_checker.check(result)
                step["outcome"] = f"{len(compliance)} findings"

        timed_out = scan.timed_out
        if timed_out:
            log_error_with_context(
                AnalysisTimeout(f"Analysis budget of {request.timeout_ms} ms exhausted"),
                {"job_id": job_id, "requests_skipped": scan.requests_skipped},
            )

        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        result.timed_out = timed_out
        result.cancelled = scan.cancelled or cancel_token.is_set()
        result.requests_issued = scan.requests_issued
        result.requests_failed = scan.requests_failed
        result.requests_skipped = scan.requests_skipped
        result.crop_origin = boundary.origin

        annotations = self.annotation_collector.collect(
            job_id,
            result=result,
            recorder=recorder,
            compliance=compliance,
            text_regions=redaction.regions,
            metadata={
                "source": source,
                "raster_size": list(raster.size),
                "crop_origin": list(boundary.origin),
                "boundary_fallback": boundary.fallback,
                "over_redaction_suspected": redaction.over_redaction_suspected,
                "requests_failed": scan.requests_failed,
                "timed_out": result.timed_out,
                "cancelled": result.cancelled,
            },
        )

        log_performance_metric("plan_analysis_time", result.processing_time_ms, "ms", {"job_id": job_id}, logger)
        log_data_quality(
            "takeoff",
            result.confidence_stats["mean"] if result.detections else 1.0,
            issues=[f"needs_review:{c}" for c in result.needs_review],
            logger=logger,
        )

        return TakeoffJobResult(
            job_id=job_id,
            result=result,
            output=AnalysisOutput.from_result(result),
            annotations=annotations,
            boundary=boundary,
            redaction=redaction,
            scan=scan,
        )

    @staticmethod
    def _skipped_boundary(raster: RasterImage, detector: BoundaryDetector) -> BoundaryResult:
        region = BoundingRegion(
            min_x=0,
            max_x=raster.width,
            min_y=0,
            max_y=raster.height,
            source_width=raster.width,
            source_height=raster.height,
            confidence=0.0,
        )
        return BoundaryResult(
            region=region,
            cropped=raster,
            verification=detector.verify(raster),
            method="skipped",
            low_confidence=True,
            reason="analysis halted before boundary detection",
        )
