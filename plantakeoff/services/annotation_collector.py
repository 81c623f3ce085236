"""
Annotation Data Collector
Gathers what the pipeline already computed into one payload for renderers and exporters
"""

import logging
from contextlib import contextmanager
from typing import Dict, Any, List, Optional

from plantakeoff.domain.models.plan import AnalysisResult, TextRegion
from plantakeoff.services.pipeline_contracts import (
    AnalysisOutput,
    AnnotationPayload,
    ComplianceFinding,
    DetectedErrorOutput,
    Hypothesis,
    QuantityOutput,
    ReasoningStep,
    TextRegionOutput,
    ThinkingTrace,
)
from plantakeoff.utils.logging_utils import Timer

logger = logging.getLogger(__name__)


class TraceRecorder:
    """Records processing steps and the hypotheses weighed along the way"""

    def __init__(self):
        self._steps: List[ReasoningStep] = []
        self._hypotheses: List[Hypothesis] = []
        self._alternatives: List[str] = []
        self._uncertainties: List[str] = []

    @contextmanager
    def step(self, description: str):
        """
        Time a processing step.

        The yielded dict may be filled with 'outcome' and 'confidence'; the step
        is recorded even when the body raises.
        """
        details: Dict[str, Any] = {"outcome": "", "confidence": 1.0}
        timer = Timer(description, logger)
        try:
            with timer:
                yield details
        except Exception as e:
            details["outcome"] = f"failed: {e}"
            details["confidence"] = 0.0
            raise
        finally:
            self.record_step(
                description,
                duration_ms=timer.duration_ms,
                confidence=details.get("confidence", 1.0),
                outcome=details.get("outcome", ""),
            )

    def record_step(self, description: str, duration_ms: int = 0, confidence: float = 1.0, outcome: str = ""):
        self._steps.append(ReasoningStep(
            step=len(self._steps) + 1,
            description=description,
            duration_ms=max(0, int(duration_ms)),
            confidence=min(1.0, max(0.0, float(confidence))),
            outcome=outcome,
        ))

    def add_hypothesis(self, statement: str, probability: float):
        self._hypotheses.append(Hypothesis(statement=statement, probability=min(1.0, max(0.0, probability))))

    def add_alternative(self, description: str):
        self._alternatives.append(description)

    def add_uncertainty(self, description: str):
        self._uncertainties.append(description)

    @property
    def steps(self) -> List[ReasoningStep]:
        return list(self._steps)

    @property
    def thinking(self) -> ThinkingTrace:
        return ThinkingTrace(
            hypotheses=list(self._hypotheses),
            alternatives_considered=list(self._alternatives),
            uncertainties=list(self._uncertainties),
        )


class AnnotationCollector:
    """Assembles the annotation payload; every input is optional"""

    def collect(
        self,
        job_id: str,
        result: Optional[AnalysisResult] = None,
        recorder: Optional[TraceRecorder] = None,
        compliance: Optional[List[ComplianceFinding]] = None,
        text_regions: Optional[List[TextRegion]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AnnotationPayload:
        payload = AnnotationPayload(job_id=job_id, metadata=dict(metadata or {}))

        if result is not None:
            output = AnalysisOutput.from_result(result)
            payload.detections = output.detections
            payload.calibration = output.calibration
            payload.group_totals = output.group_totals
            payload.quantities = [
                QuantityOutput(
                    category=summary.category,
                    total=round(summary.total, 4),
                    unit=summary.unit,
                    instances=summary.instance_count,
                    average_confidence=round(summary.average_confidence, 4),
                    needs_review=summary.needs_review,
                    provisional=summary.provisional,
                )
                for summary in result.categories.values()
            ]
            payload.errors = [
                DetectedErrorOutput(
                    error_type=error.error_type,
                    description=error.description,
                    severity=error.severity,
                    element_type=error.element_type,
                    bbox=list(error.bbox) if error.bbox else None,
                )
                for error in result.errors
            ]

        if recorder is not None:
            payload.reasoning = recorder.steps
            payload.thinking = recorder.thinking

        payload.compliance = list(compliance or [])
        payload.text_regions = [
            TextRegionOutput(
                key=region.position_key,
                text=region.text,
                category=region.category.value,
                bbox=[region.x, region.y, region.width, region.height],
            )
            for region in (text_regions or [])
        ]

        logger.debug(
            f"Annotation payload for job {job_id}: {len(payload.detections)} detections, "
            f"{len(payload.reasoning)} steps, {len(payload.compliance)} compliance findings"
        )
        return payload
