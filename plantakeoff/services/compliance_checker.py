"""
Compliance Checker
Minimum clear-width checks on detected doors and escape routes
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from plantakeoff.domain.models.plan import AnalysisResult, Detection
from plantakeoff.services.pipeline_contracts import ComplianceFinding

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClearWidthRule:
    """An element must be at least min_width metres across its narrower side"""
    name: str
    standard: str
    keywords: Tuple[str, ...]
    min_width: float
    severity: str = "high"

    def applies_to(self, detection: Detection) -> bool:
        element = f"{detection.element_type} {detection.category}".lower()
        return any(keyword in element for keyword in self.keywords)


DEFAULT_RULES = [
    ClearWidthRule(
        name="door_clear_width",
        standard="ASR A1.7 / DIN 18040",
        keywords=("door", "tür", "tuer"),
        min_width=0.90,
        severity="high",
    ),
    ClearWidthRule(
        name="escape_route_width",
        standard="ASR A2.3",
        keywords=("corridor", "flur", "escape", "fluchtweg", "hallway"),
        min_width=1.20,
        severity="critical",
    ),
]


class ComplianceChecker:
    """Applies clear-width rules to detections using the plan calibration"""

    def __init__(self, rules: Optional[List[ClearWidthRule]] = None):
        self.rules = rules if rules is not None else list(DEFAULT_RULES)

    def check(self, result: AnalysisResult) -> List[ComplianceFinding]:
        findings = []
        calibration = result.calibration
        for detection in result.detections:
            for rule in self.rules:
                if not rule.applies_to(detection):
                    continue
                _, _, w, h = detection.bbox
                measured = calibration.length_to_real(min(w, h))
                violation = measured < rule.min_width
                findings.append(ComplianceFinding(
                    rule=rule.name,
                    standard=rule.standard,
                    severity=rule.severity if violation else "info",
                    status="violation" if violation else "compliant",
                    description=(
                        f"{detection.element_type} clear width {measured:.2f} m "
                        f"{'below' if violation else 'meets'} required {rule.min_width:.2f} m"
                    ),
                    element_type=detection.element_type,
                    measured=round(measured, 3),
                    required=rule.min_width,
                    bbox=[int(v) for v in detection.bbox],
                    provisional=calibration.assumed,
                ))

        violations = sum(1 for f in findings if f.status == "violation")
        if violations:
            logger.warning(f"Compliance check: {violations} of {len(findings)} findings are violations")
        return findings
