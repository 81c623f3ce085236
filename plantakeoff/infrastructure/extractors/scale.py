"""
Scale Calibrator
Turns a declared drawing scale into a pixels-per-metre calibration for the rendered raster
"""

import re
import logging
from fractions import Fraction
from typing import Optional

from plantakeoff.domain.models.plan import ScaleCalibration
from plantakeoff.services.error_types import CalibrationMissing
from plantakeoff.services.vision_config import ScanConfig

logger = logging.getLogger(__name__)

INCHES_PER_METRE = 1 / 0.0254

# M 1:50, 1:100, 1 : 200
METRIC_PATTERN = re.compile(r'^\s*(?:m\.?\s*)?(?:scale\s*:?\s*)?1\s*:\s*(\d+(?:[.,]\d+)?)\s*$', re.IGNORECASE)

# 1/4" = 1'-0", 3/16" = 1', 1 1/2" = 1'-0"
ARCHITECTURAL_PATTERN = re.compile(
    r'^\s*(?:scale\s*:?\s*)?(?:(\d+)\s+)?(\d+(?:/\d+)?|\d*\.\d+)\s*(?:"|in|\'\')\s*=\s*'
    r'(\d+(?:\.\d+)?)\s*(?:\'|ft)\s*(?:-?\s*(\d+(?:\.\d+)?)\s*(?:"|in)?)?\s*$',
    re.IGNORECASE
)


class ScaleCalibrator:
    """Parses declared scale notations (metric ratio, imperial architectural, engineering)"""

    def __init__(self, config: Optional[ScanConfig] = None):
        self.config = config or ScanConfig()

    @staticmethod
    def parse_ratio(notation: Optional[str]) -> float:
        """
        Reduce a scale notation to its plan ratio (real length / paper length)

        Raises:
            CalibrationMissing: The notation is absent or not understood
        """
        if not notation or not notation.strip():
            raise CalibrationMissing("No scale notation declared")

        metric = METRIC_PATTERN.match(notation)
        if metric:
            ratio = float(metric.group(1).replace(',', '.'))
            if ratio <= 0:
                raise CalibrationMissing(f"Scale ratio must be positive: {notation}")
            return ratio

        imperial = ARCHITECTURAL_PATTERN.match(notation)
        if imperial:
            whole, paper, feet, inches = imperial.groups()
            paper_inches = float(Fraction(paper)) if '/' in paper else float(paper)
            if whole:
                paper_inches += float(whole)
            real_inches = float(feet) * 12 + (float(inches) if inches else 0.0)
            if paper_inches <= 0 or real_inches <= 0:
                raise CalibrationMissing(f"Degenerate imperial scale: {notation}")
            return real_inches / paper_inches

        raise CalibrationMissing(f"Unrecognized scale notation: {notation}", {"notation": notation})

    def calibrate(self, notation: Optional[str], dpi: Optional[int] = None) -> ScaleCalibration:
        """
        Derive the calibration once per plan

        An absent or unparsable notation falls back to the assumed default
        (1:100 at the rasterization DPI) and is flagged as assumed.
        """
        dpi = dpi or self.config.render_dpi
        try:
            ratio = self.parse_ratio(notation)
            pixels_per_metre = dpi * INCHES_PER_METRE / ratio
            logger.info(f"Scale {notation} at {dpi} DPI -> {pixels_per_metre:.2f} px/m")
            return ScaleCalibration(
                notation=notation.strip(),
                pixels_per_unit=pixels_per_metre,
                dpi=dpi,
                assumed=False,
                method="declared",
            )
        except CalibrationMissing as e:
            default = self.config.default_scale_notation
            logger.warning(f"{e.message}; assuming {default} at {dpi} DPI")
            ratio = self.parse_ratio(default)
            return ScaleCalibration(
                notation=default,
                pixels_per_unit=dpi * INCHES_PER_METRE / ratio,
                dpi=dpi,
                assumed=True,
                method="assumed",
            )
