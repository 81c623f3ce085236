"""
Tests for scale calibration
"""

import pytest

from plantakeoff.domain.models.plan import ScaleCalibration
from plantakeoff.infrastructure.extractors.scale import ScaleCalibrator
from plantakeoff.services.error_types import CalibrationMissing
from plantakeoff.services.vision_config import ScanConfig


class TestScaleNotation:
    """Parsing of declared scale notations"""

    @pytest.mark.parametrize("notation,ratio", [
        ("1:100", 100.0),
        ("M 1:50", 50.0),
        ("1 : 200", 200.0),
        ('1/4" = 1\'-0"', 48.0),
        ('1/8" = 1\'', 96.0),
        ('1" = 20\'', 240.0),
    ])
    def test_parse_ratio(self, notation, ratio):
        assert ScaleCalibrator.parse_ratio(notation) == pytest.approx(ratio)

    @pytest.mark.parametrize("notation", [None, "", "   ", "not to scale", "1:0"])
    def test_unusable_notation_raises(self, notation):
        with pytest.raises(CalibrationMissing):
            ScaleCalibrator.parse_ratio(notation)


class TestCalibration:
    """Pixels-per-metre derivation and the assumed default"""

    def test_metric_at_300_dpi(self):
        calibration = ScaleCalibrator(ScanConfig(render_dpi=300)).calibrate("1:100")

        assert calibration.pixels_per_unit == pytest.approx(300 / 0.0254 / 100)
        assert calibration.assumed is False
        assert calibration.method == "declared"
        assert calibration.notation == "1:100"

    def test_explicit_dpi_wins_over_config(self):
        calibration = ScaleCalibrator(ScanConfig(render_dpi=300)).calibrate("1:50", dpi=150)

        assert calibration.dpi == 150
        assert calibration.pixels_per_unit == pytest.approx(150 / 0.0254 / 50)

    def test_missing_notation_falls_back_to_assumed_default(self):
        calibration = ScaleCalibrator(ScanConfig(render_dpi=300)).calibrate(None)

        assert calibration.assumed is True
        assert calibration.method == "assumed"
        assert calibration.notation == "1:100"
        assert calibration.pixels_per_unit == pytest.approx(300 / 0.0254 / 100)

    def test_garbage_notation_falls_back_to_assumed_default(self):
        calibration = ScaleCalibrator(ScanConfig(render_dpi=200)).calibrate("see title block")

        assert calibration.assumed is True
        assert calibration.dpi == 200

    def test_area_round_trip(self):
        calibration = ScaleCalibrator(ScanConfig(render_dpi=300)).calibrate("1:100")

        square_metres = calibration.area_to_real(123456.0)
        assert calibration.area_to_pixels(square_metres) == pytest.approx(123456.0)

    def test_one_metre_at_known_scale(self):
        calibration = ScaleCalibration(notation="custom", pixels_per_unit=100.0, dpi=300)

        assert calibration.length_to_real(250) == pytest.approx(2.5)
        assert calibration.area_to_real(100 * 100) == pytest.approx(1.0)

    def test_non_positive_pixels_per_unit_rejected(self):
        with pytest.raises(ValueError):
            ScaleCalibration(notation="1:100", pixels_per_unit=0.0, dpi=300)
