"""
End-to-end tests for the takeoff pipeline and its request contract
"""

import json
import threading
import time

import pytest
from PIL import Image
from pydantic import ValidationError

from plantakeoff.services.error_types import ConversionError, VisionTimeoutError
from plantakeoff.services.pipeline_contracts import AnalysisRequest
from plantakeoff.domain.models.plan import MeasurementType
from plantakeoff.services.takeoff_pipeline import TakeoffPipeline
from plantakeoff.services.text_region_store import InMemoryTextRegionStore

from conftest import FakeVisionClient, make_plan_array, prompt_kind

DOOR_MATCH = json.dumps({"matches": [{"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2, "confidence": 0.9}]})
TEXT_ANSWER = json.dumps([{"text": "Wohnen", "x": 0.5, "y": 0.5, "width": 0.05, "height": 0.02, "category": "label"}])


def door_responder(pattern, n):
    if pattern == "Door":
        return DOOR_MATCH
    if pattern == "Section marker":
        return "No matches found."
    return '{"matches": []}'


class SlowWholePageClient(FakeVisionClient):
    """Boundary and text replies take the whole granted timeout, then time out"""

    def generate(self, image_bytes, prompt, options=None):
        reply = super().generate(image_bytes, prompt, options)
        if prompt_kind(prompt) == "match":
            return reply
        time.sleep((options or {}).get("timeout", 1.0))
        raise VisionTimeoutError("whole-page request timed out")


@pytest.fixture
def store() -> InMemoryTextRegionStore:
    return InMemoryTextRegionStore()


@pytest.fixture
def pipeline(store, scan_config) -> TakeoffPipeline:
    client = FakeVisionClient(text=TEXT_ANSWER, responder=door_responder)
    return TakeoffPipeline(client, text_store=store, config=scan_config)


class TestTakeoffPipeline:
    """Full job on a synthetic plan"""

    def test_end_to_end(self, pipeline, store, plan_raster, analysis_request):
        job = pipeline.analyze(plan_raster, analysis_request, job_id="job-1")

        # Boundary crop 1200×1200 at (400, 150) -> 2×2 tiles × 3 patterns
        assert job.result.crop_origin == (400, 150)
        assert job.cleaned_raster.size == (1200, 1200)
        assert job.scan.requests_total == 12
        assert job.result.requests_issued == 12
        assert job.result.requests_failed == 0

        output = job.output
        assert output.totals == {"door": 4.0, "wall": 0.0, "marker": 0.0}
        assert output.units["door"] == "pcs"
        assert output.units["wall"] == "m²"
        assert output.calibration.assumed is False
        assert output.calibration.pixels_per_unit == pytest.approx(300 / 0.0254 / 100)
        assert output.timed_out is False
        assert output.processing_time_ms >= 0
        assert all(d.code == "334" for d in output.detections)

        assert [r.text for r in store.load("job-1")] == ["Wohnen"]
        assert len(job.annotations.reasoning) == 6
        assert len(job.annotations.compliance) == 4
        assert job.annotations.text_regions[0].text == "Wohnen"

    def test_output_contract_uses_camel_case(self, pipeline, plan_raster, analysis_request):
        payload = pipeline.analyze(plan_raster, analysis_request).output.to_json_dict()

        for key in ("detections", "totals", "calibration", "timedOut", "processingTimeMs", "needsReview", "groupTotals"):
            assert key in payload
        assert set(payload["calibration"]) >= {"notation", "pixelsPerUnit", "assumed"}
        assert set(payload["detections"][0]) >= {"type", "category", "bbox", "confidence", "measurement", "unit"}

    def test_job_result_is_json_serializable(self, pipeline, plan_raster, analysis_request):
        job = pipeline.analyze(plan_raster, analysis_request)

        encoded = json.dumps(job.to_dict())

        assert job.job_id in encoded

    def test_scenario_d_no_scale(self, pipeline, plan_raster, legend_payload):
        request = AnalysisRequest.model_validate({"legend": legend_payload})

        job = pipeline.analyze(plan_raster, request)

        assert job.output.calibration.assumed is True
        assert set(job.output.totals) == {"door", "wall", "marker"}
        assert all(value is not None for value in job.output.totals.values())
        assert any("assume" in u for u in job.annotations.thinking.uncertainties)

    def test_boundary_failure_still_produces_result(self, store, scan_config, plan_raster, analysis_request):
        client = FakeVisionClient(boundary="I am not sure.", responder=door_responder)
        pipeline = TakeoffPipeline(client, text_store=store, config=scan_config)

        job = pipeline.analyze(plan_raster, analysis_request)

        assert job.boundary.fallback is True
        assert job.result.crop_origin == (400, 300)
        assert job.annotations.thinking.alternatives_considered

    def test_overall_timeout_returns_partial_result(self, store, scan_config, plan_raster, legend_payload):
        def slow(pattern, n):
            time.sleep(0.1)
            return door_responder(pattern, n)

        client = FakeVisionClient(responder=slow)
        pipeline = TakeoffPipeline(client, text_store=store, config=scan_config)
        request = AnalysisRequest.model_validate({"legend": legend_payload, "timeoutMs": 300})

        job = pipeline.analyze(plan_raster, request)

        assert job.output.timed_out is True
        assert job.result.requests_skipped > 0
        assert set(job.output.totals) == {"door", "wall", "marker"}

    def test_budget_bounds_whole_page_requests(self, store, scan_config, plan_raster, legend_payload):
        client = SlowWholePageClient()
        pipeline = TakeoffPipeline(client, text_store=store, config=scan_config)
        request = AnalysisRequest.model_validate({"legend": legend_payload, "timeoutMs": 300})

        job = pipeline.analyze(plan_raster, request)

        boundary_call = client.calls[0]
        assert boundary_call["kind"] == "boundary"
        assert 0 < boundary_call["options"]["timeout"] <= 0.3
        assert job.boundary.fallback is True
        assert job.output.timed_out is True
        assert job.result.processing_time_ms < 1500

    def test_cancelled_job_returns_complete_payload(self, pipeline, plan_raster, analysis_request):
        cancel = threading.Event()
        cancel.set()

        job = pipeline.analyze(plan_raster, analysis_request, cancel_token=cancel)

        assert job.result.cancelled is True
        assert job.boundary.method == "skipped"
        assert job.redaction.method == "skipped"
        assert job.result.requests_issued == 0
        assert len(job.annotations.reasoning) == 6

    def test_analyze_image_document(self, pipeline, analysis_request, tmp_path):
        path = tmp_path / "plan.png"
        Image.fromarray(make_plan_array()).save(path)

        job = pipeline.analyze_document(str(path), analysis_request)

        assert job.output.totals["door"] == 4.0
        assert job.annotations.metadata["source"] == str(path)

    def test_conversion_error_is_fatal(self, pipeline, analysis_request, tmp_path):
        with pytest.raises(ConversionError):
            pipeline.analyze_document(str(tmp_path / "missing.pdf"), analysis_request)


class TestAnalysisRequest:
    """Input contract validation"""

    def test_snake_case_accepted(self):
        request = AnalysisRequest(tile_size=500, overlap=10, legend=[{"name": "Door", "category": "door"}])

        assert request.tile_size == 500

    def test_overlap_must_be_smaller_than_tile(self):
        with pytest.raises(ValidationError):
            AnalysisRequest.model_validate({"tileSize": 500, "overlap": 500, "legend": [{"name": "D", "category": "door"}]})

    def test_empty_legend_rejected(self):
        with pytest.raises(ValidationError):
            AnalysisRequest.model_validate({"legend": []})

    def test_mixed_measurement_in_category_rejected(self):
        legend = [
            {"name": "A", "category": "wall", "measurement": "area"},
            {"name": "B", "category": "wall", "measurement": "count"},
        ]
        with pytest.raises(ValidationError):
            AnalysisRequest.model_validate({"legend": legend})

    def test_measurement_inferred_from_category(self):
        request = AnalysisRequest.model_validate({"legend": [{"name": "Screed", "category": "Floor"}]})

        assert request.patterns[0].category == "floor"
        assert request.patterns[0].measurement == MeasurementType.AREA

    def test_scan_config_overlay(self, scan_config):
        request = AnalysisRequest.model_validate({
            "legend": [{"name": "D", "category": "door"}],
            "tileSize": 512,
            "overlap": 32,
            "maxWorkers": 3,
        })

        config = request.to_scan_config(scan_config)

        assert (config.tile_size, config.tile_overlap, config.max_workers) == (512, 32, 3)
        assert config.text_region_dir == scan_config.text_region_dir
