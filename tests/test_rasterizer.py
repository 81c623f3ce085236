"""
Tests for document rasterization
"""

import fitz
import numpy as np
import pytest
from PIL import Image

from plantakeoff.infrastructure.utils.pdf_processor import PyMuPDFRasterizer
from plantakeoff.services.error_types import ConversionError


@pytest.fixture
def sample_pdf(tmp_path) -> str:
    path = tmp_path / "plan.pdf"
    doc = fitz.open()
    page = doc.new_page(width=200, height=100)
    page.draw_rect(fitz.Rect(20, 20, 80, 60), color=(0, 0, 0), fill=(0, 0, 0))
    doc.save(str(path))
    doc.close()
    return str(path)


class TestPyMuPDFRasterizer:
    def test_pdf_rendered_at_requested_dpi(self, sample_pdf):
        raster = PyMuPDFRasterizer().rasterize(sample_pdf, dpi=144)

        assert raster.size == (400, 200)
        assert raster.channels == 3
        # The filled rectangle comes out dark
        assert raster.pixels[80, 100].max() < 50

    def test_page_out_of_range(self, sample_pdf):
        with pytest.raises(ConversionError):
            PyMuPDFRasterizer().rasterize(sample_pdf, page=3)

    def test_image_loaded_through_pillow(self, tmp_path):
        path = tmp_path / "scan.png"
        Image.fromarray(np.zeros((30, 40), dtype=np.uint8)).save(path)

        raster = PyMuPDFRasterizer().rasterize(str(path))

        assert raster.size == (40, 30)
        assert raster.channels == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConversionError) as exc_info:
            PyMuPDFRasterizer().rasterize(str(tmp_path / "nope.pdf"))

        assert "file not found" in str(exc_info.value)

    @pytest.mark.parametrize("name", ["broken.pdf", "broken.png"])
    def test_corrupt_document(self, tmp_path, name):
        path = tmp_path / name
        path.write_bytes(b"this is not a document")

        with pytest.raises(ConversionError):
            PyMuPDFRasterizer().rasterize(str(path))
