"""
Plan Rasterization
Converts plan documents (PDF pages or raster scans) to RasterImage
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

import fitz  # PyMuPDF
import numpy as np
from PIL import Image

from plantakeoff.domain.models.plan import RasterImage
from plantakeoff.services.error_types import ConversionError

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".gif", ".webp"}


class Rasterizer(ABC):
    """Document-to-raster conversion"""

    @abstractmethod
    def rasterize(self, path: str, dpi: int = 300, page: int = 0) -> RasterImage:
        """
        Render one page of a document

        Raises:
            ConversionError: The document is missing or cannot be rendered
        """


class PyMuPDFRasterizer(Rasterizer):
    """PDF pages through PyMuPDF, scanned images through Pillow"""

    def rasterize(self, path: str, dpi: int = 300, page: int = 0) -> RasterImage:
        source = Path(path)
        if not source.exists():
            raise ConversionError(str(path), "file not found")

        if source.suffix.lower() in IMAGE_SUFFIXES:
            return self._load_image(source)
        return self._render_pdf_page(source, dpi, page)

    def _load_image(self, source: Path) -> RasterImage:
        try:
            with Image.open(source) as image:
                image.load()
                raster = RasterImage.from_pil(image)
        except Exception as e:
            raise ConversionError(str(source), f"unreadable image: {e}") from e
        logger.info(f"Loaded raster {source.name}: {raster.width}×{raster.height}")
        return raster

    def _render_pdf_page(self, source: Path, dpi: int, page: int) -> RasterImage:
        try:
            doc = fitz.open(str(source))
        except Exception as e:
            raise ConversionError(str(source), f"unreadable PDF: {e}") from e

        try:
            if not 0 <= page < len(doc):
                raise ConversionError(str(source), f"page {page} out of range (document has {len(doc)} pages)")

            mat = fitz.Matrix(dpi / 72.0, dpi / 72.0)
            try:
                pix = doc[page].get_pixmap(matrix=mat, alpha=False)
            except Exception as e:
                raise ConversionError(str(source), f"rendering page {page} failed: {e}") from e

            pixels = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.width, pix.n)
            raster = RasterImage.from_array(pixels)
        finally:
            doc.close()

        logger.info(f"Rendered {source.name} page {page + 1} at {dpi} DPI: {raster.width}×{raster.height}")
        return raster
