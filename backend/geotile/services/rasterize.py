"""
Source raster loading: PDF rasterization with PyMuPDF (fitz) and image
decoding with OpenCV.

Control point pixel coordinates refer to the raster produced here, so a PDF
must always be rasterized at the DPI recorded on its document.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import cv2
import fitz  # PyMuPDF
import numpy as np

from geotile.config import settings
from geotile.models.document import Document, FileType

logger = logging.getLogger(__name__)


@dataclass
class RasterInfo:
    """Pixel dimensions of a source document."""
    width_px: int
    height_px: int
    dpi: Optional[int] = None


class RasterizeService:
    """Service for turning source documents into BGR rasters."""

    def __init__(self, default_dpi: int = None, cache_size: int = 4):
        self.default_dpi = default_dpi or settings.default_dpi
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._cache_lock = threading.Lock()

    def rasterize_pdf(self, source, page_number: int = 0, dpi: int = None) -> np.ndarray:
        """
        Rasterize a single PDF page to a BGR image.

        Args:
            source: Path to the PDF or its bytes
            page_number: Page index (0-based)
            dpi: Resolution for rasterization (default from settings)

        Raises:
            ValueError: If the PDF cannot be opened or the page doesn't exist
        """
        dpi = dpi or self.default_dpi
        start_time = time.time()

        try:
            if isinstance(source, (bytes, bytearray)):
                doc = fitz.open(stream=bytes(source), filetype="pdf")
            else:
                doc = fitz.open(source)
        except Exception as e:
            raise ValueError(f"Cannot open PDF: {e}")

        try:
            if page_number >= len(doc):
                raise ValueError(f"Page {page_number} does not exist (PDF has {len(doc)} pages)")

            page = doc[page_number]

            # PDF default is 72 DPI
            zoom = dpi / 72.0
            pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)

            image = np.frombuffer(pixmap.samples, dtype=np.uint8)
            image = image.reshape(pixmap.height, pixmap.width, 3)

            render_time_ms = int((time.time() - start_time) * 1000)
            logger.info(f"Rasterized PDF to {pixmap.width}x{pixmap.height} px in {render_time_ms}ms")

            return cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        finally:
            doc.close()

    def decode_image(self, content: bytes) -> np.ndarray:
        """Decode PNG/JPEG bytes to a BGR image."""
        nparr = np.frombuffer(content, np.uint8)
        image = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
        if image is None:
            raise ValueError("File is not a valid image")
        return image

    def validate_pdf(self, content: bytes) -> tuple[bool, str]:
        """
        Validate that content is a single-page PDF.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            doc = fitz.open(stream=content, filetype="pdf")
            page_count = len(doc)
            doc.close()
        except Exception as e:
            return False, f"File is not a valid PDF: {e}"

        if page_count == 0:
            return False, "PDF has no pages"
        if page_count > 1:
            return False, f"PDF has {page_count} pages; only single-page documents are supported"
        return True, ""

    def probe(self, content: bytes, file_type: FileType, dpi: int = None) -> RasterInfo:
        """
        Determine the raster size a source document will have.

        Raises:
            ValueError: If the content cannot be decoded
        """
        if file_type == FileType.PDF:
            dpi = dpi or self.default_dpi
            image = self.rasterize_pdf(content, dpi=dpi)
            return RasterInfo(width_px=image.shape[1], height_px=image.shape[0], dpi=dpi)

        image = self.decode_image(content)
        height, width = image.shape[:2]
        if width < 2 or height < 2:
            raise ValueError(f"Image too small: {width}x{height} pixels")
        return RasterInfo(width_px=width, height_px=height)

    def load_document_raster(self, document: Document) -> np.ndarray:
        """Load a document's raster, keeping the most recent few in memory."""
        with self._cache_lock:
            cached = self._cache.get(document.document_id)
            if cached is not None:
                self._cache.move_to_end(document.document_id)
                return cached

        path = Path(document.storage_path)
        if document.file_type == FileType.PDF:
            image = self.rasterize_pdf(path, dpi=document.dpi)
        else:
            image = cv2.imread(str(path), cv2.IMREAD_COLOR)
            if image is None:
                raise ValueError(f"Failed to load image: {path}")

        with self._cache_lock:
            self._cache[document.document_id] = image
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return image


# Global service instance
rasterize_service = RasterizeService()
