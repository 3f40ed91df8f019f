"""PDF compression engine backed by PyMuPDF."""

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import fitz  # PyMuPDF
from PIL import Image

from .errors import SearchCancelled, UnsupportedFileError
from .image import to_pillow_quality
from .packaging import compressed_name
from .search import (
    EncodeResult,
    SearchOptions,
    SearchState,
    search,
    target_reached,
    validate_target,
)
from .utils import calculate_compression_ratio, format_size

logger = logging.getLogger(__name__)

MAX_PDF_BYTES = 50 * 1024 * 1024

EMPTY_METADATA = {
    "title": "",
    "author": "",
    "subject": "",
    "keywords": "",
    "creator": "",
    "producer": "",
}


@dataclass
class PDFCompressionResult:
    """Result of PDF compression."""
    success: bool
    input_path: str
    output_name: str
    original_size: int
    compressed_size: int
    compression_ratio: float
    pages_processed: int
    mode: str
    quality: Optional[float] = None
    scale: Optional[float] = None
    target_size: Optional[int] = None
    target_achieved: bool = True
    iterations: int = 1
    payload: bytes = b""
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "input_path": self.input_path,
            "output_name": self.output_name,
            "original_size": self.original_size,
            "original_size_formatted": format_size(self.original_size),
            "compressed_size": self.compressed_size,
            "compressed_size_formatted": format_size(self.compressed_size),
            "compression_ratio": round(self.compression_ratio * 100, 1),
            "pages_processed": self.pages_processed,
            "mode": self.mode,
            "quality": None if self.quality is None else round(self.quality, 3),
            "scale": None if self.scale is None else round(self.scale, 3),
            "target_size": self.target_size,
            "target_size_formatted": format_size(self.target_size) if self.target_size else None,
            "target_achieved": self.target_achieved,
            "iterations": self.iterations,
            "error": self.error,
        }


class CompressionStage:
    """Enumeration of compression stages for progress reporting."""
    LOADING = "Loading PDF"
    OPTIMIZING_OBJECTS = "Optimizing objects"
    RASTERIZING = "Rasterizing pages"
    FINALIZING = "Finalizing PDF"


class PDFCompressor:
    """
    PDF compression engine.

    Two modes:
    - structural: lossless re-save with garbage collection and deflated
      streams, optionally blanking metadata
    - target size: every page is rendered to a JPEG and the document rebuilt
      from those images, searching JPEG quality and render scale until the
      output fits the budget
    """

    def __init__(
        self,
        remove_metadata: bool = False,
        progress_callback: Optional[Callable[[str, int], None]] = None,
    ):
        """
        Initialize compressor.

        Args:
            remove_metadata: Blank title, author and similar fields on output
            progress_callback: Optional callback for progress updates (stage, percentage)
        """
        self.remove_metadata = remove_metadata
        self.progress_callback = progress_callback

    def _report_progress(self, stage: str, percentage: int):
        """Report progress if callback is set."""
        if self.progress_callback:
            self.progress_callback(stage, percentage)

    def open(self, pdf_path: Union[str, Path]) -> fitz.Document:
        """
        Open a PDF, enforcing the input limits.

        Raises:
            FileNotFoundError: If the file does not exist
            UnsupportedFileError: If the file is too large or not a PDF
        """
        pdf_path = Path(pdf_path)
        if not pdf_path.exists():
            raise FileNotFoundError(f"PDF file not found: {pdf_path}")

        size = pdf_path.stat().st_size
        if size > MAX_PDF_BYTES:
            raise UnsupportedFileError(
                f"{pdf_path.name} is {format_size(size)}; the limit is {format_size(MAX_PDF_BYTES)}"
            )

        try:
            doc = fitz.open(pdf_path, filetype="pdf")
        except Exception as e:
            raise UnsupportedFileError(f"{pdf_path.name} is not a readable PDF: {e}") from e
        if not doc.is_pdf:
            doc.close()
            raise UnsupportedFileError(f"{pdf_path.name} is not a PDF")
        return doc

    def render(self, doc: fitz.Document, quality: float, scale: float = 1.0) -> EncodeResult:
        """
        Rebuild ``doc`` as one JPEG per page.

        Args:
            doc: Source document (not modified)
            quality: JPEG quality in [0, 1]
            scale: Render scale; 1.0 renders one pixel per PDF point

        Returns:
            EncodeResult holding the rebuilt PDF
        """
        matrix = fitz.Matrix(scale, scale)
        out = fitz.open()
        try:
            for page in doc:
                pix = page.get_pixmap(matrix=matrix, alpha=False)
                pil_image = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)

                img_buffer = io.BytesIO()
                pil_image.save(
                    img_buffer,
                    format="JPEG",
                    quality=to_pillow_quality(quality),
                    optimize=True,
                )

                new_page = out.new_page(width=page.rect.width, height=page.rect.height)
                new_page.insert_image(new_page.rect, stream=img_buffer.getvalue())

            if self.remove_metadata:
                out.set_metadata(EMPTY_METADATA)
            else:
                source = doc.metadata or {}
                out.set_metadata({key: source.get(key) or "" for key in EMPTY_METADATA})

            payload = out.tobytes(garbage=4, deflate=True)
        finally:
            out.close()

        return EncodeResult.from_payload(payload, quality, scale)

    def compress_structural(self, pdf_path: Union[str, Path]) -> PDFCompressionResult:
        """
        Losslessly optimize a PDF.

        Args:
            pdf_path: Input PDF

        Returns:
            PDFCompressionResult
        """
        pdf_path = Path(pdf_path)
        original_size = pdf_path.stat().st_size if pdf_path.exists() else 0

        try:
            self._report_progress(CompressionStage.LOADING, 0)
            doc = self.open(pdf_path)
            try:
                self._report_progress(CompressionStage.OPTIMIZING_OBJECTS, 30)
                if self.remove_metadata:
                    doc.set_metadata(EMPTY_METADATA)
                page_count = len(doc)
                payload = doc.tobytes(
                    garbage=4,  # Maximum garbage collection
                    deflate=True,
                    clean=True,
                    deflate_images=True,
                    deflate_fonts=True,
                )
            finally:
                doc.close()
            self._report_progress(CompressionStage.FINALIZING, 100)

        except Exception as e:
            logger.warning("Structural compression of %s failed: %s", pdf_path.name, e)
            return self._failed(pdf_path, original_size, "structural", None, str(e))

        return PDFCompressionResult(
            success=True,
            input_path=str(pdf_path),
            output_name=compressed_name(pdf_path.name),
            original_size=original_size,
            compressed_size=len(payload),
            compression_ratio=calculate_compression_ratio(original_size, len(payload)),
            pages_processed=page_count,
            mode="structural",
            payload=payload,
        )

    def compress_to_target(
        self,
        pdf_path: Union[str, Path],
        target_size: int,
        options: Optional[SearchOptions] = None,
        cancel=None,
    ) -> PDFCompressionResult:
        """
        Compress a PDF to fit ``target_size`` bytes, best effort.

        Args:
            pdf_path: Input PDF
            target_size: Byte budget
            options: Search options (default: raster-mode defaults)
            cancel: Optional object with ``is_set()``

        Returns:
            PDFCompressionResult; ``target_achieved`` is False when even the
            smallest rendering exceeded the budget

        Raises:
            SearchCancelled: If ``cancel`` was set during the search
        """
        pdf_path = Path(pdf_path)
        original_size = pdf_path.stat().st_size if pdf_path.exists() else 0
        validate_target(target_size)
        options = options or SearchOptions.for_raster()
        probes = []

        def on_probe(result: EncodeResult, state: SearchState):
            self._report_progress(
                CompressionStage.RASTERIZING,
                min(99, int(state.probes / options.max_probes * 100)),
            )

        try:
            self._report_progress(CompressionStage.LOADING, 0)
            doc = self.open(pdf_path)
            try:
                page_count = len(doc)

                def encode(quality: float, scale: float) -> EncodeResult:
                    probes.append((quality, scale))
                    return self.render(doc, quality, scale)

                best = search(encode, target_size, options, cancel=cancel, on_probe=on_probe)
            finally:
                doc.close()
            self._report_progress(CompressionStage.FINALIZING, 100)

        except SearchCancelled:
            raise
        except Exception as e:
            logger.warning("Target-size compression of %s failed: %s", pdf_path.name, e)
            return self._failed(pdf_path, original_size, "target", target_size, str(e))

        return PDFCompressionResult(
            success=True,
            input_path=str(pdf_path),
            output_name=compressed_name(pdf_path.name),
            original_size=original_size,
            compressed_size=best.size_bytes,
            compression_ratio=calculate_compression_ratio(original_size, best.size_bytes),
            pages_processed=page_count,
            mode="target",
            quality=best.quality,
            scale=best.scale,
            target_size=target_size,
            target_achieved=target_reached(best, target_size),
            iterations=len(probes),
            payload=best.payload,
        )

    def _failed(
        self,
        pdf_path: Path,
        original_size: int,
        mode: str,
        target_size: Optional[int],
        error: str,
    ) -> PDFCompressionResult:
        return PDFCompressionResult(
            success=False,
            input_path=str(pdf_path),
            output_name=compressed_name(pdf_path.name),
            original_size=original_size,
            compressed_size=original_size,
            compression_ratio=0.0,
            pages_processed=0,
            mode=mode,
            target_size=target_size,
            target_achieved=False,
            error=error,
        )


def compress_pdf(
    input_path: Union[str, Path],
    target_size: Optional[int] = None,
    remove_metadata: bool = False,
    progress_callback: Optional[Callable[[str, int], None]] = None,
) -> PDFCompressionResult:
    """
    Convenience function to compress a PDF.

    Args:
        input_path: Path to input PDF
        target_size: Target size in bytes, or None for structural compression
        remove_metadata: Blank document metadata
        progress_callback: Optional progress callback

    Returns:
        PDFCompressionResult
    """
    compressor = PDFCompressor(remove_metadata, progress_callback)
    if target_size is None:
        return compressor.compress_structural(input_path)
    return compressor.compress_to_target(input_path, target_size)
