"""
sizefit

Compress images and PDFs to a user-defined target size by searching encoder
quality (and, for PDFs, render scale) until the output fits the budget.
"""

__version__ = "1.0.0"
__author__ = "sizefit Team"

from .errors import InvalidTargetError, SearchCancelled, SizefitError, UnsupportedFileError
from .image import ImageCompressionResult, ImageCompressor
from .pdf import PDFCompressionResult, PDFCompressor
from .search import EncodeResult, SearchMode, SearchOptions, search, search_async

__all__ = [
    "EncodeResult",
    "ImageCompressionResult",
    "ImageCompressor",
    "InvalidTargetError",
    "PDFCompressionResult",
    "PDFCompressor",
    "SearchCancelled",
    "SearchMode",
    "SearchOptions",
    "SizefitError",
    "UnsupportedFileError",
    "search",
    "search_async",
]
