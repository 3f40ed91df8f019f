"""Image compression engine backed by Pillow."""

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from PIL import Image, UnidentifiedImageError

from .errors import SearchCancelled, UnsupportedFileError
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

MAX_IMAGE_BYTES = 10 * 1024 * 1024

# format key -> (Pillow format name, file extension)
OUTPUT_FORMATS = {
    "jpeg": ("JPEG", ".jpg"),
    "png": ("PNG", ".png"),
    "webp": ("WEBP", ".webp"),
}

_PILLOW_TO_KEY = {"JPEG": "jpeg", "MPO": "jpeg", "PNG": "png", "WEBP": "webp"}

# Modes Pillow can write as PNG without conversion.
PNG_MODES = ("1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16")


@dataclass
class ImageCompressionResult:
    """Result of compressing one image."""
    success: bool
    input_path: str
    output_name: str
    output_format: str
    original_size: int
    compressed_size: int
    compression_ratio: float
    quality: Optional[float] = None
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
            "output_format": self.output_format,
            "original_size": self.original_size,
            "original_size_formatted": format_size(self.original_size),
            "compressed_size": self.compressed_size,
            "compressed_size_formatted": format_size(self.compressed_size),
            "compression_ratio": round(self.compression_ratio * 100, 1),
            "quality": None if self.quality is None else round(self.quality, 3),
            "target_size": self.target_size,
            "target_size_formatted": format_size(self.target_size) if self.target_size else None,
            "target_achieved": self.target_achieved,
            "iterations": self.iterations,
            "error": self.error,
        }


def to_pillow_quality(quality: float) -> int:
    """Map a 0..1 quality onto Pillow's 1..95 scale."""
    return max(1, min(95, int(round(quality * 95))))


def flatten_to_rgb(image: Image.Image) -> Image.Image:
    """Convert to RGB, compositing any transparency onto white."""
    if image.mode in ("RGBA", "P", "LA"):
        background = Image.new("RGB", image.size, (255, 255, 255))
        if image.mode == "P":
            image = image.convert("RGBA")
        if image.mode in ("RGBA", "LA"):
            background.paste(image, mask=image.split()[-1])
            return background
        return image.convert("RGB")
    elif image.mode != "RGB":
        return image.convert("RGB")
    return image


def _rgb_or_rgba(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA"):
        return image
    has_alpha = "A" in image.getbands() or "transparency" in image.info
    return image.convert("RGBA" if has_alpha else "RGB")


class ImageCompressor:
    """
    Compresses raster images either at a fixed quality or to a target size.

    The output format is either kept from the source ("auto") or forced to
    one of ``OUTPUT_FORMATS``. PNG is lossless, so below full quality it is
    quantized to a palette whose size scales with the quality.
    """

    def __init__(
        self,
        output_format: str = "auto",
        preserve_metadata: bool = False,
        progress_callback: Optional[Callable[[str, int], None]] = None,
    ):
        if output_format != "auto" and output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format: {output_format}")
        self.output_format = output_format
        self.preserve_metadata = preserve_metadata
        self.progress_callback = progress_callback

    def _report_progress(self, stage: str, percentage: int):
        if self.progress_callback:
            self.progress_callback(stage, percentage)

    def load(self, image_path: Union[str, Path]) -> Image.Image:
        """
        Open and decode an image, enforcing the input limits.

        Raises:
            FileNotFoundError: If the file does not exist
            UnsupportedFileError: If the file is too large or not an image
        """
        image_path = Path(image_path)
        if not image_path.exists():
            raise FileNotFoundError(f"Image file not found: {image_path}")

        size = image_path.stat().st_size
        if size > MAX_IMAGE_BYTES:
            raise UnsupportedFileError(
                f"{image_path.name} is {format_size(size)}; the limit is {format_size(MAX_IMAGE_BYTES)}"
            )

        try:
            image = Image.open(image_path)
            image.load()
        except UnidentifiedImageError as e:
            raise UnsupportedFileError(f"{image_path.name} is not a supported image") from e
        return image

    def resolve_format(self, image: Image.Image) -> str:
        """Output format key for ``image``; unknown source formats become PNG."""
        if self.output_format != "auto":
            return self.output_format
        return _PILLOW_TO_KEY.get(image.format or "", "png")

    def encode(
        self,
        image: Image.Image,
        fmt: str,
        quality: float,
        scale: float = 1.0,
    ) -> EncodeResult:
        """
        Serialize ``image`` as ``fmt`` at the given quality and scale.

        Args:
            image: Decoded Pillow image (left untouched)
            fmt: Key of ``OUTPUT_FORMATS``
            quality: Encoder quality in [0, 1]
            scale: Resize factor applied before encoding

        Returns:
            EncodeResult with the encoded bytes
        """
        pillow_format, _ = OUTPUT_FORMATS[fmt]
        working = image

        if scale < 1.0:
            new_size = (max(1, int(image.width * scale)), max(1, int(image.height * scale)))
            working = working.resize(new_size, Image.Resampling.LANCZOS)

        save_kwargs = {}
        exif = image.info.get("exif")
        if self.preserve_metadata and exif:
            save_kwargs["exif"] = exif

        if fmt == "jpeg":
            working = flatten_to_rgb(working)
            save_kwargs.update(quality=to_pillow_quality(quality), optimize=True)
        elif fmt == "webp":
            working = _rgb_or_rgba(working)
            save_kwargs.update(quality=to_pillow_quality(quality), method=4)
        else:
            if quality < 1.0:
                working = _rgb_or_rgba(working)
                colors = max(2, int(256 * quality))
                working = working.quantize(colors=colors, method=Image.Quantize.FASTOCTREE)
            elif working.mode not in PNG_MODES:
                working = _rgb_or_rgba(working)
            save_kwargs["optimize"] = True

        buffer = io.BytesIO()
        working.save(buffer, format=pillow_format, **save_kwargs)
        return EncodeResult.from_payload(buffer.getvalue(), quality, scale)

    def compress_quality(
        self,
        image_path: Union[str, Path],
        quality: float,
    ) -> ImageCompressionResult:
        """
        Compress an image with a single encode at a fixed quality.

        Args:
            image_path: Input image
            quality: Encoder quality in [0, 1]

        Returns:
            ImageCompressionResult
        """
        return self._compress(image_path, quality=quality)

    def compress_to_target(
        self,
        image_path: Union[str, Path],
        target_size: int,
        options: Optional[SearchOptions] = None,
        cancel=None,
    ) -> ImageCompressionResult:
        """
        Compress an image to fit ``target_size`` bytes, best effort.

        Args:
            image_path: Input image
            target_size: Byte budget
            options: Search options (default: quality-mode defaults)
            cancel: Optional object with ``is_set()``

        Returns:
            ImageCompressionResult; ``target_achieved`` is False when even the
            smallest encoding exceeded the budget

        Raises:
            SearchCancelled: If ``cancel`` was set during the search
        """
        validate_target(target_size)
        return self._compress(
            image_path,
            target_size=target_size,
            options=options or SearchOptions.for_quality(),
            cancel=cancel,
        )

    def _compress(
        self,
        image_path: Union[str, Path],
        quality: Optional[float] = None,
        target_size: Optional[int] = None,
        options: Optional[SearchOptions] = None,
        cancel=None,
    ) -> ImageCompressionResult:
        image_path = Path(image_path)
        original_size = image_path.stat().st_size if image_path.exists() else 0
        fmt = self.output_format if self.output_format != "auto" else "png"

        try:
            image = self.load(image_path)
            fmt = self.resolve_format(image)
            self._report_progress("Encoding", 0)

            if target_size is None:
                encoded = self.encode(image, fmt, quality)
                iterations = 1
            else:
                def on_probe(result: EncodeResult, state: SearchState):
                    self._report_progress(
                        "Searching quality",
                        min(99, int(state.probes / options.max_probes * 100)),
                    )

                encoded, iterations = self._search(image, fmt, target_size, options, cancel, on_probe)

            self._report_progress("Done", 100)

        except SearchCancelled:
            raise
        except Exception as e:
            logger.warning("Compression of %s failed: %s", image_path.name, e)
            return ImageCompressionResult(
                success=False,
                input_path=str(image_path),
                output_name=compressed_name(image_path.name, OUTPUT_FORMATS[fmt][1]),
                output_format=fmt,
                original_size=original_size,
                compressed_size=original_size,
                compression_ratio=0.0,
                target_size=target_size,
                target_achieved=False,
                error=str(e),
            )

        keep_extension = self.output_format == "auto" and fmt == _PILLOW_TO_KEY.get(image.format or "")
        output_name = compressed_name(
            image_path.name, None if keep_extension else OUTPUT_FORMATS[fmt][1]
        )

        return ImageCompressionResult(
            success=True,
            input_path=str(image_path),
            output_name=output_name,
            output_format=fmt,
            original_size=original_size,
            compressed_size=encoded.size_bytes,
            compression_ratio=calculate_compression_ratio(original_size, encoded.size_bytes),
            quality=encoded.quality,
            target_size=target_size,
            target_achieved=target_size is None or target_reached(encoded, target_size),
            iterations=iterations,
            payload=encoded.payload,
        )

    def _search(self, image, fmt, target_size, options, cancel, on_probe):
        probes = []

        def encode(quality: float, scale: float) -> EncodeResult:
            probes.append(quality)
            return self.encode(image, fmt, quality, scale)

        result = search(encode, target_size, options, cancel=cancel, on_probe=on_probe)
        return result, len(probes)
