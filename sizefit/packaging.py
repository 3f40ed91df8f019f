"""Output naming and batch packaging."""

import io
import re
import zipfile
from pathlib import PurePath
from typing import Iterable, Optional, Tuple

IMAGE_ARCHIVE_FOLDER = "compressed-images"
PDF_ARCHIVE_FOLDER = "compressed-pdfs"

COMPRESSED_SUFFIX = "-compressed"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_. ]")


def sanitize_filename(name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9-_. ]`` with an underscore."""
    return _UNSAFE_CHARS.sub("_", name)


def compressed_name(filename: str, extension: Optional[str] = None) -> str:
    """
    Name for the compressed counterpart of ``filename``.

    Args:
        filename: Original file name (directories are dropped)
        extension: Replacement extension including the dot, or None to keep
            the original one

    Returns:
        e.g. ``photo.png`` -> ``photo-compressed.png``
    """
    path = PurePath(PurePath(filename).name)
    suffix = path.suffix if extension is None else extension
    return f"{path.stem}{COMPRESSED_SUFFIX}{suffix}"


def build_zip(entries: Iterable[Tuple[str, bytes]], folder: str) -> bytes:
    """
    Pack ``(name, payload)`` pairs into an in-memory zip archive.

    Names are sanitized and placed under ``folder/``. Colliding names get a
    numeric suffix instead of overwriting earlier entries.

    Returns:
        The archive bytes
    """
    buffer = io.BytesIO()
    seen = set()

    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, payload in entries:
            safe_name = sanitize_filename(name)
            if safe_name in seen:
                path = PurePath(safe_name)
                counter = 2
                while f"{path.stem}-{counter}{path.suffix}" in seen:
                    counter += 1
                safe_name = f"{path.stem}-{counter}{path.suffix}"
            seen.add(safe_name)
            archive.writestr(f"{folder}/{safe_name}", payload)

    return buffer.getvalue()


def archive_name(folder: str) -> str:
    return f"{folder}.zip"
