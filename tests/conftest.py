import io
import random

import fitz  # PyMuPDF
import pytest
from PIL import Image


def noisy_image(width=200, height=160, mode="RGB", seed=7):
    """Random-noise image whose encoded size tracks the encoder quality."""
    rng = random.Random(seed)
    bands = len(mode)
    data = rng.randbytes(width * height * bands)
    return Image.frombytes(mode, (width, height), data)


@pytest.fixture
def jpeg_path(tmp_path):
    path = tmp_path / "photo.jpg"
    noisy_image().save(path, format="JPEG", quality=95)
    return path


@pytest.fixture
def png_path(tmp_path):
    path = tmp_path / "logo.png"
    noisy_image(mode="RGBA").save(path, format="PNG")
    return path


@pytest.fixture
def pdf_path(tmp_path):
    buffer = io.BytesIO()
    noisy_image(300, 300).save(buffer, format="PNG")

    doc = fitz.open()
    for _ in range(2):
        page = doc.new_page(width=300, height=300)
        page.insert_image(page.rect, stream=buffer.getvalue())
        page.insert_text((20, 40), "sizefit test page")
    doc.set_metadata({"title": "Quarterly report", "author": "Finance"})

    path = tmp_path / "report.pdf"
    doc.save(path)
    doc.close()
    return path
