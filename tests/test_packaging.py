import io
import zipfile

import pytest

from sizefit.packaging import (
    IMAGE_ARCHIVE_FOLDER,
    archive_name,
    build_zip,
    compressed_name,
    sanitize_filename,
)


@pytest.mark.parametrize("name, expected", [
    ("photo.png", "photo-compressed.png"),
    ("report.PDF", "report-compressed.PDF"),
    ("archive.tar.gz", "archive.tar-compressed.gz"),
    ("README", "README-compressed"),
    ("uploads/nested/pic.jpg", "pic-compressed.jpg"),
])
def test_compressed_name(name, expected):
    assert compressed_name(name) == expected


def test_compressed_name_with_new_extension():
    assert compressed_name("scan.png", ".webp") == "scan-compressed.webp"


def test_sanitize_filename():
    assert sanitize_filename("my photo (1).jpg") == "my photo _1_.jpg"
    assert sanitize_filename("résumé.pdf") == "r_sum_.pdf"
    assert sanitize_filename("safe-name_v2.png") == "safe-name_v2.png"


def test_build_zip_places_entries_in_folder():
    data = build_zip([("a.jpg", b"one"), ("b?.jpg", b"two")], IMAGE_ARCHIVE_FOLDER)

    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert archive.namelist() == ["compressed-images/a.jpg", "compressed-images/b_.jpg"]
        assert archive.read("compressed-images/b_.jpg") == b"two"


def test_build_zip_keeps_colliding_names():
    data = build_zip([("x.png", b"1"), ("x.png", b"2"), ("x.png", b"3")], "out")

    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert archive.namelist() == ["out/x.png", "out/x-2.png", "out/x-3.png"]
        assert archive.read("out/x-3.png") == b"3"


def test_archive_name():
    assert archive_name(IMAGE_ARCHIVE_FOLDER) == "compressed-images.zip"
