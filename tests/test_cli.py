import json
import shutil
import zipfile

from click.testing import CliRunner

from cli import cli


def test_no_command_prints_help():
    result = CliRunner().invoke(cli, [])

    assert result.exit_code == 0
    assert "image" in result.output
    assert "pdf" in result.output


def test_image_quality_mode_writes_next_to_input(jpeg_path):
    result = CliRunner().invoke(cli, ["image", str(jpeg_path), "--quality", "50"])

    assert result.exit_code == 0, result.output
    assert (jpeg_path.parent / "photo-compressed.jpg").exists()


def test_image_target_mode_json(jpeg_path, tmp_path):
    out_dir = tmp_path / "out"
    result = CliRunner().invoke(
        cli,
        ["image", str(jpeg_path), "--target", "20KB", "--output-dir", str(out_dir), "--json-output"],
    )

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["total"] == 1
    assert data["failed"] == 0
    assert data["results"][0]["target_size"] == 20 * 1024
    assert data["outputs"] == [str(out_dir / "photo-compressed.jpg")]
    assert (out_dir / "photo-compressed.jpg").exists()


def test_target_below_floor_rejected(jpeg_path):
    result = CliRunner().invoke(cli, ["image", str(jpeg_path), "--target", "5KB"])

    assert result.exit_code == 2
    assert "at least" in result.output


def test_pdf_target_below_pdf_floor_rejected(pdf_path):
    result = CliRunner().invoke(cli, ["pdf", str(pdf_path), "--target", "30KB"])

    assert result.exit_code == 2
    assert "at least 50.0 KB" in result.output


def test_pdf_batch_into_zip(pdf_path, tmp_path):
    second = tmp_path / "appendix.pdf"
    shutil.copy(pdf_path, second)
    zip_path = tmp_path / "batch.zip"

    result = CliRunner().invoke(
        cli,
        ["pdf", str(pdf_path), str(second), "--zip", str(zip_path), "--remove-metadata"],
    )

    assert result.exit_code == 0, result.output
    with zipfile.ZipFile(zip_path) as archive:
        assert sorted(archive.namelist()) == [
            "compressed-pdfs/appendix-compressed.pdf",
            "compressed-pdfs/report-compressed.pdf",
        ]


def test_pdf_failure_exits_non_zero(tmp_path):
    bogus = tmp_path / "bogus.pdf"
    bogus.write_text("nope")

    result = CliRunner().invoke(cli, ["pdf", str(bogus), "--json-output"])

    assert result.exit_code == 1
    assert not (tmp_path / "bogus-compressed.pdf").exists()
