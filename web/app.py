#!/usr/bin/env python3
"""
sizefit - Flask Web Application

A local JSON API for image and PDF compression with background jobs,
progress tracking, cancellation and batch zip downloads.
"""

import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Dict

from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
from werkzeug.utils import secure_filename

from sizefit import ImageCompressor, PDFCompressor, SearchCancelled, SizefitError
from sizefit.image import MAX_IMAGE_BYTES, OUTPUT_FORMATS
from sizefit.packaging import (
    IMAGE_ARCHIVE_FOLDER,
    PDF_ARCHIVE_FOLDER,
    archive_name,
    build_zip,
)
from sizefit.pdf import MAX_PDF_BYTES
from sizefit.utils import MIN_PDF_TARGET_BYTES, MIN_TARGET_BYTES, parse_target

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

# Configuration
app.config["UPLOAD_FOLDER"] = Path(
    os.environ.get("SIZEFIT_UPLOAD_FOLDER", Path(tempfile.gettempdir()) / "sizefit_uploads")
)
app.config["OUTPUT_FOLDER"] = Path(
    os.environ.get("SIZEFIT_OUTPUT_FOLDER", Path(tempfile.gettempdir()) / "sizefit_output")
)
app.config["MAX_CONTENT_LENGTH"] = 500 * 1024 * 1024  # 500MB per request
app.config["MAX_FILE_AGE_HOURS"] = 1

KINDS = {
    "image": {
        "extensions": {"jpg", "jpeg", "png", "webp", "gif", "bmp", "tiff"},
        "max_bytes": MAX_IMAGE_BYTES,
        "min_target": MIN_TARGET_BYTES,
        "folder": IMAGE_ARCHIVE_FOLDER,
    },
    "pdf": {
        "extensions": {"pdf"},
        "max_bytes": MAX_PDF_BYTES,
        "min_target": MIN_PDF_TARGET_BYTES,
        "folder": PDF_ARCHIVE_FOLDER,
    },
}

# Job tracking
jobs: Dict[str, dict] = {}
jobs_lock = threading.Lock()


def upload_folder() -> Path:
    folder = Path(app.config["UPLOAD_FOLDER"])
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def output_folder() -> Path:
    folder = Path(app.config["OUTPUT_FOLDER"])
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def allowed_file(filename: str, kind: str) -> bool:
    """Check if file extension is allowed for this kind of job."""
    return "." in filename and filename.rsplit(".", 1)[1].lower() in KINDS[kind]["extensions"]


def cleanup_old_files():
    """Clean up files older than MAX_FILE_AGE_HOURS."""
    now = time.time()
    max_age_seconds = app.config["MAX_FILE_AGE_HOURS"] * 3600

    for folder in [upload_folder(), output_folder()]:
        for path in folder.iterdir():
            if now - path.stat().st_mtime <= max_age_seconds:
                continue
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)


def form_flag(name: str) -> bool:
    return request.form.get(name, "").lower() in ("1", "true", "yes", "on")


@app.route("/api/compress", methods=["POST"])
def start_compression():
    """Accept uploads and start a compression job."""
    cleanup_old_files()

    kind = request.form.get("kind", "image")
    if kind not in KINDS:
        return jsonify({"error": f"Unknown kind: {kind}"}), 400

    files = [f for f in request.files.getlist("files") if f.filename]
    if not files:
        return jsonify({"error": "No file provided"}), 400

    target_bytes = None
    target_size_str = request.form.get("target_size")
    if target_size_str:
        try:
            target_bytes = parse_target(target_size_str, KINDS[kind]["min_target"])
        except SizefitError as e:
            return jsonify({"error": str(e)}), 400

    try:
        quality = int(request.form.get("quality", 80)) / 100
    except ValueError:
        return jsonify({"error": "Quality must be an integer between 1 and 100"}), 400
    if not 0 < quality <= 1:
        return jsonify({"error": "Quality must be an integer between 1 and 100"}), 400

    output_format = request.form.get("format", "auto")
    if output_format != "auto" and output_format not in OUTPUT_FORMATS:
        return jsonify({"error": f"Unsupported output format: {output_format}"}), 400

    job_id = str(uuid.uuid4())
    job_dir = upload_folder() / job_id
    inputs = []
    for index, file in enumerate(files):
        filename = secure_filename(file.filename)
        if not allowed_file(filename, kind):
            shutil.rmtree(job_dir, ignore_errors=True)
            return jsonify({"error": f"{file.filename} is not a supported {kind} file"}), 400
        # One directory per upload keeps the bare name, so output names match it
        file_dir = job_dir / str(index)
        file_dir.mkdir(parents=True)
        file_path = file_dir / filename
        file.save(file_path)
        if file_path.stat().st_size > KINDS[kind]["max_bytes"]:
            shutil.rmtree(job_dir, ignore_errors=True)
            return jsonify({"error": f"{file.filename} exceeds the size limit"}), 400
        inputs.append((filename, file_path))

    settings = {
        "kind": kind,
        "target_bytes": target_bytes,
        "quality": quality,
        "format": output_format,
        "preserve_metadata": form_flag("preserve_metadata"),
        "remove_metadata": form_flag("remove_metadata"),
    }

    cancel = threading.Event()
    with jobs_lock:
        jobs[job_id] = {
            "status": "starting",
            "stage": "Initializing",
            "progress": 0,
            "kind": kind,
            "target_size": target_bytes,
            "results": [],
            "error": None,
            "output_files": [],
            "cancel": cancel,
        }

    thread = threading.Thread(
        target=run_compression_job,
        args=(job_id, inputs, settings, cancel),
        daemon=True,
    )
    thread.start()
    logger.info("Started %s job %s with %d file(s)", kind, job_id, len(inputs))

    return jsonify({"job_id": job_id})


def run_compression_job(job_id: str, inputs: list, settings: dict, cancel: threading.Event):
    """Run compression job in background."""
    total = len(inputs)

    def progress_callback(index: int):
        def update(stage: str, percentage: int):
            with jobs_lock:
                if job_id in jobs:
                    jobs[job_id]["stage"] = stage
                    jobs[job_id]["progress"] = int((index * 100 + percentage) / total)
                    jobs[job_id]["status"] = "processing"
        return update

    try:
        results = []
        output_files = []

        for index, (filename, file_path) in enumerate(inputs):
            callback = progress_callback(index)
            if settings["kind"] == "image":
                compressor = ImageCompressor(
                    output_format=settings["format"],
                    preserve_metadata=settings["preserve_metadata"],
                    progress_callback=callback,
                )
                if settings["target_bytes"] is None:
                    result = compressor.compress_quality(file_path, settings["quality"])
                else:
                    result = compressor.compress_to_target(file_path, settings["target_bytes"], cancel=cancel)
            else:
                compressor = PDFCompressor(
                    remove_metadata=settings["remove_metadata"],
                    progress_callback=callback,
                )
                if settings["target_bytes"] is None:
                    result = compressor.compress_structural(file_path)
                else:
                    result = compressor.compress_to_target(file_path, settings["target_bytes"], cancel=cancel)

            # Report the uploaded name, not the temporary path
            result.input_path = filename
            entry = {"name": None, "path": None}
            if result.success:
                output_path = output_folder() / f"{job_id}_{index}_{result.output_name}"
                output_path.write_bytes(result.payload)
                entry = {"name": result.output_name, "path": str(output_path)}
            results.append(result.to_dict())
            output_files.append(entry)

        succeeded = any(entry["path"] for entry in output_files)
        with jobs_lock:
            jobs[job_id]["status"] = "completed" if succeeded else "failed"
            jobs[job_id]["stage"] = "Complete" if succeeded else "Failed"
            jobs[job_id]["progress"] = 100
            jobs[job_id]["results"] = results
            jobs[job_id]["output_files"] = output_files
            if not succeeded:
                jobs[job_id]["error"] = "; ".join(r["error"] for r in results if r["error"])
        logger.info("Job %s finished: %s", job_id, jobs[job_id]["status"])

    except SearchCancelled as e:
        with jobs_lock:
            jobs[job_id]["status"] = "cancelled"
            jobs[job_id]["stage"] = "Cancelled"
            jobs[job_id]["error"] = str(e)
        logger.info("Job %s cancelled", job_id)

    except Exception as e:
        logger.exception("Job %s crashed", job_id)
        with jobs_lock:
            jobs[job_id]["status"] = "failed"
            jobs[job_id]["stage"] = "Error"
            jobs[job_id]["error"] = str(e)


def public_job(job: dict) -> dict:
    """Job fields safe to expose over the API."""
    return {
        "status": job["status"],
        "stage": job["stage"],
        "progress": job["progress"],
        "kind": job["kind"],
        "target_size": job["target_size"],
        "results": job["results"],
        "error": job["error"],
        "downloads": [entry["name"] for entry in job["output_files"]],
    }


@app.route("/api/job/<job_id>")
def get_job_status(job_id: str):
    """Get job status and progress."""
    with jobs_lock:
        if job_id not in jobs:
            return jsonify({"error": "Job not found"}), 404

        job = public_job(jobs[job_id])

    return jsonify(job)


@app.route("/api/job/<job_id>/cancel", methods=["POST"])
def cancel_job(job_id: str):
    """Ask a running job to stop before its next probe."""
    with jobs_lock:
        if job_id not in jobs:
            return jsonify({"error": "Job not found"}), 404

        job = jobs[job_id]
        if job["status"] in ("completed", "failed", "cancelled"):
            return jsonify({"error": f"Job already {job['status']}"}), 409
        if job["target_size"] is None:
            return jsonify({"error": "Only target-size jobs can be cancelled"}), 409

        job["cancel"].set()

    return jsonify({"job_id": job_id, "status": "cancelling"})


@app.route("/api/download/<job_id>/<int:index>")
def download_file(job_id: str, index: int):
    """Download one output file."""
    with jobs_lock:
        if job_id not in jobs:
            return jsonify({"error": "Job not found"}), 404

        job = jobs[job_id]

        if job["status"] != "completed":
            return jsonify({"error": "Job not completed"}), 400

        if index >= len(job["output_files"]) or not job["output_files"][index]["path"]:
            return jsonify({"error": "File not found"}), 404

        entry = job["output_files"][index]

    file_path = Path(entry["path"])
    if not file_path.exists():
        return jsonify({"error": "File no longer available"}), 404

    return send_file(
        file_path,
        as_attachment=True,
        download_name=entry["name"],
    )


@app.route("/api/download/<job_id>/zip")
def download_zip(job_id: str):
    """Download every output of a job as one zip archive."""
    with jobs_lock:
        if job_id not in jobs:
            return jsonify({"error": "Job not found"}), 404

        job = jobs[job_id]

        if job["status"] != "completed":
            return jsonify({"error": "Job not completed"}), 400

        entries = [entry for entry in job["output_files"] if entry["path"]]
        folder = KINDS[job["kind"]]["folder"]

    try:
        archive = build_zip(
            ((entry["name"], Path(entry["path"]).read_bytes()) for entry in entries),
            folder,
        )
    except FileNotFoundError:
        return jsonify({"error": "File no longer available"}), 404

    zip_path = output_folder() / f"{job_id}_{archive_name(folder)}"
    zip_path.write_bytes(archive)

    return send_file(
        zip_path,
        as_attachment=True,
        download_name=archive_name(folder),
        mimetype="application/zip",
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    print("Starting sizefit Web Server...")
    print("API available at http://localhost:5000/api")
    app.run(debug=True, host="0.0.0.0", port=5000)
