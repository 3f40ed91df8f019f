#!/usr/bin/env python3
"""
sizefit - CLI Interface

Compress images and PDFs to a target size.

Usage:
    sizefit image photo.jpg --target 200KB
    sizefit image *.png --quality 70 --format webp --zip images.zip
    sizefit pdf report.pdf --target 500KB --remove-metadata
    sizefit pdf *.pdf --json-output
"""

import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from sizefit import ImageCompressor, PDFCompressor, SizefitError
from sizefit.image import OUTPUT_FORMATS
from sizefit.packaging import IMAGE_ARCHIVE_FOLDER, PDF_ARCHIVE_FOLDER, build_zip
from sizefit.utils import MIN_PDF_TARGET_BYTES, MIN_TARGET_BYTES, format_size, parse_target

console = Console()
logger = logging.getLogger("sizefit.cli")


def configure_logging(verbose: bool):
    """Route library logging through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def create_progress_bar(disable: bool = False):
    """Create a rich progress bar."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeRemainingColumn(),
        console=console,
        disable=disable,
    )


def resolve_target(target: Optional[str], minimum: int = MIN_TARGET_BYTES) -> Optional[int]:
    if target is None:
        return None
    try:
        return parse_target(target, minimum)
    except SizefitError as e:
        raise click.BadParameter(str(e), param_hint="--target")


def write_outputs(results: list, output_dir: Optional[str], zip_path: Optional[str], folder: str):
    """Write successful payloads next to their inputs, into a directory, or into a zip."""
    succeeded = [r for r in results if r.success]

    if zip_path:
        archive = build_zip(((r.output_name, r.payload) for r in succeeded), folder)
        Path(zip_path).write_bytes(archive)
        return [zip_path]

    written = []
    directory = Path(output_dir) if output_dir else None
    if directory:
        directory.mkdir(parents=True, exist_ok=True)

    for result in succeeded:
        target_dir = directory or Path(result.input_path).parent
        output_path = target_dir / result.output_name
        output_path.write_bytes(result.payload)
        written.append(str(output_path))
    return written


def report(results: list, written: List[str], json_output: bool, title: str):
    """Print a results table or JSON and exit non-zero if anything failed."""
    failed = [r for r in results if not r.success]

    if json_output:
        click.echo(json.dumps({
            "total": len(results),
            "success": len(results) - len(failed),
            "failed": len(failed),
            "outputs": written,
            "results": [r.to_dict() for r in results],
        }, indent=2))
    else:
        table = Table(title=title)
        table.add_column("File", style="cyan")
        table.add_column("Original", justify="right")
        table.add_column("Compressed", justify="right", style="green")
        table.add_column("Saved", justify="right")
        table.add_column("Target", justify="center")

        for r in results:
            if not r.success:
                table.add_row(Path(r.input_path).name, format_size(r.original_size), "-", "-", "[red]error[/red]")
                continue
            if r.target_size is None:
                target_cell = "-"
            elif r.target_achieved:
                target_cell = "[green]met[/green]"
            else:
                target_cell = "[yellow]missed[/yellow]"
            table.add_row(
                Path(r.input_path).name,
                format_size(r.original_size),
                format_size(r.compressed_size),
                f"{r.compression_ratio * 100:.1f}%",
                target_cell,
            )

        console.print(table)

        for r in results:
            if r.success and r.target_size is not None and not r.target_achieved:
                console.print(
                    f"[yellow]{Path(r.input_path).name}: smallest output is "
                    f"{format_size(r.compressed_size)}, above the {format_size(r.target_size)} target[/yellow]"
                )
            elif not r.success:
                console.print(f"[red]Error: {Path(r.input_path).name}: {r.error}[/red]")

        for path in written:
            console.print(f"[bold green]Saved to: {path}[/bold green]")

    if failed:
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """sizefit - Compress images and PDFs to a target size."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("input_files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--target", "-t",
    help="Target file size (e.g., 200KB, 1.5MB). Omit to compress at a fixed quality",
)
@click.option(
    "--quality", "-q",
    type=click.IntRange(1, 100),
    default=80,
    show_default=True,
    help="Quality used when no target is given",
)
@click.option(
    "--format", "output_format",
    type=click.Choice(["auto"] + sorted(OUTPUT_FORMATS)),
    default="auto",
    show_default=True,
    help="Output format; auto keeps the source format",
)
@click.option("--preserve-metadata", is_flag=True, help="Keep EXIF metadata")
@click.option("--output-dir", "-d", type=click.Path(file_okay=False), help="Output directory (default: same as input)")
@click.option("--zip", "zip_path", type=click.Path(dir_okay=False), help="Write all outputs into one zip archive")
@click.option("--verbose", "-v", is_flag=True, help="Log every search probe")
@click.option("--json-output", "-j", is_flag=True, help="Output results as JSON")
def image(
    input_files: tuple,
    target: Optional[str],
    quality: int,
    output_format: str,
    preserve_metadata: bool,
    output_dir: Optional[str],
    zip_path: Optional[str],
    verbose: bool,
    json_output: bool,
):
    """Compress one or more images."""
    configure_logging(verbose)
    target_bytes = resolve_target(target)

    results = []
    with create_progress_bar(disable=json_output) as progress:
        overall = progress.add_task(f"Processing {len(input_files)} image(s)...", total=len(input_files))

        for input_file in input_files:
            compressor = ImageCompressor(output_format=output_format, preserve_metadata=preserve_metadata)
            if target_bytes is None:
                result = compressor.compress_quality(input_file, quality / 100)
            else:
                result = compressor.compress_to_target(input_file, target_bytes)
            logger.debug("%s: %s", input_file, result.to_dict())
            results.append(result)
            progress.update(overall, advance=1)

    written = write_outputs(results, output_dir, zip_path, IMAGE_ARCHIVE_FOLDER)
    report(results, written, json_output, "Image Compression Results")


@cli.command()
@click.argument("input_files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--target", "-t",
    help="Target file size (e.g., 500KB, 2MB). Omit for lossless optimization",
)
@click.option("--remove-metadata", is_flag=True, help="Blank title, author and similar fields")
@click.option("--output-dir", "-d", type=click.Path(file_okay=False), help="Output directory (default: same as input)")
@click.option("--zip", "zip_path", type=click.Path(dir_okay=False), help="Write all outputs into one zip archive")
@click.option("--verbose", "-v", is_flag=True, help="Log every search probe")
@click.option("--json-output", "-j", is_flag=True, help="Output results as JSON")
def pdf(
    input_files: tuple,
    target: Optional[str],
    remove_metadata: bool,
    output_dir: Optional[str],
    zip_path: Optional[str],
    verbose: bool,
    json_output: bool,
):
    """Compress one or more PDF files."""
    configure_logging(verbose)
    target_bytes = resolve_target(target, MIN_PDF_TARGET_BYTES)

    results = []
    with create_progress_bar(disable=json_output) as progress:
        task = progress.add_task("Initializing...", total=100)

        def progress_callback(stage: str, percentage: int):
            progress.update(task, description=stage, completed=percentage)

        for input_file in input_files:
            progress.update(task, description=Path(input_file).name, completed=0)
            compressor = PDFCompressor(remove_metadata=remove_metadata, progress_callback=progress_callback)
            if target_bytes is None:
                result = compressor.compress_structural(input_file)
            else:
                result = compressor.compress_to_target(input_file, target_bytes)
            logger.debug("%s: %s", input_file, result.to_dict())
            results.append(result)

    written = write_outputs(results, output_dir, zip_path, PDF_ARCHIVE_FOLDER)
    report(results, written, json_output, "PDF Compression Results")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
