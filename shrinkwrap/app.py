from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import argparse
import logging
import sys

from PySide6.QtCore import QCoreApplication, QObject, Slot

from .bridge import StateBridge
from .config import load_options
from .errors import ConfigError
from .log import setup_logging
from .models import (
    Completed,
    CompressionQuality,
    Error,
    FileState,
    InvalidFile,
    Pending,
    PipelineOptions,
    ProcessingState,
    Summary,
    format_file_size,
    iter_pdf_files,
)
from .pipeline import CompressionPipeline

logger = logging.getLogger(__name__)


class ProgressReporter(QObject):
    def __init__(self, app: QCoreApplication) -> None:
        super().__init__()
        self.app = app

    @Slot(str, object)
    def on_file_changed(self, path: str, state: object) -> None:
        logger.info(describe_state(path, state))

    @Slot(object)
    def on_changed(self, snapshot: ProcessingState) -> None:
        if snapshot.is_idle:
            self.app.quit()


def describe_state(path: str, state: FileState) -> str:
    name = Path(path).name
    if isinstance(state, Pending):
        return f"{name}: queued"
    if isinstance(state, Completed):
        return (
            f"{name}: {format_file_size(state.initial_size_bytes)} -> "
            f"{format_file_size(state.final_size_bytes)}, saved {state.ratio:.1%}"
        )
    if isinstance(state, InvalidFile):
        return f"{name}: not a PDF file"
    if isinstance(state, Error):
        return f"{name}: {state.message}"
    return f"{name}: compressing"


def format_summary(summary: Summary) -> str:
    return (
        f"Done: {summary.completed} compressed, {summary.invalid} skipped, "
        f"{summary.errors} failed, saved {summary.saved_ratio:.1%} "
        f"({format_file_size(max(summary.initial_bytes - summary.final_bytes, 0))})"
    )


def parse_args(args: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="shrinkwrap", description="Compress PDF files in place with Ghostscript")
    parser.add_argument("paths", nargs="+", type=Path, help="PDF files or folders containing them")
    parser.add_argument("--quality", choices=[quality.name.lower() for quality in CompressionQuality])
    parser.add_argument("--workers", type=int)
    parser.add_argument("--max-concurrent", type=int)
    parser.add_argument("--timeout", type=float)
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(args)


def build_options(args: argparse.Namespace, base: PipelineOptions) -> PipelineOptions:
    overrides: dict[str, object] = {}
    if args.quality:
        overrides["quality"] = CompressionQuality.parse(args.quality)
    if args.workers is not None:
        overrides["workers"] = args.workers
    if args.max_concurrent is not None:
        overrides["max_concurrent"] = args.max_concurrent
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    return replace(base, **overrides)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.log_level)
    app = QCoreApplication.instance() or QCoreApplication([])
    try:
        options = build_options(args, load_options())
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    files = iter_pdf_files(args.paths)
    if not files:
        logger.error("No PDF files found")
        return 1
    pipeline = CompressionPipeline(options)
    bridge = StateBridge(pipeline.store)
    reporter = ProgressReporter(app)
    bridge.file_changed.connect(reporter.on_file_changed)
    bridge.changed.connect(reporter.on_changed)
    logger.info("Compressing %s files at %s quality", len(files), options.quality.name.lower())
    try:
        pipeline.submit_many(files)
        app.exec()
    finally:
        bridge.close()
        pipeline.shutdown(cancel=not pipeline.snapshot().is_idle)
    summary = pipeline.snapshot().summary()
    logger.info(format_summary(summary))
    return 1 if summary.errors else 0
