from __future__ import annotations

from contextlib import suppress
from pathlib import Path
import errno
import logging
import os
import shutil
import tempfile
from threading import Lock

from .executor import DEFAULT_TIMEOUT, CommandExecutor
from .models import (
    PDF_SIGNATURE,
    CompressionOutcome,
    CompressionQuality,
    Failure,
    FailureKind,
    InvalidFormat,
    Success,
)

logger = logging.getLogger(__name__)

GHOSTSCRIPT_NAMES = ("gs",)
INTERMEDIATE_NAME = "compressed1.pdf"
TEMP_PREFIX = "shrinkwrap"
PERMISSION_MARKERS = ("Permission denied", "Operation not permitted")
CANCELLED_MESSAGE = "Compression cancelled"

_TOOL_CACHE: dict[tuple[str, ...], str | None] = {}
_TOOL_LOCK = Lock()


class GhostscriptCompressor:
    """Compresses PDF files in place with Ghostscript.

    Every failure is reported through the returned outcome; neither
    ``validate`` nor ``compress`` raises for a problem with the file.
    """

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        tool: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.executor = executor or CommandExecutor()
        self.tool = tool
        self.timeout = timeout

    def cancel(self) -> None:
        self.executor.terminate_all()

    def validate(self, path: str | os.PathLike[str]) -> bool:
        source = Path(path)
        try:
            if not source.is_file() or not os.access(source, os.R_OK):
                return False
            with tempfile.TemporaryDirectory(prefix=TEMP_PREFIX, ignore_cleanup_errors=True) as temp_dir:
                result = self.executor.execute(["head", "-c", "4", str(source)], temp_dir, self.timeout)
        except OSError as exc:
            logger.debug("Validation of %s failed: %s", source, exc)
            return False
        return result is not None and result.exit_code == 0 and result.stdout == PDF_SIGNATURE

    def compress(
        self,
        path: str | os.PathLike[str],
        quality: CompressionQuality = CompressionQuality.MEDIUM,
    ) -> CompressionOutcome:
        source = Path(path)
        try:
            if not source.exists():
                return Failure("File does not exist", FailureKind.MISSING_FILE)
            if not os.access(source, os.R_OK):
                return Failure("Permission denied: cannot read file", FailureKind.PERMISSION_DENIED)
            if not os.access(source, os.W_OK):
                return Failure("Permission denied: cannot write to file", FailureKind.PERMISSION_DENIED)
            try:
                workdir = tempfile.TemporaryDirectory(prefix=TEMP_PREFIX, ignore_cleanup_errors=True)
            except PermissionError:
                return Failure(
                    "Permission denied: cannot create temporary directory",
                    FailureKind.PERMISSION_DENIED,
                )
            except OSError as exc:
                return Failure(f"Cannot create temporary directory: {exc}", FailureKind.TEMP_DIR)
            with workdir as temp_dir:
                return self._compress_in(source, quality, Path(temp_dir))
        except OSError as exc:
            if is_permission_error(exc):
                return Failure(f"Permission denied: {exc}", FailureKind.PERMISSION_DENIED)
            return Failure(f"Compression failed: {exc}", FailureKind.TOOL)

    def _compress_in(self, source: Path, quality: CompressionQuality, temp_dir: Path) -> CompressionOutcome:
        # A closed executor makes validation fail too; that is not a bad file.
        if self.executor.closed:
            return _cancelled()
        if not self.validate(source):
            if self.executor.closed:
                return _cancelled()
            return InvalidFormat()
        initial_size = _file_size(source, "initial")
        if isinstance(initial_size, Failure):
            return initial_size
        tool = self.tool or find_ghostscript()
        if tool is None:
            return Failure("Ghostscript executable not found", FailureKind.TOOL)
        output = temp_dir / INTERMEDIATE_NAME
        command = build_compression_command(tool, source, quality, output)
        result = self.executor.execute(command, temp_dir, self.timeout)
        if result is None:
            if self.executor.closed:
                return _cancelled()
            return Failure(
                f"Compression timed out after {self.timeout:g}s or could not be started",
                FailureKind.TIMEOUT,
            )
        if result.exit_code != 0:
            message = result.stderr.strip() or "Unknown compression error"
            if has_permission_marker(message):
                return Failure(
                    "Permission denied: Ghostscript cannot access the file",
                    FailureKind.PERMISSION_DENIED,
                )
            return Failure(f"Compression failed: {message}", FailureKind.TOOL)
        if not output.is_file():
            return Failure("Compression failed: no output was produced", FailureKind.TOOL)
        failure = replace_file(output, source)
        if failure is not None:
            return failure
        final_size = _file_size(source, "final")
        if isinstance(final_size, Failure):
            return final_size
        logger.debug("Compressed %s: %s -> %s bytes", source, initial_size, final_size)
        return Success(initial_size, final_size)


def build_compression_command(
    tool: str,
    source: Path,
    quality: CompressionQuality,
    output: Path,
) -> list[str]:
    return [
        tool,
        "-sDEVICE=pdfwrite",
        f"-dPDFSETTINGS=/{quality.preset}",
        "-dNOPAUSE",
        "-dQUIET",
        "-dBATCH",
        "-o",
        str(output),
        str(source),
    ]


def replace_file(compressed: Path, target: Path) -> Failure | None:
    # Stage next to the target so the final os.replace stays on one filesystem.
    # mkstemp picks a name no other file or concurrent run is using.
    staged: Path | None = None
    try:
        fd, name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        os.close(fd)
        staged = Path(name)
        shutil.copyfile(compressed, staged)
        shutil.copymode(target, staged)
        os.replace(staged, target)
    except OSError as exc:
        if staged is not None:
            with suppress(OSError):
                staged.unlink(missing_ok=True)
        if is_permission_error(exc):
            return Failure("Permission denied: cannot replace original file", FailureKind.PERMISSION_DENIED)
        return Failure(f"Could not move compressed file: {exc}", FailureKind.MOVE)
    return None


def _cancelled() -> Failure:
    return Failure(CANCELLED_MESSAGE, FailureKind.CANCELLED)


def has_permission_marker(text: str) -> bool:
    return any(marker in text for marker in PERMISSION_MARKERS)


def is_permission_error(exc: OSError) -> bool:
    if isinstance(exc, PermissionError) or exc.errno in {errno.EACCES, errno.EPERM}:
        return True
    return has_permission_marker(str(exc))


def _file_size(path: Path, label: str) -> int | Failure:
    try:
        return path.stat().st_size
    except PermissionError:
        return Failure(f"Permission denied: cannot read {label} file size", FailureKind.PERMISSION_DENIED)
    except OSError as exc:
        return Failure(f"Could not read {label} file size: {exc}", FailureKind.SIZE_QUERY)


def find_ghostscript() -> str | None:
    with _TOOL_LOCK:
        if GHOSTSCRIPT_NAMES not in _TOOL_CACHE:
            _TOOL_CACHE[GHOSTSCRIPT_NAMES] = _which(GHOSTSCRIPT_NAMES)
        return _TOOL_CACHE[GHOSTSCRIPT_NAMES]


def clear_tool_cache() -> None:
    with _TOOL_LOCK:
        _TOOL_CACHE.clear()


def _which(names: tuple[str, ...]) -> str | None:
    for name in names:
        system_path = shutil.which(name)
        if system_path:
            return system_path
    logger.warning("None of %s found on PATH", ", ".join(names))
    return None
