"""
Shared fixtures for the shrinkwrap tests.
"""
from __future__ import annotations

from pathlib import Path
import os
import sys
import threading
import time

import pytest

from shrinkwrap.executor import CommandExecutor
from shrinkwrap.models import CommandOutcome

POSIX_ONLY = pytest.mark.skipif(sys.platform.startswith("win"), reason="needs POSIX shell tools")
IS_ROOT = hasattr(os, "geteuid") and os.geteuid() == 0


def write_pdf(path: Path, size: int = 2048) -> Path:
    header = b"%PDF-1.4\n"
    path.write_bytes(header + b"0" * max(size - len(header), 0))
    return path


def wait_until_gone(pid: int, timeout: float = 5.0) -> bool:
    """Waits for ``pid`` to exit; a zombie awaiting its reaper counts as gone."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            if Path(f"/proc/{pid}/stat").read_text().rsplit(")", 1)[1].split()[0] == "Z":
                return True
        except OSError:
            pass
        time.sleep(0.05)
    return False


class FakeGhostscript(CommandExecutor):
    """Real executor, except that Ghostscript runs are simulated.

    A ``gs`` command writes ``output_size`` bytes to its ``-o`` target after
    ``delay`` seconds and reports the configured exit code and stderr.
    """

    def __init__(
        self,
        output_size: int = 1024,
        exit_code: int = 0,
        stderr: str = "",
        delay: float = 0.0,
        write_output: bool = True,
    ) -> None:
        super().__init__()
        self.output_size = output_size
        self.exit_code = exit_code
        self.stderr = stderr
        self.delay = delay
        self.write_output = write_output
        self.commands: list[list[str]] = []
        self.active = 0
        self.peak = 0
        self._count_lock = threading.Lock()

    def execute(self, command, working_dir, timeout=10.0):
        if command[0] != "gs":
            return super().execute(command, working_dir, timeout)
        with self._count_lock:
            self.commands.append(list(command))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.write_output and self.exit_code == 0:
                output = Path(command[command.index("-o") + 1])
                output.write_bytes(b"%PDF-1.4\n" + b"1" * max(self.output_size - 9, 0))
            return CommandOutcome(self.exit_code, "", self.stderr)
        finally:
            with self._count_lock:
                self.active -= 1


@pytest.fixture
def make_pdf(tmp_path):
    def factory(name: str = "document.pdf", size: int = 2048) -> Path:
        return write_pdf(tmp_path / name, size)

    return factory


@pytest.fixture(scope="session")
def qapp():
    from PySide6.QtCore import QCoreApplication

    app = QCoreApplication.instance() or QCoreApplication([])
    yield app
