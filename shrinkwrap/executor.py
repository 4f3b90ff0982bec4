from __future__ import annotations

from pathlib import Path
import logging
import os
import signal
import subprocess
import sys
from threading import Lock
from typing import Sequence

from .models import CommandOutcome

logger = logging.getLogger(__name__)

WINDOWS_CREATIONFLAGS = (
    getattr(subprocess, "CREATE_NO_WINDOW", 0) if sys.platform.startswith("win") else 0
)
DEFAULT_TIMEOUT = 10.0


class CommandExecutor:
    """Runs external commands with a timeout and tracks the live children.

    ``execute`` never raises: a command that cannot be started, or that
    outlives its timeout, yields ``None``.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._processes: set[subprocess.Popen[bytes]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._processes)

    def execute(
        self,
        command: Sequence[str],
        working_dir: str | os.PathLike[str],
        timeout: float = DEFAULT_TIMEOUT,
    ) -> CommandOutcome | None:
        with self._lock:
            if self._closed:
                logger.debug("Executor closed, not starting %s", command[0])
                return None
            try:
                process = subprocess.Popen(
                    list(command),
                    cwd=Path(working_dir),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    creationflags=WINDOWS_CREATIONFLAGS,
                    start_new_session=not sys.platform.startswith("win"),
                )
            except (OSError, ValueError) as exc:
                logger.warning("Command execution error for %s: %s", command[0], exc)
                return None
            self._processes.add(process)
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Command %s timed out after %ss, killing it", command[0], timeout)
            _kill(process)
            process.communicate()
            return None
        finally:
            with self._lock:
                self._processes.discard(process)
        if self._closed and process.returncode != 0:
            return None
        return CommandOutcome(
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def terminate_all(self) -> None:
        with self._lock:
            self._closed = True
            processes = list(self._processes)
        for process in processes:
            if process.poll() is None:
                logger.info("Killing running command (pid %s)", process.pid)
                _kill(process)


def _kill(process: subprocess.Popen[bytes]) -> None:
    # Commands run in their own session; take down anything they spawned.
    if hasattr(os, "killpg"):
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except OSError:
            pass
    process.kill()
