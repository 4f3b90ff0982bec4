from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
import os
from typing import ClassVar, Iterable, Iterator, Mapping, Union

from .errors import ConfigError

FileIdentifier = str

PDF_SIGNATURE = "%PDF"


def file_identifier(path: str | os.PathLike[str]) -> FileIdentifier:
    return os.fspath(path)


class CompressionQuality(Enum):
    HIGH = "printer"
    MEDIUM = "ebook"
    LOW = "screen"

    @property
    def preset(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str | CompressionQuality) -> CompressionQuality:
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"unknown compression quality: {value!r}") from None


class FailureKind(Enum):
    MISSING_FILE = "missing_file"
    PERMISSION_DENIED = "permission_denied"
    TEMP_DIR = "temp_dir"
    TOOL = "tool"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SIZE_QUERY = "size_query"
    MOVE = "move"
    REJECTED = "rejected"


@dataclass(frozen=True)
class CommandOutcome:
    exit_code: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class Success:
    initial_size_bytes: int
    final_size_bytes: int


@dataclass(frozen=True)
class InvalidFormat:
    pass


@dataclass(frozen=True)
class Failure:
    message: str
    kind: FailureKind = FailureKind.TOOL


CompressionOutcome = Union[Success, InvalidFormat, Failure]


@dataclass(frozen=True)
class Pending:
    path: FileIdentifier
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Processing:
    path: FileIdentifier
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Completed:
    path: FileIdentifier
    initial_size_bytes: int
    final_size_bytes: int
    terminal: ClassVar[bool] = True

    @property
    def saved_bytes(self) -> int:
        return self.initial_size_bytes - self.final_size_bytes

    @property
    def ratio(self) -> float:
        # Negative when the output grew.
        if not self.initial_size_bytes:
            return 0.0
        return 1 - self.final_size_bytes / self.initial_size_bytes


@dataclass(frozen=True)
class InvalidFile:
    path: FileIdentifier
    terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class Error:
    path: FileIdentifier
    message: str
    kind: FailureKind | None = None
    terminal: ClassVar[bool] = True


FileState = Union[Pending, Processing, Completed, InvalidFile, Error]


def state_for_outcome(path: FileIdentifier, outcome: CompressionOutcome) -> FileState:
    if isinstance(outcome, Success):
        return Completed(path, outcome.initial_size_bytes, outcome.final_size_bytes)
    if isinstance(outcome, InvalidFormat):
        return InvalidFile(path)
    return Error(path, outcome.message, outcome.kind)


@dataclass(frozen=True)
class Summary:
    total: int
    pending: int
    processing: int
    completed: int
    invalid: int
    errors: int
    initial_bytes: int
    final_bytes: int

    @property
    def saved_ratio(self) -> float:
        if not self.initial_bytes:
            return 0.0
        return 1 - self.final_bytes / self.initial_bytes


@dataclass(frozen=True)
class ProcessingState:
    files: Mapping[FileIdentifier, FileState] = field(
        default_factory=lambda: MappingProxyType({})
    )
    version: int = 0

    def __len__(self) -> int:
        return len(self.files)

    def __contains__(self, path: object) -> bool:
        return path in self.files

    def __iter__(self) -> Iterator[FileIdentifier]:
        return iter(self.files)

    def get(self, path: str | os.PathLike[str]) -> FileState | None:
        return self.files.get(file_identifier(path))

    def newest_first(self) -> list[tuple[FileIdentifier, FileState]]:
        """Entries with the most recently submitted path first, as a file list shows them."""
        return list(self.files.items())[::-1]

    @property
    def is_idle(self) -> bool:
        return all(state.terminal for state in self.files.values())

    def summary(self) -> Summary:
        counts = {kind: 0 for kind in (Pending, Processing, Completed, InvalidFile, Error)}
        initial = 0
        final = 0
        for state in self.files.values():
            counts[type(state)] += 1
            if isinstance(state, Completed):
                initial += state.initial_size_bytes
                final += state.final_size_bytes
        return Summary(
            total=len(self.files),
            pending=counts[Pending],
            processing=counts[Processing],
            completed=counts[Completed],
            invalid=counts[InvalidFile],
            errors=counts[Error],
            initial_bytes=initial,
            final_bytes=final,
        )


@dataclass(frozen=True)
class PipelineOptions:
    workers: int = 5
    max_concurrent: int = 3
    timeout: float = 10.0
    quality: CompressionQuality = CompressionQuality.MEDIUM
    queue_capacity: int = 10_000

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")
        if self.max_concurrent < 1:
            raise ConfigError(f"max_concurrent must be at least 1, got {self.max_concurrent}")
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
        if self.queue_capacity < 1:
            raise ConfigError(f"queue_capacity must be at least 1, got {self.queue_capacity}")


def format_file_size(size: int) -> str:
    kb = size / 1024
    mb = kb / 1024
    if mb >= 1:
        return f"{mb:.1f} MB"
    if kb >= 1:
        return f"{kb:.1f} KB"
    return f"{size} B"


def iter_pdf_files(paths: Iterable[Path]) -> list[Path]:
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            for item in sorted(path.rglob("*")):
                if item.is_file() and item.suffix.lower() == ".pdf":
                    files.append(item)
        else:
            files.append(path)
    return list(dict.fromkeys(files))
