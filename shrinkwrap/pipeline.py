from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import queue
from threading import BoundedSemaphore, Event, Thread
from typing import Callable, Iterable, Protocol

from .compress import CANCELLED_MESSAGE, GhostscriptCompressor
from .errors import QueueFull, ShrinkwrapError
from .models import (
    CompressionOutcome,
    CompressionQuality,
    Error,
    Failure,
    FailureKind,
    FileIdentifier,
    PipelineOptions,
    ProcessingState,
    file_identifier,
    state_for_outcome,
)
from .state import ProcessingStateStore, Subscriber

logger = logging.getLogger(__name__)


class Compressor(Protocol):
    def compress(self, path: str | os.PathLike[str], quality: CompressionQuality) -> CompressionOutcome:
        ...

    def cancel(self) -> None:
        ...


@dataclass(frozen=True)
class Job:
    path: FileIdentifier
    ticket: int


class JobQueue:
    """FIFO channel of jobs between the submission API and the workers.

    ``put`` never blocks: once ``capacity`` jobs are waiting it raises
    ``QueueFull``. ``get`` blocks while the queue is empty.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        self.capacity = capacity
        self._queue: queue.Queue[Job | None] = queue.Queue(maxsize=capacity)

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, job: Job) -> None:
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            raise QueueFull(f"job queue is full ({self.capacity} waiting)") from None

    def get(self) -> Job | None:
        return self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    def close(self, consumers: int) -> None:
        # One sentinel per consumer; these may wait for room in a full queue.
        for _ in range(consumers):
            self._queue.put(None)


class WorkerPool:
    def __init__(
        self,
        jobs: JobQueue,
        store: ProcessingStateStore,
        compressor: Compressor,
        workers: int = 5,
        max_concurrent: int = 3,
        quality: CompressionQuality = CompressionQuality.MEDIUM,
    ) -> None:
        self.jobs = jobs
        self.store = store
        self.compressor = compressor
        self.workers = workers
        self.max_concurrent = max_concurrent
        self.quality = quality
        self._slots = BoundedSemaphore(max_concurrent)
        self._threads: list[Thread] = []
        self._cancelled = Event()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self._threads:
            return
        for index in range(self.workers):
            thread = Thread(target=self._run, name=f"shrinkwrap-worker-{index + 1}", daemon=True)
            self._threads.append(thread)
            thread.start()
        logger.debug("Started %s workers, %s concurrent compressions", self.workers, self.max_concurrent)

    def shutdown(self, wait: bool = True, cancel: bool = False, timeout: float | None = None) -> None:
        if cancel:
            self._cancelled.set()
            self.compressor.cancel()
        self.jobs.close(len(self._threads))
        if wait:
            for thread in self._threads:
                thread.join(timeout)

    def _run(self) -> None:
        while True:
            job = self.jobs.get()
            try:
                if job is None:
                    return
                self._process(job)
            finally:
                self.jobs.task_done()

    def _process(self, job: Job) -> None:
        if self._cancelled.is_set():
            self.store.finish(job.path, job.ticket, Error(job.path, "Cancelled", FailureKind.CANCELLED))
            return
        if not self.store.begin(job.path, job.ticket):
            return
        try:
            with self._slots:
                if self._cancelled.is_set():
                    outcome = Failure(CANCELLED_MESSAGE, FailureKind.CANCELLED)
                else:
                    outcome = self.compressor.compress(job.path, self.quality)
        except Exception as exc:
            logger.exception("Unexpected error while compressing %s", job.path)
            outcome = Failure(f"Unexpected error: {exc}", FailureKind.TOOL)
        state = state_for_outcome(job.path, outcome)
        if isinstance(state, Error):
            logger.info("%s failed: %s", job.path, state.message)
        self.store.finish(job.path, job.ticket, state)


class CompressionPipeline:
    """Submission and observation API over the queue, pool and state store."""

    def __init__(
        self,
        options: PipelineOptions | None = None,
        compressor: Compressor | None = None,
    ) -> None:
        self.options = options or PipelineOptions()
        self.store = ProcessingStateStore()
        self.jobs = JobQueue(self.options.queue_capacity)
        self.compressor = compressor or GhostscriptCompressor(timeout=self.options.timeout)
        self.pool = WorkerPool(
            self.jobs,
            self.store,
            self.compressor,
            workers=self.options.workers,
            max_concurrent=self.options.max_concurrent,
            quality=self.options.quality,
        )
        self._closed = False
        self.pool.start()

    def __enter__(self) -> CompressionPipeline:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(cancel=exc_type is not None)

    def submit(self, path: str | os.PathLike[str]) -> bool:
        if self._closed:
            raise ShrinkwrapError("pipeline has been shut down")
        key = file_identifier(path)
        ticket = self.store.mark_pending(key)
        try:
            self.jobs.put(Job(key, ticket))
        except QueueFull as exc:
            logger.warning("Rejected %s: %s", key, exc)
            self.store.finish(key, ticket, Error(key, "Job queue is full", FailureKind.REJECTED))
            return False
        return True

    def submit_many(self, paths: Iterable[str | os.PathLike[str]]) -> int:
        return sum(1 for path in paths if self.submit(path))

    def snapshot(self) -> ProcessingState:
        return self.store.snapshot()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self.store.subscribe(callback)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.store.wait_until(lambda state: state.is_idle, timeout)

    def shutdown(self, wait: bool = True, cancel: bool = False, timeout: float | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self.pool.shutdown(wait=wait, cancel=cancel, timeout=timeout)
