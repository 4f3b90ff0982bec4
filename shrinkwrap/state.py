from __future__ import annotations

from types import MappingProxyType
import logging
import os
from threading import Condition, Lock
from typing import Callable

from .errors import InvalidTransition
from .models import (
    Completed,
    Error,
    FileIdentifier,
    FileState,
    InvalidFile,
    Pending,
    Processing,
    ProcessingState,
    file_identifier,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[ProcessingState, FileIdentifier], None]

# Target state -> states it may be entered from. Pending is entered from
# anything through mark_pending. Error is also reachable from Pending when a
# job is rejected or cancelled before a worker picks it up.
_SOURCES: dict[type, tuple[type, ...]] = {
    Processing: (Pending,),
    Completed: (Processing,),
    InvalidFile: (Processing,),
    Error: (Pending, Processing),
}


class ProcessingStateStore:
    """Observable map of file identifier to lifecycle state.

    Every change swaps in a new immutable ``ProcessingState``; readers get
    the current reference without locking. Writers hold a short lock only
    while building the next mapping.

    Each submission hands out a ticket. ``begin`` and ``finish`` are ignored
    for a stale ticket, so when a path is re-submitted the newest
    submission's result is the one that shows up.

    Subscribers are called on the writing thread, outside the lock, so two
    notifications may arrive out of order; compare ``version`` to drop stale
    ones.
    """

    def __init__(self) -> None:
        self._state = ProcessingState()
        self._tickets: dict[FileIdentifier, int] = {}
        self._last_ticket = 0
        self._lock = Lock()
        self._changed = Condition(self._lock)
        self._subscribers: tuple[Subscriber, ...] = ()

    def snapshot(self) -> ProcessingState:
        return self._state

    def mark_pending(self, path: str | os.PathLike[str]) -> int:
        key = file_identifier(path)
        with self._lock:
            self._last_ticket += 1
            ticket = self._last_ticket
            self._tickets[key] = ticket
            snapshot = self._replace(key, Pending(key), submitted=True)
        self._notify(snapshot, key)
        return ticket

    def is_current(self, path: str | os.PathLike[str], ticket: int) -> bool:
        return self._tickets.get(file_identifier(path)) == ticket

    def begin(self, path: str | os.PathLike[str], ticket: int) -> bool:
        key = file_identifier(path)
        return self._advance(key, ticket, Processing(key))

    def finish(self, path: str | os.PathLike[str], ticket: int, state: FileState) -> bool:
        key = file_identifier(path)
        if not state.terminal:
            raise InvalidTransition(key, self._state.files.get(key), state)
        return self._advance(key, ticket, state)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers = (*self._subscribers, callback)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers = tuple(s for s in self._subscribers if s is not callback)

        return unsubscribe

    def wait_until(
        self,
        predicate: Callable[[ProcessingState], bool],
        timeout: float | None = None,
    ) -> bool:
        with self._changed:
            return self._changed.wait_for(lambda: predicate(self._state), timeout)

    def _advance(self, key: FileIdentifier, ticket: int, target: FileState) -> bool:
        with self._lock:
            if self._tickets.get(key) != ticket:
                logger.debug("Dropping %s for %s: superseded by a newer submission", type(target).__name__, key)
                return False
            current = self._state.files[key]
            if not isinstance(current, _SOURCES[type(target)]):
                raise InvalidTransition(key, current, target)
            snapshot = self._replace(key, target)
        self._notify(snapshot, key)
        return True

    def _replace(self, key: FileIdentifier, state: FileState, submitted: bool = False) -> ProcessingState:
        files = dict(self._state.files)
        if submitted:
            # Entries stay in submission order; a re-submitted path moves to the end.
            files.pop(key, None)
        files[key] = state
        self._state = ProcessingState(MappingProxyType(files), self._state.version + 1)
        self._changed.notify_all()
        return self._state

    def _notify(self, snapshot: ProcessingState, key: FileIdentifier) -> None:
        logger.debug("%s -> %s (v%s)", key, type(snapshot.files[key]).__name__, snapshot.version)
        for callback in self._subscribers:
            try:
                callback(snapshot, key)
            except Exception:
                logger.exception("State subscriber %r failed", callback)
