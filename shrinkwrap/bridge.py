from __future__ import annotations

from PySide6.QtCore import QObject, Signal

from .models import FileIdentifier, ProcessingState
from .state import ProcessingStateStore


class StateBridge(QObject):
    """Re-emits state store changes as Qt signals.

    The store notifies on worker threads; a receiver living in the GUI
    thread gets these through queued connections.
    """

    changed = Signal(object)
    file_changed = Signal(str, object)

    def __init__(self, store: ProcessingStateStore, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._unsubscribe = store.subscribe(self._on_change)

    def close(self) -> None:
        self._unsubscribe()

    def _on_change(self, snapshot: ProcessingState, path: FileIdentifier) -> None:
        self.changed.emit(snapshot)
        self.file_changed.emit(path, snapshot.files[path])
