"""Filesystem watching with watchdog, feeding change events to the sync engine."""
from __future__ import annotations

import os
from typing import Any, Iterable, List, Optional, Protocol

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .paths import PathLike, normalize_path
from .sync import ChangeKind


class ChangeSink(Protocol):
    def handle_change_event(self, path: PathLike, kind: Any) -> None: ...


def _decode(path: Any) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return str(path)


class ChangeHandler(FileSystemEventHandler):
    """Translate watchdog events into create/modify/delete notifications.

    Moves become a delete of the old path followed by a create of the new one.
    """

    def __init__(self, sink: ChangeSink) -> None:
        super().__init__()
        self.sink = sink

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.CREATE, event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.MODIFY, event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.DELETE, event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._emit(event.src_path, ChangeKind.DELETE, event)
        self._emit(getattr(event, "dest_path", ""), ChangeKind.CREATE, event)

    def _emit(self, raw_path: Any, kind: ChangeKind, event: FileSystemEvent) -> None:
        if event.is_directory or not raw_path:
            return
        path = _decode(raw_path)
        try:
            self.sink.handle_change_event(path, kind)
        except Exception:
            # Keep the observer thread alive
            logger.opt(exception=True).error(f"change handling failed for {path} ({kind.value})")


class LibraryWatcher:
    def __init__(self, sink: ChangeSink, roots: Iterable[PathLike]) -> None:
        self.sink = sink
        self.roots: List[str] = [normalize_path(r) for r in roots if r and str(r).strip()]
        self._observer: Optional[Any] = None

    def start(self) -> None:
        handler = ChangeHandler(self.sink)
        observer = Observer()
        for root in self.roots:
            if not os.path.isdir(root):
                logger.warning(f"not watching missing directory: {root}")
                continue
            observer.schedule(handler, root, recursive=True)
            logger.info(f"watching {root}")
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None

    def __enter__(self) -> "LibraryWatcher":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()


__all__ = ["ChangeHandler", "LibraryWatcher"]
