"""`MetadataLibrary`: the explicitly owned entry point wiring the cache together.

One instance owns the cover registry, the store, the extractor, the
reconciler and the sync scheduler, and acts as the persistence owner: when
the scheduler requests a save it writes the exported snapshot to disk.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from .config import TagCacheSettings
from .covers import CoverImage, CoverRegistry
from .extractor import TagExtractor
from .models import Record, Snapshot
from .paths import PathLike
from .persistence import InitProgress, PersistenceReconciler, SnapshotFile, SnapshotSource
from .scanner import LibraryFS
from .store import MetadataStore
from .sync import ChangeKind, SyncScheduler


class MetadataLibrary:
    def __init__(
        self,
        settings: Optional[TagCacheSettings] = None,
        *,
        fs: Optional[LibraryFS] = None,
        snapshot_source: Optional[SnapshotSource] = None,
    ) -> None:
        self.settings = settings or TagCacheSettings()
        s = self.settings
        self.covers = CoverRegistry(resize=s.cover_art_resize, max_size=s.cover_art_max_size)
        self.store = MetadataStore()
        self.extractor = TagExtractor(self.covers)
        self.snapshot_source: SnapshotSource = snapshot_source or SnapshotFile(s.snapshot_file())
        self.reconciler = PersistenceReconciler(self.store, self.snapshot_source, self.covers)
        self.scheduler = SyncScheduler(
            self.store,
            self.reconciler,
            self.extractor,
            self.covers,
            fs,
            workers=s.workers,
            settle_delay=s.settle_delay,
            debounce_delay=s.debounce_delay,
            audio_suffixes=s.audio_suffixes,
            sidecar_suffix=s.sidecar_suffix,
            save_callback=self._on_save_requested,
        )
        self._listeners: List[Callable[[], Any]] = []
        self._save_lock = threading.Lock()
        self._closed = False

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> int:
        """Restore the persisted snapshot into the store. Returns records restored."""
        snapshot = self.reconciler.load_snapshot()
        return self.reconciler.initialize_from_persisted(snapshot)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.scheduler.close()
        if self.scheduler.needs_save() and self.settings.autosave:
            self.save()
        self.covers.release_all()
        self.store.clear()

    def __enter__(self) -> "MetadataLibrary":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # -- sync --------------------------------------------------------------

    def refresh(self, roots: Optional[Iterable[PathLike]] = None, *, force: Optional[bool] = None) -> Dict[str, int]:
        roots_eff = list(roots) if roots is not None else list(self.settings.library_roots)
        force_eff = self.settings.force if force is None else force
        return self.scheduler.refresh_all(roots_eff, force=force_eff)

    def handle_change_event(self, path: PathLike, kind: ChangeKind | str) -> None:
        self.scheduler.handle_change_event(path, kind)

    def needs_save(self) -> bool:
        return self.scheduler.needs_save()

    # -- reads -------------------------------------------------------------

    def get_metadata(self, path: PathLike) -> Optional[Record]:
        return self.store.get(path)

    def get_all_metadata(self) -> Dict[str, Record]:
        return self.store.get_all()

    def get_cover(self, path: PathLike, *, load: bool = True) -> Optional[CoverImage]:
        """Cover bytes for a cached file, re-decoding it if the handle was dropped."""
        record = self.store.get(path)
        if record is None:
            return None
        image = self.covers.get(record.cover)
        if image is None and load:
            image = self.covers.get(self.scheduler.load_cover(path))
        return image

    def progress(self) -> InitProgress:
        return self.reconciler.progress()

    # -- persistence -------------------------------------------------------

    def export_snapshot(self) -> Snapshot:
        return self.reconciler.export_snapshot()

    def save(self) -> Optional[Path]:
        with self._save_lock:
            snapshot = self.export_snapshot()
            self.snapshot_source.write(snapshot)
        path = getattr(self.snapshot_source, "path", None)
        logger.bind(action="snapshot_save", records=len(snapshot)).debug(f"snapshot saved: {path}")
        return path

    def add_save_listener(self, callback: Callable[[], Any]) -> None:
        self._listeners.append(callback)

    def _on_save_requested(self) -> None:
        if self.settings.autosave:
            try:
                self.save()
            except Exception as e:
                logger.bind(action="snapshot_save", status="error", reason=str(e)).error("snapshot save failed")
        for listener in list(self._listeners):
            listener()


__all__ = ["MetadataLibrary"]
