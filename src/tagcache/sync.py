"""Keeps the metadata cache in step with the library on disk.

Full refreshes reuse complete Records and decode everything else on a
bounded worker pool. Change events are handled per urgency: deletions are
applied and flushed at once, creations and modifications wait for the file
to settle before being decoded, then go through the debounced flush.
"""
from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Set

from loguru import logger

from .covers import CoverRegistry
from .extractor import TagExtractor
from .logging import log_event
from .models import DEFAULT_RECORD, Record, Snapshot, is_blank
from .paths import (
    SIDECAR_SUFFIX,
    SUPPORTED_AUDIO_SUFFIXES,
    PathLike,
    is_sidecar,
    is_supported_audio,
    normalize_path,
    same_stem,
    sidecar_path,
)
from .persistence import PersistenceReconciler
from .scanner import LibraryFS, LocalLibraryFS
from .scheduler import Debouncer, WorkerPool
from .store import MetadataStore

DEFAULT_SETTLE_DELAY = 0.5
DEFAULT_DEBOUNCE_DELAY = 0.5

# Outcomes of processing one file
REUSED = "reused"
EXTRACTED = "extracted"
FAILED = "failed"  # placeholder Record stored
SKIPPED = "skipped"  # nothing stored (file vanished, unreadable on an event)
COALESCED = "coalesced"  # folded into an extraction already in flight


class ChangeKind(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


def _empty_summary() -> Dict[str, int]:
    return {
        "scanned": 0,
        REUSED: 0,
        EXTRACTED: 0,
        FAILED: 0,
        SKIPPED: 0,
        COALESCED: 0,
    }


class SyncScheduler:
    def __init__(
        self,
        store: MetadataStore,
        reconciler: PersistenceReconciler,
        extractor: TagExtractor,
        covers: CoverRegistry,
        fs: Optional[LibraryFS] = None,
        *,
        workers: Optional[int] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        debounce_delay: float = DEFAULT_DEBOUNCE_DELAY,
        audio_suffixes: Iterable[str] = SUPPORTED_AUDIO_SUFFIXES,
        sidecar_suffix: str = SIDECAR_SUFFIX,
        save_callback: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.extractor = extractor
        self.covers = covers
        self.fs: LibraryFS = fs or LocalLibraryFS()
        self.settle_delay = settle_delay
        self.audio_suffixes = frozenset(s.lower() for s in audio_suffixes)
        self.sidecar_suffix = sidecar_suffix
        self._save_callback = save_callback

        self._pool = WorkerPool(workers)
        self._flush = Debouncer(debounce_delay, self._on_flush, name="flush")

        self._dirty = False
        self._dirty_lock = threading.Lock()

        self._settle: Dict[str, Debouncer] = {}
        self._settle_lock = threading.Lock()
        self._closed = False

        self._inflight: Set[str] = set()
        self._rerun: Set[str] = set()
        self._guard = threading.Lock()
        # Delete events bump the epoch; a store prepared before a path's
        # deletion epoch is dropped.
        self._epoch = 0
        self._deleted_at: Dict[str, int] = {}

    def set_save_callback(self, callback: Optional[Callable[[], Any]]) -> None:
        self._save_callback = callback

    # ------------------------------------------------------------------
    # Full refresh
    # ------------------------------------------------------------------

    def refresh_all(self, root_paths: Iterable[PathLike], *, force: bool = False) -> Dict[str, int]:
        """Bring every audio file under `root_paths` into the cache.

        Always runs to completion; per-file failures show up as placeholder
        Records and in the returned counts.
        """
        summary = _empty_summary()
        roots = [r for r in root_paths if r and str(r).strip()]
        if not roots:
            logger.info("no library roots given; nothing to refresh")
            return summary

        since = self._current_epoch()
        snapshot = {normalize_path(p): v for p, v in self.reconciler.load_snapshot().items()}
        files = self.fs.iter_audio_files(roots, self.audio_suffixes)
        t0 = time.time()

        def process(path: str) -> str:
            return self._refresh_one(path, snapshot, force, since)

        for path, fut in self._pool.imap_unordered_bounded(process, files):
            summary["scanned"] += 1
            exc = fut.exception()
            if exc is None:
                summary[fut.result()] += 1
                continue
            logger.opt(exception=exc).error(f"refresh failed for {path}")
            if self._store_unless_deleted(normalize_path(path), DEFAULT_RECORD, since):
                summary[FAILED] += 1
            else:
                summary[SKIPPED] += 1

        self._mark_dirty()
        self.schedule_flush()
        log_event(
            "refresh",
            msg=f"refresh complete: {summary['scanned']} file(s)",
            seconds=round(time.time() - t0, 3),
            **summary,
        )
        return summary

    def _refresh_one(self, path: str, snapshot: Snapshot, force: bool, since: int) -> str:
        key = normalize_path(path)
        existing = self.store.get(key)
        from_snapshot = False
        if existing is None and key in snapshot:
            existing = self.reconciler.rehydrate(snapshot[key])
            from_snapshot = True

        if not force and not self.reconciler.needs_re_extraction(existing):
            if from_snapshot and existing is not None:
                # The snapshot predates the batch: the file may be gone since.
                if not self.fs.exists(key) or not self._store_unless_deleted(key, existing, since):
                    return SKIPPED
            return REUSED

        return self._run_exclusive(key, lambda: self._extract_and_store(key, degrade=True))

    # ------------------------------------------------------------------
    # Change events
    # ------------------------------------------------------------------

    def handle_change_event(self, path: PathLike, kind: Any) -> None:
        kind = ChangeKind(kind)
        key = normalize_path(path)

        if is_sidecar(key, self.sidecar_suffix):
            self._sidecar_changed(key)
            return
        if not is_supported_audio(key, self.audio_suffixes):
            return

        if kind is ChangeKind.DELETE:
            self._cancel_settle(key)
            with self._guard:
                self._epoch += 1
                self._deleted_at[key] = self._epoch
                removed = self.store.remove(key)
            if removed is not None:
                self.covers.release(removed.cover)
                logger.debug(f"removed metadata for deleted file {key}")
            self._mark_dirty()
            # Deletions bypass the debounce.
            self.flush_now()
            return

        self._schedule_settle(key)

    def _sidecar_changed(self, lrc_key: str) -> None:
        for audio_path in self.store.paths():
            if same_stem(audio_path, lrc_key) and is_supported_audio(audio_path, self.audio_suffixes):
                self._schedule_settle(normalize_path(audio_path))

    def _schedule_settle(self, key: str) -> None:
        with self._settle_lock:
            if self._closed:
                return
            deb = self._settle.get(key)
            if deb is None:
                deb = Debouncer(self.settle_delay, lambda: self._settled(key), name="settle")
                self._settle[key] = deb
        deb.trigger()

    def _cancel_settle(self, key: str) -> None:
        with self._settle_lock:
            deb = self._settle.pop(key, None)
        if deb is not None:
            deb.cancel()

    def _settled(self, key: str) -> None:
        with self._settle_lock:
            self._settle.pop(key, None)
            if self._closed:
                return
        try:
            self._pool.submit(self._update_from_event, key)
        except RuntimeError:
            # Pool shut down between the check above and the submit
            logger.debug(f"dropping settled change for {key}: scheduler closed")

    def _update_from_event(self, key: str) -> None:
        try:
            outcome = self._run_exclusive(key, lambda: self._extract_and_store(key, degrade=False))
        except Exception:
            logger.opt(exception=True).error(f"failed to update metadata for {key}")
            return
        if outcome in (EXTRACTED, FAILED):
            self.schedule_flush()

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _run_exclusive(self, key: str, fn: Callable[[], str]) -> str:
        """Run `fn` unless an extraction for `key` is already running.

        A request that arrives meanwhile makes the running one go again once
        it finishes, so the stored Record reflects the latest file content.
        """
        with self._guard:
            if key in self._inflight:
                self._rerun.add(key)
                return COALESCED
            self._inflight.add(key)
        try:
            while True:
                outcome = fn()
                with self._guard:
                    if key in self._rerun:
                        self._rerun.discard(key)
                        continue
                    self._inflight.discard(key)
                    return outcome
        except BaseException:
            with self._guard:
                self._inflight.discard(key)
                self._rerun.discard(key)
            raise

    def _extract_and_store(self, key: str, *, degrade: bool) -> str:
        since = self._current_epoch()
        try:
            data = self.fs.read_bytes(key)
        except Exception as e:
            if not degrade or not self.fs.exists(key):
                logger.bind(action="read", file=key, status="error", reason=str(e)).error("audio read failed")
                return SKIPPED
            logger.bind(action="read", file=key, status="error", reason=str(e)).error(
                "audio read failed; storing placeholder"
            )
            if not self._store_unless_deleted(key, DEFAULT_RECORD, since):
                return SKIPPED
            return FAILED

        record = self.extractor.extract(data, self._read_sidecar(key), filename=key)
        if not self.fs.exists(key) or not self._store_unless_deleted(key, record, since):
            # Deleted while decoding
            self.covers.release(record.cover)
            return SKIPPED
        return FAILED if record is DEFAULT_RECORD else EXTRACTED

    def _read_sidecar(self, key: str) -> Optional[str]:
        lrc = sidecar_path(key, self.sidecar_suffix)
        try:
            if not self.fs.exists(lrc):
                return None
            text = self.fs.read_text(lrc)
        except Exception as e:
            logger.debug(f"sidecar lyrics unreadable {lrc}: {e}")
            return None
        if is_blank(text):
            return None
        logger.debug(f"lyrics from sidecar: {lrc}")
        return text

    def _current_epoch(self) -> int:
        with self._guard:
            return self._epoch

    def _store_unless_deleted(self, key: str, record: Record, since: int) -> bool:
        """Store `record` unless `key` saw a delete event after epoch `since`."""
        with self._guard:
            if self._deleted_at.get(key, 0) > since:
                return False
            self._store_record(key, record)
            return True

    def _store_record(self, key: str, record: Record) -> None:
        previous = self.store.put(key, record)
        if previous is not None and previous.cover and previous.cover != record.cover:
            self.covers.release(previous.cover)
        self._mark_dirty()

    def load_cover(self, path: PathLike) -> Optional[str]:
        """Re-decode a cached file to restore a cover dropped at restart."""
        key = normalize_path(path)
        record = self.store.get(key)
        if record is None:
            return None
        if record.cover and record.cover in self.covers:
            return record.cover
        try:
            data = self.fs.read_bytes(key)
        except Exception as e:
            logger.warning(f"failed to load cover for {key}: {e}")
            return None
        fresh = self.extractor.extract(data, filename=key)
        if fresh.cover is None:
            return None
        with self._guard:
            current = self.store.get(key)
            if current is not None:
                self._store_record(key, current.with_changes(cover=fresh.cover))
        if current is None:
            self.covers.release(fresh.cover)
            return None
        return fresh.cover

    # ------------------------------------------------------------------
    # Dirty flag and flushing
    # ------------------------------------------------------------------

    def _mark_dirty(self) -> None:
        with self._dirty_lock:
            self._dirty = True

    def needs_save(self) -> bool:
        with self._dirty_lock:
            return self._dirty

    def schedule_flush(self) -> None:
        if self._closed:
            return
        self._flush.trigger()

    def flush_now(self) -> None:
        self._flush.fire_now()

    def _on_flush(self) -> None:
        with self._dirty_lock:
            self._dirty = False
        callback = self._save_callback
        if callback is None:
            return
        try:
            callback()
        except Exception:
            # Logged, not retried
            logger.opt(exception=True).error("save callback failed")

    def close(self) -> None:
        with self._settle_lock:
            self._closed = True
            pending = list(self._settle.values())
            self._settle.clear()
        for deb in pending:
            deb.cancel()
        self._flush.cancel()
        self._pool.shutdown(wait=True)


__all__ = ["SyncScheduler", "ChangeKind"]
