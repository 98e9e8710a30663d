"""Snapshot persistence and reconciliation with the in-memory store.

The reconciler decides what survives a restart: text fields are restored
verbatim, cover handles never do. It also owns the completeness test that
decides between reusing a cached Record and decoding the file again.
"""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from loguru import logger

from .covers import CoverRegistry
from .models import Record, Snapshot, is_blank
from .paths import normalize_path
from .store import MetadataStore

SNAPSHOT_VERSION = 1


class SnapshotSource(Protocol):
    def read(self) -> Any: ...

    def write(self, snapshot: Snapshot) -> None: ...


class SnapshotFile:
    """JSON snapshot file: ``{"version": 1, "metadata": {path: entry}}``."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def read(self) -> Any:
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        # Older files hold the bare mapping
        if isinstance(data, dict) and isinstance(data.get("metadata"), dict):
            return data["metadata"]
        return data

    def write(self, snapshot: Snapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": SNAPSHOT_VERSION, "metadata": snapshot}
        fd, tmp = tempfile.mkstemp(prefix=".snapshot-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=1, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


@dataclass(frozen=True)
class InitProgress:
    current: int
    total: int

    @property
    def percentage(self) -> float:
        return (self.current / self.total) * 100 if self.total > 0 else 100.0


class PersistenceReconciler:
    def __init__(
        self,
        store: MetadataStore,
        source: Optional[SnapshotSource] = None,
        covers: Optional[CoverRegistry] = None,
    ) -> None:
        self.store = store
        self.source = source
        self.covers = covers
        self._initialized = False
        self._total = 0
        self._restored = 0

    # -- load --------------------------------------------------------------

    def load_snapshot(self) -> Snapshot:
        """Best-effort read of the persisted snapshot; {} on any failure."""
        if self.source is None:
            return {}
        try:
            data = self.source.read()
        except FileNotFoundError:
            logger.debug("no persisted snapshot yet")
            return {}
        except Exception as e:
            logger.bind(action="snapshot_load", status="warn", reason=str(e)).warning(
                "persisted snapshot unreadable; starting empty"
            )
            return {}
        if not isinstance(data, dict):
            logger.bind(action="snapshot_load", status="warn", reason=type(data).__name__).warning(
                "persisted snapshot has unexpected shape; starting empty"
            )
            return {}
        return data

    @staticmethod
    def rehydrate(data: Any) -> Optional[Record]:
        """Turn one persisted entry into a Record, dropping stale cover handles."""
        if not isinstance(data, Mapping):
            return None
        record = Record.from_dict(data)
        if CoverRegistry.is_transient(record.cover):
            record = record.with_changes(cover=None)
        return record

    def initialize_from_persisted(self, snapshot: Mapping[str, Any]) -> int:
        """Replace the store content with the snapshot's records.

        Keys are kept exactly as persisted. An entry whose key names the same
        file as an earlier one is dropped.
        """
        self._initialized = False
        self._total = len(snapshot)
        self._restored = 0
        records: Dict[str, Record] = {}
        seen: Dict[str, str] = {}
        for path, entry in snapshot.items():
            record = self.rehydrate(entry)
            if record is None:
                logger.debug(f"skipping malformed snapshot entry for {path}")
                continue
            norm = normalize_path(path)
            if norm in seen:
                logger.bind(action="snapshot_restore", status="warn", reason="duplicate path").warning(
                    f"snapshot entry {path!r} names the same file as {seen[norm]!r}; dropped"
                )
                continue
            seen[norm] = path
            records[path] = record
            self._restored += 1
        previous = self.store.replace_all(records)
        if self.covers is not None:
            for old in previous.values():
                self.covers.release(old.cover)
        self._initialized = True
        logger.bind(action="snapshot_restore", restored=self._restored, total=self._total).info(
            f"restored {self._restored} record(s) from snapshot"
        )
        return self._restored

    # -- export ------------------------------------------------------------

    def export_snapshot(self) -> Snapshot:
        return {path: record.to_dict() for path, record in self.store.get_all().items()}

    # -- reuse decision ----------------------------------------------------

    @staticmethod
    def needs_re_extraction(record: Optional[Record]) -> bool:
        if record is None:
            return True
        return is_blank(record.title) or is_blank(record.artist)

    # -- progress ----------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def progress(self) -> InitProgress:
        return InitProgress(current=self._restored, total=self._total)


__all__ = [
    "PersistenceReconciler",
    "SnapshotFile",
    "SnapshotSource",
    "InitProgress",
]
