"""In-memory path -> Record cache, the runtime source of truth."""
from __future__ import annotations

import threading
from typing import Dict, Iterator, Mapping, Optional

from .models import Record
from .paths import PathLike, normalize_path


class MetadataStore:
    """Thread-safe mapping from path to `Record`.

    Each entry keeps the key it was stored under (a restored snapshot may use
    relative or otherwise non-canonical keys) and is looked up through its
    normalized form, so ``/m/a/../b.flac`` and ``/m/b.flac`` name the same
    entry. Readers get immutable Records or fresh dict copies. The mutating
    methods are meant for `SyncScheduler` and `PersistenceReconciler`.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Record] = {}
        # normalized path -> key in _records
        self._keys: Dict[str, str] = {}
        self._lock = threading.RLock()

    def _key_for(self, path: PathLike) -> Optional[str]:
        return self._keys.get(normalize_path(path))

    def get(self, path: PathLike) -> Optional[Record]:
        with self._lock:
            key = self._key_for(path)
            return None if key is None else self._records[key]

    def get_all(self) -> Dict[str, Record]:
        with self._lock:
            return dict(self._records)

    def size(self) -> int:
        with self._lock:
            return len(self._records)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        with self._lock:
            return self._key_for(path) is not None

    def paths(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._records))

    # -- writers -----------------------------------------------------------

    def put(self, path: PathLike, record: Record) -> Optional[Record]:
        """Store `record`, returning the Record it replaced (if any).

        An existing entry keeps its key; a new one is keyed by the
        normalized path.
        """
        norm = normalize_path(path)
        with self._lock:
            key = self._keys.setdefault(norm, norm)
            previous = self._records.get(key)
            self._records[key] = record
            return previous

    def remove(self, path: PathLike) -> Optional[Record]:
        with self._lock:
            key = self._keys.pop(normalize_path(path), None)
            return None if key is None else self._records.pop(key, None)

    def replace_all(self, records: Mapping[str, Record]) -> Dict[str, Record]:
        """Swap the whole content, keeping keys verbatim; returns the previous content.

        Keys that normalize to the same path raise ValueError.
        """
        fresh = dict(records)
        keys: Dict[str, str] = {}
        for key in fresh:
            norm = normalize_path(key)
            if norm in keys:
                raise ValueError(f"duplicate path: {keys[norm]!r} and {key!r}")
            keys[norm] = key
        with self._lock:
            previous = self._records
            self._records = fresh
            self._keys = keys
            return previous

    def clear(self) -> Dict[str, Record]:
        return self.replace_all({})


__all__ = ["MetadataStore"]
