"""Filesystem collaborator: audio discovery and plain reads (standard library only)."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Iterator, List, Protocol

from loguru import logger

from .paths import PathLike, SUPPORTED_AUDIO_SUFFIXES, has_suffix, normalize_path


class LibraryFS(Protocol):
    """What the sync engine needs from the filesystem."""

    def iter_audio_files(self, roots: Iterable[PathLike], suffixes: Iterable[str]) -> Iterator[str]: ...

    def read_bytes(self, path: str) -> bytes: ...

    def read_text(self, path: str) -> str: ...

    def exists(self, path: str) -> bool: ...


def scan_audio_files(
    roots: Iterable[PathLike],
    suffixes: Iterable[str] = SUPPORTED_AUDIO_SUFFIXES,
) -> List[str]:
    """Return normalized paths of audio files under each root, sorted, de-duplicated.

    Missing roots are logged and skipped. A root may also be a single file.
    """
    wanted = {s.lower() for s in suffixes}
    seen: set[str] = set()
    results: List[str] = []
    for root in roots:
        root_p = Path(normalize_path(root))
        if root_p.is_file():
            candidates: Iterable[Path] = [root_p]
        elif root_p.is_dir():
            candidates = _walk(root_p)
        else:
            logger.warning(f"library root does not exist: {root_p}")
            continue
        for full in candidates:
            if not has_suffix(full, wanted):
                continue
            key = normalize_path(full)
            if key not in seen:
                seen.add(key)
                results.append(key)
    results.sort()
    return results


def _walk(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            yield Path(dirpath) / name


class LocalLibraryFS:
    """`LibraryFS` backed by the local disk."""

    def iter_audio_files(self, roots: Iterable[PathLike], suffixes: Iterable[str]) -> Iterator[str]:
        return iter(scan_audio_files(roots, suffixes))

    def read_bytes(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def read_text(self, path: str) -> str:
        # utf-8-sig: LRC files exported on Windows often carry a BOM
        return Path(path).read_text(encoding="utf-8-sig")

    def exists(self, path: str) -> bool:
        return Path(path).is_file()


__all__ = ["LibraryFS", "LocalLibraryFS", "scan_audio_files"]
