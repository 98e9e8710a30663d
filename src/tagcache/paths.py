"""Path rules shared by the scanner, the store and the sync engine."""
from __future__ import annotations

import os
from pathlib import Path, PurePath
from typing import Iterable, Union

PathLike = Union[str, "os.PathLike[str]"]

# Containers mutagen can read tags from.
SUPPORTED_AUDIO_SUFFIXES = frozenset({
    ".mp3", ".flac", ".ogg", ".oga", ".opus",
    ".m4a", ".mp4", ".aac", ".alac",
    ".wav", ".aif", ".aiff", ".wma", ".asf",
    ".ape", ".mpc", ".wv",
})

SIDECAR_SUFFIX = ".lrc"


def normalize_path(path: PathLike) -> str:
    """Return the canonical cache key for a path.

    Absolute, user-expanded, with `.`/`..` segments collapsed and forward
    slashes as separators. Symlinks are not resolved so that deleted files
    normalize the same way as existing ones.
    """
    p = os.path.normpath(os.path.abspath(os.path.expanduser(os.fspath(path))))
    return Path(p).as_posix()


def has_suffix(path: PathLike, suffixes: Iterable[str]) -> bool:
    suf = PurePath(os.fspath(path)).suffix.lower()
    return bool(suf) and suf in {s.lower() for s in suffixes}


def is_supported_audio(path: PathLike, suffixes: Iterable[str] = SUPPORTED_AUDIO_SUFFIXES) -> bool:
    return has_suffix(path, suffixes)


def is_sidecar(path: PathLike, sidecar_suffix: str = SIDECAR_SUFFIX) -> bool:
    return PurePath(os.fspath(path)).suffix.lower() == sidecar_suffix.lower()


def sidecar_path(audio_path: PathLike, sidecar_suffix: str = SIDECAR_SUFFIX) -> str:
    """Lyrics sidecar next to an audio file: same directory, same stem."""
    p = PurePath(normalize_path(audio_path))
    return p.with_suffix(sidecar_suffix).as_posix()


def same_stem(a: PathLike, b: PathLike) -> bool:
    """True when both paths share directory and base name (suffix ignored)."""
    pa = PurePath(normalize_path(a))
    pb = PurePath(normalize_path(b))
    return pa.parent == pb.parent and pa.stem == pb.stem
