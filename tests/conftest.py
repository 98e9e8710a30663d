import struct
import threading
import time
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pytest
from loguru import logger
from mutagen.flac import Picture

from tagcache.covers import CoverRegistry
from tagcache.extractor import TagExtractor
from tagcache.paths import has_suffix, normalize_path
from tagcache.persistence import PersistenceReconciler
from tagcache.store import MetadataStore
from tagcache.sync import SyncScheduler


JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 60
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 60


def _block(block_type: int, data: bytes, last: bool) -> bytes:
    header = (0x80 if last else 0) | block_type
    return bytes([header]) + len(data).to_bytes(3, "big") + data


def _streaminfo() -> bytes:
    packed = (44100 << 44) | (1 << 41) | (15 << 36)  # 44.1 kHz, stereo, 16 bit, 0 samples
    return (
        struct.pack(">HH", 4096, 4096)
        + (0).to_bytes(3, "big")
        + (0).to_bytes(3, "big")
        + packed.to_bytes(8, "big")
        + b"\x00" * 16
    )


def _vorbis_comment(comments: Sequence[Tuple[str, str]]) -> bytes:
    vendor = b"tagcache tests"
    out = struct.pack("<I", len(vendor)) + vendor + struct.pack("<I", len(comments))
    for key, value in comments:
        entry = f"{key}={value}".encode("utf-8")
        out += struct.pack("<I", len(entry)) + entry
    return out


def _picture(data: bytes, mime: str, pic_type: int = 3) -> bytes:
    pic = Picture()
    pic.type = pic_type
    pic.mime = mime
    pic.desc = ""
    pic.data = data
    return pic.write()


def build_flac(
    comments: Union[Dict[str, str], Sequence[Tuple[str, str]]] = (),
    pictures: Sequence[Tuple[bytes, str]] = (),
) -> bytes:
    """Minimal FLAC stream: STREAMINFO, VORBIS_COMMENT and optional PICTURE blocks."""
    pairs = list(comments.items()) if isinstance(comments, dict) else list(comments)
    blocks = [(0, _streaminfo()), (4, _vorbis_comment(pairs))]
    blocks += [(6, _picture(data, mime)) for data, mime in pictures]
    body = b"".join(_block(t, d, i == len(blocks) - 1) for i, (t, d) in enumerate(blocks))
    return b"fLaC" + body


class FakeFS:
    """In-memory LibraryFS that counts reads."""

    def __init__(self) -> None:
        self.files: Dict[str, Union[bytes, Exception]] = {}
        self.reads: Counter = Counter()
        self._lock = threading.Lock()

    def add(self, path: str, data: Union[bytes, str, Exception]) -> str:
        key = normalize_path(path)
        self.files[key] = data.encode("utf-8") if isinstance(data, str) else data
        return key

    def remove(self, path: str) -> None:
        self.files.pop(normalize_path(path), None)

    def iter_audio_files(self, roots: Iterable[str], suffixes: Iterable[str]) -> List[str]:
        prefixes = [normalize_path(r).rstrip("/") + "/" for r in roots]
        return sorted(
            p for p in self.files if has_suffix(p, suffixes) and any(p.startswith(x) for x in prefixes)
        )

    def read_bytes(self, path: str) -> bytes:
        with self._lock:
            self.reads[path] += 1
        data = self.files.get(path)
        if data is None:
            raise FileNotFoundError(path)
        if isinstance(data, Exception):
            raise data
        return data

    def read_text(self, path: str) -> str:
        data = self.files.get(path)
        if data is None:
            raise FileNotFoundError(path)
        if isinstance(data, Exception):
            raise data
        return data.decode("utf-8")

    def exists(self, path: str) -> bool:
        return path in self.files

    @property
    def audio_reads(self) -> int:
        return sum(n for p, n in self.reads.items() if not p.endswith(".lrc"))


class SaveRecorder:
    def __init__(self) -> None:
        self.calls = 0
        self.event = threading.Event()
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            self.calls += 1
        self.event.set()


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def quiet_logger():
    logger.remove()
    yield
    logger.remove()


@pytest.fixture
def flac():
    return build_flac


@pytest.fixture
def fake_fs():
    return FakeFS()


@pytest.fixture
def engine(fake_fs):
    """A wired SyncScheduler over the fake filesystem with short timers."""
    covers = CoverRegistry()
    store = MetadataStore()
    reconciler = PersistenceReconciler(store, covers=covers)
    saves = SaveRecorder()
    scheduler = SyncScheduler(
        store,
        reconciler,
        TagExtractor(covers),
        covers,
        fake_fs,
        workers=4,
        settle_delay=0.02,
        debounce_delay=0.3,
        save_callback=saves,
    )
    scheduler.saves = saves  # type: ignore[attr-defined]
    yield scheduler
    scheduler.close()


@pytest.fixture
def wait():
    return wait_for
