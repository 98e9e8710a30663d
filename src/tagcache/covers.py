"""Registry of in-memory cover images handed out as opaque string handles.

A handle is only meaningful inside the process that issued it. Persisted
snapshots may still carry old handles (ours, or ``blob:`` URLs written by
earlier tools); `is_transient` recognises both so they can be dropped on load.
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Optional, Sequence

from loguru import logger

HANDLE_PREFIX = "cover:"
TRANSIENT_PREFIXES = (HANDLE_PREFIX, "blob:")


@dataclass(frozen=True)
class EmbeddedPicture:
    """A picture as found in the tags, before it is registered."""

    data: bytes
    mime: str = ""
    type: int = 3  # ID3/FLAC picture type, 3 = front cover


@dataclass(frozen=True)
class CoverImage:
    data: bytes
    mime: str


def guess_mime(data: bytes) -> str:
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def _resize_cover_art(img_data: bytes, max_size: int) -> bytes:
    """Resize image if its larger dimension exceeds max_size."""
    try:
        from PIL import Image

        img = Image.open(BytesIO(img_data))
        if img.width > max_size or img.height > max_size:
            img.thumbnail((max_size, max_size))
            out_buffer = BytesIO()
            img_format = img.format if img.format in ["JPEG", "PNG"] else "JPEG"
            if img_format == "JPEG" and img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            img.save(out_buffer, format=img_format)
            return out_buffer.getvalue()
    except Exception as e:
        logger.debug(f"cover resize skipped: {e}")
        return img_data
    return img_data


class CoverRegistry:
    """Owns the bytes behind every cover handle it issues."""

    def __init__(self, *, resize: bool = False, max_size: int = 1500) -> None:
        self._images: Dict[str, CoverImage] = {}
        self._lock = threading.Lock()
        self._resize = resize
        self._max_size = max_size

    @staticmethod
    def is_transient(value: Any) -> bool:
        return isinstance(value, str) and value.startswith(TRANSIENT_PREFIXES)

    def extract_cover(self, pictures: Optional[Sequence[Any]]) -> Optional[str]:
        """Register the first picture and return its handle.

        Only ``pictures[0]`` is considered, whatever its type or size.
        """
        if not pictures:
            return None
        picture = pictures[0]
        try:
            data = bytes(picture.data)
            if not data:
                return None
            if self._resize:
                data = _resize_cover_art(data, self._max_size)
            mime = getattr(picture, "mime", "") or guess_mime(data)
            handle = f"{HANDLE_PREFIX}{uuid.uuid4().hex}"
            with self._lock:
                self._images[handle] = CoverImage(data=data, mime=mime)
            return handle
        except Exception as e:
            logger.bind(action="cover", status="warn", reason=str(e)).warning("cover extraction failed")
            return None

    def get(self, handle: Optional[str]) -> Optional[CoverImage]:
        if not handle:
            return None
        with self._lock:
            return self._images.get(handle)

    def release(self, handle: Optional[str]) -> bool:
        if not handle:
            return False
        with self._lock:
            return self._images.pop(handle, None) is not None

    def release_all(self) -> int:
        with self._lock:
            count = len(self._images)
            self._images.clear()
        if count:
            logger.debug(f"released {count} cover handle(s)")
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._images)

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._images


__all__ = [
    "CoverRegistry",
    "CoverImage",
    "EmbeddedPicture",
    "HANDLE_PREFIX",
    "TRANSIENT_PREFIXES",
    "guess_mime",
]
