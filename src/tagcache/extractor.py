"""Tag extraction with mutagen.

Decodes an in-memory audio buffer into a `Record`. Title/artist/album come
from a per-container key map; lyrics go through a fallback chain spanning
ID3v2, Vorbis comments, APEv2, MP4 and ASF; the first embedded picture is
registered with the `CoverRegistry`.

Extraction never raises: a buffer mutagen cannot decode yields
`DEFAULT_RECORD` and an error log line.
"""
from __future__ import annotations

import base64
from io import BytesIO
from typing import Any, Callable, List, Optional, Sequence, Tuple

import mutagen
from loguru import logger
from mutagen._vorbis import VCommentDict
from mutagen.apev2 import APEv2, APEBinaryValue
from mutagen.asf import ASFTags
from mutagen.flac import Picture as FLACPicture
from mutagen.id3 import ID3
from mutagen.mp4 import MP4Cover, MP4Tags

from .covers import CoverRegistry, EmbeddedPicture, guess_mime
from .logging import truncate
from .models import (
    DEFAULT_RECORD,
    UNKNOWN_ALBUM,
    UNKNOWN_ARTIST,
    UNKNOWN_TITLE,
    Record,
    is_blank,
)
from .tagvalues import text_of


ID3_FAMILY = "id3"
VORBIS_FAMILY = "vorbis"
APE_FAMILY = "ape"
MP4_FAMILY = "mp4"
ASF_FAMILY = "asf"

# Order matters: checked with isinstance, first hit wins.
_FAMILIES: Tuple[Tuple[type, str], ...] = (
    (ID3, ID3_FAMILY),
    (VCommentDict, VORBIS_FAMILY),
    (APEv2, APE_FAMILY),
    (MP4Tags, MP4_FAMILY),
    (ASFTags, ASF_FAMILY),
)

# Normalized ("common") fields per container family.
COMMON_KEYS = {
    "title": {
        ID3_FAMILY: "TIT2",
        VORBIS_FAMILY: "title",
        APE_FAMILY: "Title",
        MP4_FAMILY: "\xa9nam",
        ASF_FAMILY: "Title",
    },
    "artist": {
        ID3_FAMILY: "TPE1",
        VORBIS_FAMILY: "artist",
        APE_FAMILY: "Artist",
        MP4_FAMILY: "\xa9ART",
        ASF_FAMILY: "Author",
    },
    "album": {
        ID3_FAMILY: "TALB",
        VORBIS_FAMILY: "album",
        APE_FAMILY: "Album",
        MP4_FAMILY: "\xa9alb",
        ASF_FAMILY: "WM/AlbumTitle",
    },
    "lyrics": {
        ID3_FAMILY: "USLT",
        VORBIS_FAMILY: "lyrics",
        APE_FAMILY: "Lyrics",
        MP4_FAMILY: "\xa9lyr",
        ASF_FAMILY: "WM/Lyrics",
    },
}

VORBIS_LYRICS_KEYS = frozenset({"LYRICS", "UNSYNCEDLYRICS", "UNSYNCED LYRICS"})
APE_LYRICS_KEYS = ("Lyrics", "LYRICS", "UNSYNCED LYRICS")
MP4_LYRICS_KEYS = ("\xa9lyr", "----:com.apple.iTunes:LYRICS")
ASF_LYRICS_KEYS = ("WM/Lyrics",)


def tag_family(tags: Any) -> Optional[str]:
    if tags is None:
        return None
    for cls, family in _FAMILIES:
        if isinstance(tags, cls):
            return family
    return None


def _get(tags: Any, key: str) -> Any:
    try:
        return tags.get(key)
    except (KeyError, ValueError):
        return None


def common_value(tags: Any, field: str) -> Any:
    """Raw value of a normalized field, or None when the container lacks it."""
    family = tag_family(tags)
    if family is None:
        return None
    key = COMMON_KEYS[field][family]
    if family == ID3_FAMILY:
        return tags.getall(key) or None
    return _get(tags, key)


def common_text(tags: Any, field: str) -> Optional[str]:
    return text_of(common_value(tags, field))


# ---------------------------------------------------------------------------
# Lyrics fallback chain
# ---------------------------------------------------------------------------

def _common_lyrics(tags: Any) -> Optional[str]:
    return common_text(tags, "lyrics")


def _id3_uslt(tags: Any) -> Optional[str]:
    if tag_family(tags) != ID3_FAMILY:
        return None
    return text_of(tags.getall("USLT"))


def _id3_sylt(tags: Any) -> Optional[str]:
    if tag_family(tags) != ID3_FAMILY:
        return None
    return text_of(tags.getall("SYLT"))


def _id3_txxx(tags: Any) -> Optional[str]:
    if tag_family(tags) != ID3_FAMILY:
        return None
    frames = [f for f in tags.getall("TXXX") if "lyric" in (f.desc or "").lower()]
    return text_of(frames)


def _vorbis_lyrics(tags: Any) -> Optional[str]:
    if tag_family(tags) != VORBIS_FAMILY:
        return None
    for key in tags.keys():
        if key.upper() in VORBIS_LYRICS_KEYS:
            text = text_of(tags[key])
            if text:
                return text
    return None


def _ape_lyrics(tags: Any) -> Optional[str]:
    if tag_family(tags) != APE_FAMILY:
        return None
    # APEv2 keys compare case-insensitively
    for key in APE_LYRICS_KEYS:
        text = text_of(_get(tags, key))
        if text:
            return text
    return None


def _mp4_asf_lyrics(tags: Any) -> Optional[str]:
    family = tag_family(tags)
    if family == MP4_FAMILY:
        keys: Sequence[str] = MP4_LYRICS_KEYS
    elif family == ASF_FAMILY:
        keys = ASF_LYRICS_KEYS
    else:
        return None
    for key in keys:
        text = text_of(_get(tags, key))
        if text:
            return text
    return None


LYRICS_SOURCES: Tuple[Tuple[str, Callable[[Any], Optional[str]]], ...] = (
    ("common", _common_lyrics),
    ("id3:USLT", _id3_uslt),
    ("id3:SYLT", _id3_sylt),
    ("id3:TXXX", _id3_txxx),
    ("vorbis", _vorbis_lyrics),
    ("apev2", _ape_lyrics),
    ("mp4/asf", _mp4_asf_lyrics),
)


def resolve_lyrics(tags: Any, external_lyrics: Optional[str] = None) -> Optional[str]:
    """Pick lyrics: non-blank external text first, then embedded sources in order."""
    if not is_blank(external_lyrics):
        return external_lyrics
    for name, source in LYRICS_SOURCES:
        try:
            text = source(tags)
        except Exception as e:
            logger.debug(f"lyrics source {name} skipped: {e}")
            continue
        if text:
            return text
    return None


# ---------------------------------------------------------------------------
# Pictures
# ---------------------------------------------------------------------------

def _flac_block_pictures(audio: Any) -> List[EmbeddedPicture]:
    return [
        EmbeddedPicture(bytes(p.data), p.mime or "", int(p.type))
        for p in (getattr(audio, "pictures", None) or [])
        if getattr(p, "data", None)
    ]


def _id3_pictures(tags: Any) -> List[EmbeddedPicture]:
    if tag_family(tags) != ID3_FAMILY:
        return []
    return [
        EmbeddedPicture(bytes(f.data), f.mime or "", int(f.type))
        for f in tags.getall("APIC")
        if f.data
    ]


def _vorbis_pictures(tags: Any) -> List[EmbeddedPicture]:
    if tag_family(tags) != VORBIS_FAMILY:
        return []
    out: List[EmbeddedPicture] = []
    for val in _get(tags, "metadata_block_picture") or []:
        try:
            pic = FLACPicture(base64.b64decode(val))
        except Exception as e:
            logger.debug(f"bad METADATA_BLOCK_PICTURE skipped: {e}")
            continue
        if pic.data:
            out.append(EmbeddedPicture(bytes(pic.data), pic.mime or "", int(pic.type)))
    return out


def _mp4_pictures(tags: Any) -> List[EmbeddedPicture]:
    if tag_family(tags) != MP4_FAMILY:
        return []
    out: List[EmbeddedPicture] = []
    for cover in _get(tags, "covr") or []:
        fmt = getattr(cover, "imageformat", None)
        if fmt == MP4Cover.FORMAT_PNG:
            mime = "image/png"
        elif fmt == MP4Cover.FORMAT_JPEG:
            mime = "image/jpeg"
        else:
            mime = guess_mime(bytes(cover))
        out.append(EmbeddedPicture(bytes(cover), mime))
    return out


def _ape_pictures(tags: Any) -> List[EmbeddedPicture]:
    if tag_family(tags) != APE_FAMILY:
        return []
    value = _get(tags, "Cover Art (Front)")
    if not isinstance(value, APEBinaryValue):
        return []
    # "<filename>\0<image bytes>"
    _name, _, data = bytes(value.value).partition(b"\x00")
    return [EmbeddedPicture(data, guess_mime(data))] if data else []


def collect_pictures(audio: Any) -> List[EmbeddedPicture]:
    """All embedded pictures in source order."""
    tags = getattr(audio, "tags", None)
    pictures: List[EmbeddedPicture] = []
    sources = (
        lambda: _flac_block_pictures(audio),
        lambda: _id3_pictures(tags),
        lambda: _vorbis_pictures(tags),
        lambda: _mp4_pictures(tags),
        lambda: _ape_pictures(tags),
    )
    for source in sources:
        try:
            pictures.extend(source())
        except Exception as e:
            logger.debug(f"picture source skipped: {e}")
    return pictures


def decode(data: bytes, filename: Optional[str] = None) -> Any:
    """Run mutagen's format detection over an in-memory buffer.

    Returns None for formats mutagen does not recognise.
    """
    buf = BytesIO(data)
    if filename:
        # Only used by mutagen for suffix-based scoring
        buf.name = filename
    return mutagen.File(buf)


class TagExtractor:
    def __init__(self, covers: Optional[CoverRegistry] = None) -> None:
        self.covers = covers

    def extract(
        self,
        data: bytes,
        external_lyrics: Optional[str] = None,
        *,
        filename: Optional[str] = None,
    ) -> Record:
        try:
            audio = decode(data, filename)
        except Exception as e:
            logger.bind(action="decode", file=filename, status="error", reason=truncate(str(e), 300)).error(
                "decode failed"
            )
            return DEFAULT_RECORD
        if audio is None:
            logger.bind(action="decode", file=filename, status="error", reason="unsupported format").error(
                "decode failed"
            )
            return DEFAULT_RECORD

        try:
            tags = audio.tags
            title = common_text(tags, "title") or UNKNOWN_TITLE
            artist = common_text(tags, "artist") or UNKNOWN_ARTIST
            album = common_text(tags, "album") or UNKNOWN_ALBUM
            lyrics = resolve_lyrics(tags, external_lyrics)
            pictures = collect_pictures(audio)
        except Exception as e:
            logger.bind(action="decode", file=filename, status="error", reason=truncate(str(e), 300)).error(
                "tag read failed"
            )
            return DEFAULT_RECORD

        cover = self.covers.extract_cover(pictures) if self.covers is not None else None
        return Record(title=title, artist=artist, album=album, cover=cover, lyrics=lyrics)


__all__ = [
    "TagExtractor",
    "resolve_lyrics",
    "collect_pictures",
    "common_text",
    "tag_family",
    "decode",
    "LYRICS_SOURCES",
]
