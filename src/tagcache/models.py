"""Record and snapshot types for the metadata cache."""
from __future__ import annotations

from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, Mapping, Optional

UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"

RECORD_FIELDS = ("title", "artist", "album", "cover", "lyrics")

# path -> dehydrated record, the unit written to and read from durable storage
Snapshot = Dict[str, Dict[str, Any]]


@dataclass(frozen=True)
class Record:
    """Derived metadata for one audio file.

    `cover` is a transient handle issued by `CoverRegistry`, or None.
    """

    title: str
    artist: str
    album: str
    cover: Optional[str] = None
    lyrics: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_changes(self, **changes: Any) -> "Record":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        """Build a Record from a dehydrated entry, restoring values verbatim.

        Missing text fields become "" so that the completeness check treats
        them as absent; non-string covers/lyrics are dropped.
        """
        def _text(key: str) -> str:
            v = data.get(key)
            return "" if v is None else str(v)

        def _opt(key: str) -> Optional[str]:
            v = data.get(key)
            return v if isinstance(v, str) else None

        return cls(
            title=_text("title"),
            artist=_text("artist"),
            album=_text("album"),
            cover=_opt("cover"),
            lyrics=_opt("lyrics"),
        )


DEFAULT_RECORD = Record(
    title=UNKNOWN_TITLE,
    artist=UNKNOWN_ARTIST,
    album=UNKNOWN_ALBUM,
    cover=None,
    lyrics=None,
)


def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


__all__ = [
    "Record",
    "Snapshot",
    "DEFAULT_RECORD",
    "RECORD_FIELDS",
    "UNKNOWN_TITLE",
    "UNKNOWN_ARTIST",
    "UNKNOWN_ALBUM",
    "is_blank",
]
