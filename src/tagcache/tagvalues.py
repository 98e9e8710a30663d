"""Tag value shapes and the text normalization rule used for every field.

Decoded tags come in several shapes depending on the container: plain
strings, lists of strings, frame objects carrying a ``text`` attribute,
synchronised-lyrics frames whose text is a list of ``(text, time)`` pairs,
ASF/MP4 attribute wrappers around a value. ``classify`` maps any of these onto
a small closed set of variants and ``normalize_text`` reduces a variant to a
trimmed string or None.
"""
from __future__ import annotations

from dataclasses import dataclass
from numbers import Number
from typing import Any, Mapping, Optional, Tuple, Union

from mutagen.apev2 import APETextValue


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Items:
    items: Tuple["TagValue", ...]


@dataclass(frozen=True)
class WithText:
    inner: "TagValue"


@dataclass(frozen=True)
class TimedLines:
    lines: Tuple[str, ...]


@dataclass(frozen=True)
class Opaque:
    pass


TagValue = Union[Text, Items, WithText, TimedLines, Opaque]

OPAQUE = Opaque()

_VARIANTS = (Text, Items, WithText, TimedLines, Opaque)


def _is_timed_pair(item: Any) -> bool:
    return (
        isinstance(item, tuple)
        and len(item) == 2
        and isinstance(item[0], str)
        and isinstance(item[1], Number)
    )


def _line_text(line: Any) -> Optional[str]:
    if isinstance(line, str):
        return line
    if isinstance(line, Mapping):
        text = line.get("text")
        return text if isinstance(text, str) else None
    if _is_timed_pair(line):
        return line[0]
    text = getattr(line, "text", None)
    return text if isinstance(text, str) else None


def _timed_lines(lines: Any) -> TimedLines:
    texts = (_line_text(line) for line in lines)
    return TimedLines(tuple(t for t in texts if t is not None))


def classify(raw: Any) -> TagValue:
    """Map a raw tag value onto its variant."""
    if isinstance(raw, _VARIANTS):
        return raw
    if raw is None:
        return OPAQUE
    if isinstance(raw, str):
        return Text(raw)
    if isinstance(raw, (bytes, bytearray)):
        # MP4 freeform atoms and binary ASF/APE values
        return Text(bytes(raw).decode("utf-8", errors="replace"))
    if isinstance(raw, Mapping):
        if raw.get("text") is not None:
            return WithText(classify(raw["text"]))
        if isinstance(raw.get("lyrics"), (list, tuple)):
            return _timed_lines(raw["lyrics"])
        return OPAQUE
    if isinstance(raw, APETextValue):
        return Items(tuple(Text(s) for s in raw))
    if isinstance(raw, (list, tuple)):
        if raw and all(_is_timed_pair(item) for item in raw):
            return _timed_lines(raw)
        return Items(tuple(classify(item) for item in raw))
    if hasattr(raw, "text"):
        # ID3 frames: USLT/TXXX/T*** (text) and SYLT (list of (text, time))
        return WithText(classify(raw.text))
    if hasattr(raw, "value"):
        # ASF attributes
        return classify(raw.value)
    return OPAQUE


def normalize_text(value: TagValue) -> Optional[str]:
    """Reduce a tag value to trimmed text, or None when it carries none."""
    if isinstance(value, Text):
        stripped = value.value.strip()
        return stripped or None
    if isinstance(value, Items):
        for item in value.items:
            text = normalize_text(item)
            if text is not None:
                return text
        return None
    if isinstance(value, WithText):
        return normalize_text(value.inner)
    if isinstance(value, TimedLines):
        joined = "\n".join(value.lines)
        return joined if joined.strip() else None
    return None


def text_of(raw: Any) -> Optional[str]:
    """classify + normalize_text in one step."""
    return normalize_text(classify(raw))


__all__ = [
    "Text",
    "Items",
    "WithText",
    "TimedLines",
    "Opaque",
    "TagValue",
    "classify",
    "normalize_text",
    "text_of",
]
