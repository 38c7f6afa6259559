"""Plain-text recovery from ``attributedBody`` blobs.

Messages sent from recent macOS/iOS versions often leave the ``text``
column empty and store the body inside ``attributedBody``, an archived
NSAttributedString. Two strategies are tried in order:

1. KeyedArchiveStrategy: parse the blob as an NSKeyedArchiver binary plist
   and pick the first plausible string out of ``$objects``.
2. StreamMarkerStrategy: scan the raw bytes for the ``NSString`` class
   name and decode the length-prefixed UTF-8 run that follows it
   (typedstream layout):

       ...NSString\\x01\\x94\\x84\\x01+\\x05Hello\\x86\\x84...
                                    ^ ^    ^    ^
                                    | |    |    end marker
                                    | |    text
                                    | length prefix
                                    length marker

Blob content is untrusted. ``extract_text`` never raises.
"""

from __future__ import annotations

import logging
import plistlib
import re
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

# Class name that precedes the message body in typedstream archives
NSSTRING_MARKER = b"NSString"

# Maximum distance (bytes) between the class name and the '+' marker
MAX_MARKER_OFFSET = 80

LENGTH_MARKER = 0x2B  # '+' marks start of length encoding
END_MARKER = 0x86  # Marks end of text
SINGLE_BYTE_MAX = 0x80
TWO_BYTE = 0x81
THREE_BYTE = 0x82
FOUR_BYTE = 0x83

# Invisible characters stripped from the ends of extracted text:
# U+FFFC (object replacement, attachment placeholder), U+FFFD
# (replacement char) and ASCII control bytes.
_LEADING_JUNK = re.compile(r"^[\ufffc\ufffd\x00-\x1f]+")
_TRAILING_JUNK = re.compile(r"[\ufffc\ufffd\x00-\x1f]+$")

# Strings inside an archive that are class names or archiver keys
_METADATA_PATTERNS = (
    re.compile(r"^NS[A-Z]"),  # NSString, NSMutableString, ...
    re.compile(r"^\$[a-z]"),  # $class, $null, ...
    re.compile(r"^__kIM"),  # internal iMessage attribute keys
    re.compile(r"^com\.apple"),  # bundle identifiers
)


def clean_extracted_text(text: str | None) -> str:
    """Strip attachment placeholders, control bytes and whitespace."""
    if not text:
        return ""
    text = _LEADING_JUNK.sub("", text)
    text = _TRAILING_JUNK.sub("", text)
    return text.replace("\ufffc", "").strip()


def is_metadata_string(value: str) -> bool:
    """Return True if the string looks like archive metadata, not a body."""
    return any(pattern.search(value) for pattern in _METADATA_PATTERNS)


class ExtractionStrategy(Protocol):
    """A single way of recovering text from a blob."""

    name: str

    def __call__(self, data: bytes) -> str | None: ...


class KeyedArchiveStrategy:
    """Read the body out of an NSKeyedArchiver plist."""

    name = "keyed-archive"

    def __call__(self, data: bytes) -> str | None:
        try:
            archive = plistlib.loads(data)
        except (plistlib.InvalidFileException, ValueError, TypeError):
            return None

        if not isinstance(archive, dict):
            return None
        objects = archive.get("$objects")
        if not isinstance(objects, list):
            return None

        for obj in objects:
            if isinstance(obj, str):
                cleaned = clean_extracted_text(obj)
                if len(cleaned) > 1 and not is_metadata_string(cleaned):
                    return cleaned
            elif isinstance(obj, dict) and "NS.string" in obj:
                value = _resolve_uid(obj["NS.string"], objects)
                if isinstance(value, str):
                    cleaned = clean_extracted_text(value)
                    if cleaned:
                        return cleaned

        return None


def _resolve_uid(value: object, objects: list) -> object:
    """Follow a plistlib.UID reference into the archive object table."""
    if isinstance(value, plistlib.UID):
        if 0 <= value.data < len(objects):
            return objects[value.data]
        return None
    return value


class StreamMarkerStrategy:
    """Decode the length-prefixed string that follows ``NSString``."""

    name = "stream-marker"

    def __call__(self, data: bytes) -> str | None:
        idx = data.find(NSSTRING_MARKER)
        if idx == -1:
            return None

        after_marker = idx + len(NSSTRING_MARKER)
        plus_idx = data.find(
            LENGTH_MARKER, after_marker, idx + MAX_MARKER_OFFSET
        )
        # Some archives carry the length right after the class name
        start = plus_idx + 1 if plus_idx != -1 else after_marker

        decoded = decode_length_prefix(data, start)
        if decoded is None:
            return None
        text_start, length = decoded

        end_idx = data.find(END_MARKER, text_start)
        if plus_idx == -1 and (
            length == 0 or end_idx == -1 or text_start + length != end_idx
        ):
            # Without '+' the length must land exactly on the end marker
            return None
        bound = end_idx if end_idx != -1 else len(data)
        text_end = min(text_start + length, bound) if length > 0 else bound

        text = data[text_start:text_end].decode("utf-8", errors="replace")
        return clean_extracted_text(text) or None


def decode_length_prefix(data: bytes, pos: int) -> tuple[int, int] | None:
    """
    Decode the variable-width length at ``data[pos]``.

    Returns:
        (text_start, length) where a length of 0 means "unknown, read to
        the end marker", or None if the length field is truncated.
    """
    if pos >= len(data):
        return None

    first = data[pos]
    if first < SINGLE_BYTE_MAX:
        return pos + 1, first

    widths = {TWO_BYTE: 2, THREE_BYTE: 3, FOUR_BYTE: 4}
    width = widths.get(first)
    if width is not None:
        field = data[pos + 1 : pos + 1 + width]
        if len(field) < width:
            return None
        return pos + 1 + width, int.from_bytes(field, "little")

    # Unknown encoding: skip the byte and any control bytes after it
    start = pos + 1
    while start < len(data) and data[start] < 0x20:
        start += 1
    return start, 0


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    KeyedArchiveStrategy(),
    StreamMarkerStrategy(),
)


def extract_text(
    buffer: bytes | bytearray | memoryview | None,
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
) -> str | None:
    """
    Recover the message body from an attributedBody blob.

    Args:
        buffer: Raw blob from the source database (may be None)
        strategies: Extraction strategies, tried in order

    Returns:
        The first non-empty result, or None if nothing plausible is found
    """
    if not buffer:
        return None

    try:
        data = bytes(buffer)
    except (TypeError, ValueError):
        return None

    for strategy in strategies:
        try:
            text = strategy(data)
        except Exception as e:  # Broad: blob content is untrusted
            logger.debug("Strategy %s failed: %s", strategy.name, e)
            continue
        if text:
            return text

    return None
