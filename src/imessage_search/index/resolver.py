"""Choose the searchable text for a source message."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from .extractor import extract_text

if TYPE_CHECKING:
    from collections.abc import Callable


class TextRecord(Protocol):
    """Anything carrying a plain-text column and an attributedBody blob."""

    text: str | None
    attributed_body: bytes | None


def resolve_message_text(
    message: TextRecord,
    extractor: Callable[[bytes | None], str | None] = extract_text,
) -> str | None:
    """
    Return the text to index for a message.

    The plain ``text`` column wins when it has visible content; otherwise
    the body is recovered from ``attributed_body``.

    Args:
        message: Source row with ``text`` and ``attributed_body``
        extractor: Blob decoder (defaults to extract_text)

    Returns:
        Trimmed, non-empty text, or None if the message has none
    """
    if message.text and message.text.strip():
        return message.text.strip()

    if message.attributed_body:
        extracted = extractor(message.attributed_body)
        if extracted and extracted.strip():
            return extracted.strip()

    return None
