"""Base64 codec used to ship images to the engine as text.

The engine expects JPEG bytes wrapped in base64. Two alphabets are supported:

- standard: ``A-Z a-z 0-9 + /`` padded with ``=``
- url: ``A-Z a-z 0-9 - _`` padded with ``.``

Every 3 input bytes become 4 output characters; a trailing group of 1 or 2
bytes is padded so the output length is always a multiple of 4.
"""

from __future__ import annotations

import base64
import binascii


STANDARD_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
URL_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
STANDARD_PADDING = "="
URL_PADDING = "."

_URL_TO_STANDARD_PADDING = str.maketrans(URL_PADDING, STANDARD_PADDING)
_URL_FOREIGN = frozenset("+/=")


def encoded_length(num_bytes: int) -> int:
    """Return the number of characters ``b64encode`` produces for ``num_bytes``."""

    if num_bytes < 0:
        raise ValueError("num_bytes must be non-negative")
    return (num_bytes + 2) // 3 * 4


def b64encode(data: bytes, *, url: bool = False) -> str:
    if url:
        encoded = base64.urlsafe_b64encode(data).decode("ascii")
        return encoded.replace(STANDARD_PADDING, URL_PADDING)
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str, *, url: bool = False) -> bytes:
    """Inverse of :func:`b64encode`.

    Raises ``ValueError`` for input whose length is not a multiple of 4, for
    characters outside the selected alphabet, and for misplaced padding.
    """

    if len(text) % 4 != 0:
        raise ValueError("base64 input length must be a multiple of 4")

    altchars = None
    if url:
        if not _URL_FOREIGN.isdisjoint(text):
            raise ValueError("Invalid base64 data: character outside the URL-safe alphabet")
        text = text.translate(_URL_TO_STANDARD_PADDING)
        altchars = b"-_"
    try:
        return base64.b64decode(text, altchars=altchars, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 data: {exc}") from exc


__all__ = [
    "STANDARD_ALPHABET",
    "STANDARD_PADDING",
    "URL_ALPHABET",
    "URL_PADDING",
    "b64decode",
    "b64encode",
    "encoded_length",
]
