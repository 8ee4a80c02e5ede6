"""General utility functions."""

from __future__ import annotations

import base64
import binascii
import json
import time
from typing import Any
from urllib.parse import quote, unquote

__all__ = [
    "add_padding",
    "canonical_json",
    "current_timestamp_ms",
    "decode_refresh_token",
    "encode_refresh_token",
]


def add_padding(encoded: str) -> str:
    """Add padding to base64 encoded bytes.

    Parameters
    ----------
    encoded
        A base64-encoded string, possibly with the padding removed.

    Returns
    -------
    str
        A correctly-padded version of the encoded string.
    """
    underflow = len(encoded) % 4
    if underflow:
        return encoded + ("=" * (4 - underflow))
    else:
        return encoded


def canonical_json(data: Any) -> str:
    """Serialize data to JSON with a stable key order.

    Used wherever two equal payloads must produce the same string, such as
    deduplication keys and signature digests.
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def current_timestamp_ms() -> int:
    """Return the current time in milliseconds since epoch."""
    return int(time.time() * 1000)


def encode_refresh_token(token: str) -> str:
    """Obfuscate a refresh token for durable storage.

    This is percent-encoding followed by base64 and is trivially reversible.
    It only keeps the raw token out of casual view of the storage and is not
    encryption.

    Parameters
    ----------
    token
        Refresh token.

    Returns
    -------
    str
        Encoded form of the token.
    """
    return base64.b64encode(quote(token, safe="").encode()).decode()


def decode_refresh_token(encoded: str) -> str | None:
    """Reverse `encode_refresh_token`.

    Parameters
    ----------
    encoded
        Encoded form of the token as read from storage.

    Returns
    -------
    str or None
        The refresh token, or `None` if the stored value is corrupt.
    """
    try:
        raw = base64.b64decode(add_padding(encoded), validate=True)
        return unquote(raw.decode(), errors="strict") or None
    except (binascii.Error, UnicodeDecodeError):
        return None
