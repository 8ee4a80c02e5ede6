"""Tests for utility functions."""

from __future__ import annotations

from algosync_session.util import (
    add_padding,
    canonical_json,
    decode_refresh_token,
    encode_refresh_token,
)


def test_add_padding() -> None:
    assert add_padding("") == ""
    assert add_padding("Zg") == "Zg=="
    assert add_padding("Zm8") == "Zm8="
    assert add_padding("Zm9v") == "Zm9v"


def test_canonical_json() -> None:
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    assert canonical_json({"a": 1, "b": 2}) == canonical_json({"b": 2, "a": 1})


def test_refresh_token_encoding() -> None:
    token = "some+refresh/token=with&odd?chars"
    encoded = encode_refresh_token(token)
    assert token not in encoded
    assert decode_refresh_token(encoded) == token

    # Padding stripped by some other writer is tolerated.
    assert decode_refresh_token(encoded.rstrip("=")) == token


def test_decode_corrupt() -> None:
    assert decode_refresh_token("!!! not base64 !!!") is None
    assert decode_refresh_token("") is None

    # Valid base64 that does not decode to UTF-8.
    assert decode_refresh_token("/w==") is None
