"""Tests for token and API models."""

from __future__ import annotations

import os
from datetime import timedelta

import jwt
from safir.datetime import current_datetime

from algosync_session import AccessToken, LoginData, RefreshData

from tests.support.tokens import make_token


def test_from_token() -> None:
    token = make_token(timedelta(minutes=30))
    access = AccessToken.from_token(token)

    assert access.token == token
    assert access.subject == "42"
    assert access.username == "someuser"
    assert access.email == "someuser@example.com"
    assert access.roles == ["user"]
    assert access.issued_at
    assert access.expires
    remaining = access.remaining()
    assert remaining
    assert timedelta(minutes=29) < remaining <= timedelta(minutes=30)
    assert not access.is_expired()
    assert access.is_expired(timedelta(minutes=31))

    # The token itself never appears in the repr or the logging context.
    assert token not in repr(access)
    assert token not in str(access.to_logging_context())


def test_opaque_token() -> None:
    access = AccessToken.from_token("not-a-jwt")
    assert access.subject is None
    assert access.roles == []
    assert access.remaining() is None
    assert access.is_expired()

    expires = current_datetime() + timedelta(hours=1)
    access = AccessToken.from_token("not-a-jwt", expires=expires)
    assert access.expires == expires
    assert not access.is_expired()


def test_expired_token() -> None:
    access = AccessToken.from_token(make_token(timedelta(seconds=-10)))
    assert access.remaining() == timedelta(0)
    assert access.is_expired(timedelta(0))


def test_irregular_claims() -> None:
    key = os.urandom(32).hex()
    token = jwt.encode({"sub": "1", "roles": "admin"}, key)
    pair = LoginData(token=token, refresh_token="r").to_token_pair()
    assert pair.access_token.subject == "1"
    assert pair.access_token.roles == ["admin"]

    claims = {
        "sub": "7",
        "username": 12,
        "email": ["someuser@example.com"],
        "roles": ["admin", 3, None, "user"],
    }
    access = AccessToken.from_token(jwt.encode(claims, key))
    assert access.subject == "7"
    assert access.username is None
    assert access.email is None
    assert access.roles == ["admin", "user"]

    claims = {"sub": "1", "roles": {"admin": True}}
    access = AccessToken.from_token(jwt.encode(claims, key))
    assert access.roles == []


def test_login_data() -> None:
    token = make_token()
    data = LoginData.model_validate(
        {
            "token": token,
            "refresh_token": "some-refresh-token",
            "expires_at": "2030-01-01T00:00:00Z",
            "user": {"id": 42, "username": "someuser", "avatar_color": "red"},
        }
    )
    pair = data.to_token_pair()
    assert pair.access_token.token == token
    assert pair.refresh_token == "some-refresh-token"

    # The exp claim of the token takes precedence over expires_at.
    assert pair.access_token.expires
    assert pair.access_token.expires.year != 2030

    # Unknown user fields are kept.
    assert data.user
    assert data.user.model_dump()["avatar_color"] == "red"


def test_refresh_data_expires_in() -> None:
    data = RefreshData(
        access_token="opaque", refresh_token="some-refresh", expires_in=600
    )
    access = data.to_token_pair().access_token
    remaining = access.remaining()
    assert remaining
    assert timedelta(minutes=9) < remaining <= timedelta(minutes=10)
