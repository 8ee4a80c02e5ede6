"""Models for tokens, session state, and the AlgoSync authentication API."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Self

import jwt
from pydantic import BaseModel, ConfigDict, Field
from safir.datetime import current_datetime
from safir.pydantic import UtcDatetime

from .constants import EXPIRY_BUFFER

__all__ = [
    "AccessToken",
    "LoginData",
    "RefreshData",
    "RegisterData",
    "SessionState",
    "TokenPair",
    "User",
]


class SessionState(Enum):
    """State of the session held by one execution context."""

    anonymous = "anonymous"
    """No tokens are held."""

    authenticated = "authenticated"
    """A token pair is installed and usable."""

    refreshing = "refreshing"
    """A refresh episode is in flight."""

    expired = "expired"
    """A refresh failed and the session is being torn down."""


class AccessToken(BaseModel):
    """Access token and the claims decoded from it.

    The claims are decoded without verifying the token signature. They are
    only used locally for expiry calculations and for presenting the current
    user, never for authorization decisions.
    """

    model_config = ConfigDict(frozen=True)

    token: Annotated[str, Field(title="Bearer token", repr=False)]

    subject: Annotated[
        str | None, Field(title="Subject", description="User ID")
    ] = None

    username: Annotated[str | None, Field(title="Username")] = None

    email: Annotated[str | None, Field(title="Email address")] = None

    roles: Annotated[list[str], Field(title="Roles")] = []

    issued_at: Annotated[UtcDatetime | None, Field(title="Issued at")] = None

    expires: Annotated[UtcDatetime | None, Field(title="Expiration")] = None

    @classmethod
    def from_token(
        cls, token: str, *, expires: datetime | None = None
    ) -> Self:
        """Build from a bearer token, decoding its claims if it is a JWT.

        Parameters
        ----------
        token
            Bearer token as returned by the API.
        expires
            Expiration reported by the API alongside the token, used if the
            token itself carries no ``exp`` claim.

        Returns
        -------
        AccessToken
            The token with whatever claims could be decoded. Opaque or
            malformed tokens produce a model with no claims.
        """
        try:
            claims = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": False},
            )
        except jwt.InvalidTokenError:
            claims = {}
        subject = claims.get("sub")
        return cls(
            token=token,
            subject=str(subject) if subject is not None else None,
            username=_string(claims.get("username")),
            email=_string(claims.get("email")),
            roles=_roles(claims.get("roles")),
            issued_at=_timestamp(claims.get("iat")),
            expires=_timestamp(claims.get("exp")) or expires,
        )

    def remaining(self, now: datetime | None = None) -> timedelta | None:
        """Return the remaining lifetime, or `None` if it is unknown.

        The result is never negative.
        """
        if not self.expires:
            return None
        now = now or current_datetime(microseconds=True)
        return max(self.expires - now, timedelta(0))

    def is_expired(self, buffer: timedelta = EXPIRY_BUFFER) -> bool:
        """Whether the token has expired or will within ``buffer``.

        A token of unknown lifetime is treated as expired.
        """
        remaining = self.remaining()
        return remaining is None or remaining <= buffer

    def to_logging_context(self) -> dict[str, Any]:
        """Convert to variables for a structlog logging context."""
        result: dict[str, Any] = {}
        if self.subject:
            result["user_id"] = self.subject
        if self.expires:
            result["expires"] = self.expires.isoformat()
        return result


class TokenPair(BaseModel):
    """The access and refresh token, always installed together."""

    model_config = ConfigDict(frozen=True)

    access_token: AccessToken

    refresh_token: Annotated[str, Field(repr=False)]


class User(BaseModel):
    """User information returned by the authentication API."""

    model_config = ConfigDict(extra="allow")

    id: Annotated[int | str, Field(title="User ID", examples=[42])]

    username: Annotated[str, Field(title="Username", examples=["someuser"])]

    email: Annotated[
        str | None, Field(title="Email", examples=["user@example.com"])
    ] = None

    role: Annotated[str | None, Field(title="Role", examples=["user"])] = None

    avatar: Annotated[str | None, Field(title="Avatar URL")] = None


class LoginData(BaseModel):
    """Payload of a successful ``POST /auth/login``."""

    token: Annotated[str, Field(title="Access token", repr=False)]

    refresh_token: Annotated[str, Field(title="Refresh token", repr=False)]

    expires_at: Annotated[
        UtcDatetime | None, Field(title="Access token expiration")
    ] = None

    token_type: Annotated[str, Field(title="Token type")] = "Bearer"

    user: Annotated[User | None, Field(title="Logged-in user")] = None

    def to_token_pair(self) -> TokenPair:
        """Convert to the token pair to install."""
        access = AccessToken.from_token(self.token, expires=self.expires_at)
        return TokenPair(access_token=access, refresh_token=self.refresh_token)


class RefreshData(BaseModel):
    """Payload of a successful ``POST /auth/refresh``."""

    access_token: Annotated[str, Field(title="Access token", repr=False)]

    refresh_token: Annotated[str, Field(title="Refresh token", repr=False)]

    expires_in: Annotated[
        int | None,
        Field(title="Lifetime", description="Access token lifetime (seconds)"),
    ] = None

    def to_token_pair(self) -> TokenPair:
        """Convert to the token pair to install."""
        expires = None
        if self.expires_in is not None:
            lifetime = timedelta(seconds=self.expires_in)
            expires = current_datetime(microseconds=True) + lifetime
        access = AccessToken.from_token(self.access_token, expires=expires)
        return TokenPair(access_token=access, refresh_token=self.refresh_token)


class RegisterData(RefreshData):
    """Payload of a successful ``POST /auth/register``."""

    user: Annotated[User | None, Field(title="Registered user")] = None


def _timestamp(value: Any) -> datetime | None:
    """Convert a JWT numeric date claim to a datetime."""
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=UTC)
    return None


def _string(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _roles(value: Any) -> list[str]:
    """Normalize the roles claim to a list of strings.

    A single role may be given as a string. Anything else that is not a list
    is ignored, as are list entries that are not strings.
    """
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [r for r in value if isinstance(r, str)]
    return []
