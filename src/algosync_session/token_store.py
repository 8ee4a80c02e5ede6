"""Two-tier storage of the access and refresh tokens."""

from __future__ import annotations

import structlog
from structlog.stdlib import BoundLogger

from .constants import REFRESH_TOKEN_KEY, TOKEN_TIMESTAMP_KEY
from .events import EventBus, TokenUpdatedEvent
from .models import AccessToken, TokenPair
from .storage import SharedStore
from .util import (
    current_timestamp_ms,
    decode_refresh_token,
    encode_refresh_token,
)

__all__ = ["TokenStore"]


class TokenStore:
    """Hold the token pair for one execution context.

    The access token lives only in process memory and is lost on restart.
    The refresh token is written, in encoded form and with a write
    timestamp, to storage shared with sibling contexts, and is mirrored in
    memory so that both tokens can be read without suspending.

    Parameters
    ----------
    storage
        Durable storage shared with sibling contexts.
    events
        Bus on which to publish ``token-updated`` events.
    logger
        Logger to use. If not given, the default structlog logger will be
        used.

    Notes
    -----
    The in-memory copies of both tokens are replaced together, with no
    suspension point in between, after the durable write succeeds. Readers
    therefore never see a new access token next to an old refresh token or
    the reverse.

    The encoding of the persisted refresh token is reversible obfuscation,
    not encryption. Anyone able to read the shared storage can recover the
    token.
    """

    def __init__(
        self,
        storage: SharedStore,
        events: EventBus,
        *,
        logger: BoundLogger | None = None,
    ) -> None:
        self._storage = storage
        self._events = events
        self._logger = logger or structlog.get_logger("algosync_session")
        self._access: AccessToken | None = None
        self._refresh: str | None = None

    async def load(self) -> None:
        """Load the persisted refresh token, typically at startup.

        The access token is not restored. It has to be obtained by a refresh
        using the persisted refresh token.
        """
        encoded = await self._storage.get(REFRESH_TOKEN_KEY)
        self._refresh = self._decode(encoded) if encoded else None

    async def set_pair(self, pair: TokenPair) -> None:
        """Install a new token pair.

        Writing the same pair twice leaves the store in the same state as
        writing it once.

        Parameters
        ----------
        pair
            Access and refresh token to install.
        """
        await self._storage.set_many(
            {
                REFRESH_TOKEN_KEY: encode_refresh_token(pair.refresh_token),
                TOKEN_TIMESTAMP_KEY: str(current_timestamp_ms()),
            }
        )
        self._access = pair.access_token
        self._refresh = pair.refresh_token
        self._events.publish(TokenUpdatedEvent(has_token=True))

    def get_access(self) -> AccessToken | None:
        """Return the current access token, if any."""
        return self._access

    def get_refresh(self) -> str | None:
        """Return the current refresh token, if any."""
        return self._refresh

    async def clear(self) -> None:
        """Remove both tokens from memory and from shared storage.

        Clearing an empty store is not an error. The tokens are dropped from
        memory and the update is published even if shared storage fails, in
        which case the storage error is then raised.
        """
        self._access = None
        self._refresh = None
        try:
            await self._storage.delete_many(
                [REFRESH_TOKEN_KEY, TOKEN_TIMESTAMP_KEY]
            )
        finally:
            self._events.publish(TokenUpdatedEvent(has_token=False))

    def apply_external_refresh(self, encoded: str) -> None:
        """Adopt a refresh token written by a sibling context.

        The access token is left alone, since a sibling's access token is
        never shared.

        Parameters
        ----------
        encoded
            Encoded refresh token as found in shared storage.
        """
        self._refresh = self._decode(encoded)

    def forget_access(self) -> None:
        """Drop the in-memory access token without touching storage."""
        self._access = None

    def _decode(self, encoded: str) -> str | None:
        token = decode_refresh_token(encoded)
        if token is None:
            self._logger.warning(
                "Ignoring corrupt persisted refresh token",
                key=REFRESH_TOKEN_KEY,
            )
        return token
