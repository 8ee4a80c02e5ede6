"""Propagation of session changes between execution contexts."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from structlog.stdlib import BoundLogger

from .constants import REFRESH_TOKEN_KEY
from .refresh import RefreshCoordinator
from .storage import SharedStore, StorageChange
from .token_store import TokenStore

__all__ = ["CrossContextSync"]


class CrossContextSync:
    """Apply changes to the shared refresh token made by sibling contexts.

    If a sibling removes the refresh token (because it logged out or its
    refresh failed), this context drops its access token and performs the
    same cleanup as a local logout, without making any network call. If a
    sibling rotates the refresh token, this context adopts the new one so
    that its next refresh does not present a token the server has already
    invalidated.

    Parameters
    ----------
    storage
        Shared storage to watch.
    store
        Token storage of this context.
    coordinator
        Refresh coordinator of this context.
    logger
        Logger to use. If not given, the default structlog logger will be
        used.
    """

    def __init__(
        self,
        storage: SharedStore,
        store: TokenStore,
        coordinator: RefreshCoordinator,
        *,
        logger: BoundLogger | None = None,
    ) -> None:
        self._storage = storage
        self._store = store
        self._coordinator = coordinator
        self._logger = logger or structlog.get_logger("algosync_session")
        self._remove: Callable[[], None] | None = None

    def start(self) -> None:
        """Start watching for changes. Does nothing if already started."""
        if not self._remove:
            self._remove = self._storage.add_listener(self._on_change)

    def stop(self) -> None:
        """Stop watching for changes."""
        if self._remove:
            self._remove()
            self._remove = None

    async def _on_change(self, change: StorageChange) -> None:
        if change.key != REFRESH_TOKEN_KEY:
            return
        if change.value is None:
            self._logger.info("Session ended in another context")
            self._store.forget_access()
            await self._coordinator.logout()
        else:
            self._logger.debug("Refresh token rotated in another context")
            self._store.apply_external_refresh(change.value)
