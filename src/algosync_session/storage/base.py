"""Base class for the durable key/value tier shared between contexts.

Every execution context (a browser tab, a worker process) holds its own
access token in memory, but the refresh token lives in a store shared by all
contexts of the same user agent. Writes by one context are announced to the
others as change notifications, which is how logout propagates without any
polling. Should a new kind of shared storage be needed, the goal is to keep
the required changes confined to a new subclass of `SharedStore`.
"""

from __future__ import annotations

from abc import ABCMeta, abstractmethod
from collections.abc import Awaitable, Callable

import structlog
from pydantic import BaseModel, ConfigDict
from structlog.stdlib import BoundLogger

__all__ = [
    "ChangeListener",
    "SharedStore",
    "StorageChange",
]


class StorageChange(BaseModel):
    """A change to one key made by another context."""

    model_config = ConfigDict(frozen=True)

    key: str
    """Key that changed."""

    value: str | None
    """New value, or `None` if the key was removed."""


type ChangeListener = Callable[[StorageChange], Awaitable[None]]
"""Type of a callback for change notifications."""


class SharedStore(metaclass=ABCMeta):
    """Durable key/value storage shared across execution contexts.

    Implementations must only notify listeners of changes made through
    *other* instances, never of the instance's own writes, and must only
    notify about keys whose value actually changed.

    Parameters
    ----------
    logger
        Logger to use. If not given, the default structlog logger will be
        used.
    """

    def __init__(self, logger: BoundLogger | None = None) -> None:
        self._logger = logger or structlog.get_logger("algosync_session")
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a callback for changes made by other contexts.

        Parameters
        ----------
        listener
            Async callback invoked with each change.

        Returns
        -------
        Callable
            Call with no arguments to remove the listener again.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(self) -> None:
        """Begin receiving change notifications.

        The default implementation does nothing.
        """

    async def aclose(self) -> None:
        """Stop receiving change notifications and release resources.

        The default implementation does nothing. The store must not be used
        after calling this method.
        """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Retrieve a value.

        Parameters
        ----------
        key
            Key to retrieve.

        Returns
        -------
        str or None
            Stored value, or `None` if the key is not set.
        """

    @abstractmethod
    async def set_many(self, items: dict[str, str]) -> None:
        """Store several values atomically.

        Other contexts never observe a state in which only some of the items
        have been written.

        Parameters
        ----------
        items
            Mapping of keys to values to store.
        """

    @abstractmethod
    async def delete_many(self, keys: list[str]) -> None:
        """Delete several keys together.

        Deleting keys that are not set is not an error and does not produce
        change notifications.

        Parameters
        ----------
        keys
            Keys to delete.
        """

    async def _notify(self, change: StorageChange) -> None:
        """Deliver a change made by another context to every listener."""
        for listener in list(self._listeners):
            try:
                await listener(change)
            except Exception:
                self._logger.exception(
                    "Storage change listener failed", key=change.key
                )
