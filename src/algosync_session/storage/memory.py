"""Shared storage for several contexts within one process."""

from __future__ import annotations

from typing import override

from structlog.stdlib import BoundLogger

from .base import SharedStore, StorageChange

__all__ = ["MemoryBackend", "MemoryStore"]


class MemoryBackend:
    """The data shared by a group of `MemoryStore` views.

    This plays the role of the storage area of a single user agent. Each
    context that should share the session creates its own `MemoryStore`
    attached to the same backend.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self._views: list[MemoryStore] = []

    def attach(self, view: MemoryStore) -> None:
        """Attach a view so that it receives change notifications."""
        if view not in self._views:
            self._views.append(view)

    def detach(self, view: MemoryStore) -> None:
        """Stop sending change notifications to a view."""
        if view in self._views:
            self._views.remove(view)

    async def broadcast(
        self, origin: MemoryStore, changes: list[StorageChange]
    ) -> None:
        """Deliver changes to every view other than the writer."""
        for view in list(self._views):
            if view is origin:
                continue
            for change in changes:
                await view._notify(change)


class MemoryStore(SharedStore):
    """One context's view of a `MemoryBackend`.

    Change notifications are delivered to the other views before the write
    that caused them returns.

    Parameters
    ----------
    backend
        Shared backend. If not given, a private backend is created, which
        behaves like a user agent with a single context.
    logger
        Logger to use. If not given, the default structlog logger will be
        used.
    """

    def __init__(
        self,
        backend: MemoryBackend | None = None,
        *,
        logger: BoundLogger | None = None,
    ) -> None:
        super().__init__(logger)
        self._backend = backend or MemoryBackend()
        self._backend.attach(self)

    @override
    async def aclose(self) -> None:
        self._backend.detach(self)

    @override
    async def get(self, key: str) -> str | None:
        return self._backend.data.get(key)

    @override
    async def set_many(self, items: dict[str, str]) -> None:
        changes = [
            StorageChange(key=k, value=v)
            for k, v in items.items()
            if self._backend.data.get(k) != v
        ]
        self._backend.data.update(items)
        await self._backend.broadcast(self, changes)

    @override
    async def delete_many(self, keys: list[str]) -> None:
        changes = []
        for key in keys:
            if self._backend.data.pop(key, None) is not None:
                changes.append(StorageChange(key=key, value=None))
        await self._backend.broadcast(self, changes)
