"""Coalescing of identical concurrent requests."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog
from structlog.stdlib import BoundLogger

from .util import canonical_json

__all__ = ["DedupCache"]


class DedupCache:
    """Share one in-flight call among identical concurrent requests.

    Requests are identical if they have the same pending key (see
    `pending_key`). The first request starts the call as a task; requests
    with the same key that arrive while it is in flight wait for the same
    task and receive the same result or exception. The entry is removed when
    the task settles, so a later identical request makes a new call.

    Parameters
    ----------
    logger
        Logger to use. If not given, the default structlog logger will be
        used.

    Notes
    -----
    Each caller waits through `asyncio.shield`, so cancelling one caller does
    not cancel the call shared with the others.
    """

    def __init__(self, logger: BoundLogger | None = None) -> None:
        self._logger = logger or structlog.get_logger("algosync_session")
        self._pending: dict[str, asyncio.Task[Any]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    @staticmethod
    def pending_key(
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> str:
        """Build the key identifying duplicate requests.

        Parameters
        ----------
        method
            HTTP method.
        path
            Request path.
        params
            Query parameters.
        body
            JSON body.

        Returns
        -------
        str
            Key that is equal for two requests exactly when they have the
            same method, path, parameters, and body.
        """
        params_key = canonical_json(params) if params else ""
        body_key = canonical_json(body) if body is not None else ""
        return f"{method.upper()}|{path}|{params_key}|{body_key}"

    async def run[T](
        self, key: str, operation: Coroutine[Any, Any, T]
    ) -> T:
        """Run an operation unless an identical one is already in flight.

        Parameters
        ----------
        key
            Pending key of the request.
        operation
            Coroutine that performs the request. It is closed without being
            run if an identical request is already in flight.

        Returns
        -------
        typing.Any
            Result of the shared call.
        """
        task = self._pending.get(key)
        if task is not None:
            operation.close()
            self._logger.debug("Joining in-flight duplicate request")
        else:
            task = asyncio.create_task(operation)
            self._pending[key] = task
            task.add_done_callback(lambda t: self._remove(key, t))
        return await asyncio.shield(task)

    def _remove(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
