"""Single-flight refresh of the access token."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog
from safir.datetime import current_datetime
from structlog.stdlib import BoundLogger

from .constants import REFRESH_MARGIN, REFRESH_RATIO
from .events import EventBus, LogoutEvent, SessionExpiredEvent
from .exceptions import RefreshError, SessionError
from .models import AccessToken, SessionState, TokenPair
from .token_store import TokenStore

__all__ = [
    "RefreshCoordinator",
    "Refresher",
    "compute_refresh_delay",
]

type Refresher = Callable[[str], Awaitable[TokenPair]]
"""Type of the callable that exchanges a refresh token for a new pair."""


def compute_refresh_delay(
    remaining: timedelta,
    *,
    ratio: float = REFRESH_RATIO,
    margin: timedelta = REFRESH_MARGIN,
) -> timedelta | None:
    """Compute when to proactively refresh an access token.

    Parameters
    ----------
    remaining
        Remaining lifetime of the access token.
    ratio
        Fraction of the remaining lifetime after which to refresh.
    margin
        Minimum time before expiration at which to refresh.

    Returns
    -------
    datetime.timedelta or None
        Delay from now until the refresh, which is the smaller of ``ratio ×
        remaining`` and ``remaining − margin``, or `None` if that is not in
        the future.
    """
    delay = min(remaining * ratio, remaining - margin)
    return delay if delay > timedelta(0) else None


class RefreshCoordinator:
    """Own the session state machine and the token refresh protocol.

    At most one refresh episode is in flight at a time. Callers that need a
    new access token while an episode is running become waiters on that
    episode and receive its outcome, in the order in which they arrived.
    The coordinator also keeps a timer armed to refresh proactively before
    the access token expires.

    Parameters
    ----------
    store
        Token storage for this context.
    events
        Bus on which to publish logout and session expiration events.
    refresher
        Performs the refresh network call. It is never retried.
    ratio
        Fraction of the remaining lifetime after which to refresh.
    margin
        Minimum time before expiration at which to refresh.
    logger
        Logger to use. If not given, the default structlog logger will be
        used.

    Notes
    -----
    This relies on the cooperative scheduling of asyncio for mutual
    exclusion: the check for a running episode and the registration of a
    new one happen with no suspension point in between. It is not
    thread-safe. Sibling contexts are not excluded, so two contexts may
    occasionally both refresh.
    """

    def __init__(
        self,
        store: TokenStore,
        events: EventBus,
        refresher: Refresher,
        *,
        ratio: float = REFRESH_RATIO,
        margin: timedelta = REFRESH_MARGIN,
        logger: BoundLogger | None = None,
    ) -> None:
        self._store = store
        self._events = events
        self._refresher = refresher
        self._ratio = ratio
        self._margin = margin
        self._logger = logger or structlog.get_logger("algosync_session")

        self._state = SessionState.anonymous
        self._waiters: deque[asyncio.Future[AccessToken]] = deque()
        self._episode: asyncio.Task[None] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._refresh_deadline: datetime | None = None
        self._background: set[asyncio.Task[None]] = set()

        # Incremented whenever the session ends, so that an episode that
        # settles after a logout discards its result.
        self._generation = 0

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._state

    @property
    def refresh_deadline(self) -> datetime | None:
        """When the proactive refresh timer fires, if one is armed."""
        return self._refresh_deadline

    @property
    def is_refreshing(self) -> bool:
        """Whether a refresh episode is in flight."""
        return self._episode is not None

    def close(self) -> None:
        """Cancel the proactive timer and any background refresh.

        Used during shutdown. Does not clear the stored tokens.
        """
        self._cancel_timer()
        for task in list(self._background):
            task.cancel()

    async def install(self, pair: TokenPair) -> None:
        """Install a token pair after login or registration.

        Parameters
        ----------
        pair
            New token pair.
        """
        await self._store.set_pair(pair)
        self._state = SessionState.authenticated
        self.schedule_proactive(pair.access_token)

    def schedule_proactive(self, token: AccessToken) -> None:
        """Arm the proactive refresh timer for an access token.

        Any previously armed timer is cancelled. No timer is armed if the
        lifetime of the token is unknown or too short.

        Parameters
        ----------
        token
            Access token whose expiration determines the timer.
        """
        self._cancel_timer()
        remaining = token.remaining()
        if remaining is None:
            return
        delay = compute_refresh_delay(
            remaining, ratio=self._ratio, margin=self._margin
        )
        if delay is None:
            self._logger.debug(
                "Access token too short-lived for proactive refresh",
                remaining=remaining.total_seconds(),
            )
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay.total_seconds(), self._on_timer)
        self._refresh_deadline = current_datetime(microseconds=True) + delay
        self._logger.debug(
            "Scheduled proactive token refresh",
            delay=delay.total_seconds(),
            **token.to_logging_context(),
        )

    async def force_refresh(
        self, stale: AccessToken | None = None
    ) -> AccessToken:
        """Obtain a new access token, sharing any refresh in flight.

        Parameters
        ----------
        stale
            Access token that was rejected, if any. If a different token has
            been installed since, it is returned without a new refresh.

        Returns
        -------
        AccessToken
            Newly installed access token.

        Raises
        ------
        RefreshError
            Raised if the refresh failed, in which case the session has been
            torn down, or if there is no session to refresh.
        """
        current = self._store.get_access()
        if (
            stale
            and current
            and current.token != stale.token
            and self._state is SessionState.authenticated
        ):
            return current
        if (
            self._episode is None
            and self._state is SessionState.anonymous
            and not self._store.get_refresh()
        ):
            raise RefreshError("Not logged in")

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        if self._episode is None:
            self._state = SessionState.refreshing
            self._episode = asyncio.create_task(
                self._refresh(self._generation)
            )
        else:
            self._logger.debug(
                "Waiting for token refresh in progress",
                waiters=len(self._waiters),
            )
        return await waiter

    async def expire(self, message: str) -> None:
        """Tear down the session after a request was rejected twice.

        Does nothing if there is no session.

        Parameters
        ----------
        message
            Reason, passed on in the session expiration event.
        """
        if self._state is SessionState.anonymous:
            return
        self._logger.warning("Session expired", reason=message)
        self._state = SessionState.expired
        await self._end_session(RefreshError(message))

    async def logout(self) -> None:
        """End the session locally.

        Any refresh in flight is abandoned and its waiters are rejected.
        """
        self._logger.info("Ending session")
        await self._end_session(None)

    async def _refresh(self, generation: int) -> None:
        """Run one refresh episode and settle its waiters."""
        self._logger.info("Refreshing access token")
        try:
            refresh_token = self._store.get_refresh()
            if not refresh_token:
                raise RefreshError("No refresh token available")
            pair = await self._refresher(refresh_token)
            if generation != self._generation:
                return
            await self._store.set_pair(pair)
        except Exception as e:
            if generation != self._generation:
                return
            if isinstance(e, RefreshError):
                error = e
            else:
                code = e.code if isinstance(e, SessionError) else None
                error = RefreshError(f"Token refresh failed: {e}", code)
                error.__cause__ = e
            self._logger.warning("Token refresh failed", error=str(error))
            self._state = SessionState.expired
            await self._end_session(error)
            return

        # A logout while the new pair was being written wins.
        if generation != self._generation:
            await self._clear_store()
            return
        self._state = SessionState.authenticated
        self.schedule_proactive(pair.access_token)
        self._logger.info(
            "Refreshed access token", **pair.access_token.to_logging_context()
        )
        self._settle(result=pair.access_token)

    async def _end_session(self, reason: RefreshError | None) -> None:
        """Clear tokens, reject waiters, and announce the logout."""
        self._generation += 1
        self._cancel_timer()
        await self._clear_store()
        self._settle(error=reason or RefreshError("Logged out"))
        self._state = SessionState.anonymous
        if reason:
            self._events.publish(SessionExpiredEvent(message=reason.message))
        self._events.publish(LogoutEvent())

    async def _clear_store(self) -> None:
        """Clear tokens, logging rather than raising storage failures.

        The tokens are always dropped from memory, so the session ends even
        if shared storage cannot be reached.
        """
        try:
            await self._store.clear()
        except Exception:
            self._logger.exception("Unable to remove tokens from storage")

    def _settle(
        self,
        *,
        result: AccessToken | None = None,
        error: RefreshError | None = None,
    ) -> None:
        """Resolve or reject every waiter in arrival order."""
        waiters = self._waiters
        self._waiters = deque()
        self._episode = None
        for waiter in waiters:
            if waiter.done():
                continue
            if error:
                waiter.set_exception(error)
            elif result:
                waiter.set_result(result)

    def _cancel_timer(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None
        self._refresh_deadline = None

    def _on_timer(self) -> None:
        self._timer = None
        self._refresh_deadline = None
        task = asyncio.create_task(self._proactive_refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _proactive_refresh(self) -> None:
        try:
            await self.force_refresh()
        except RefreshError as e:
            self._logger.warning("Proactive refresh failed", error=str(e))
