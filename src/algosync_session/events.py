"""Signals emitted by the session layer to the surrounding application."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import ClassVar

import structlog
from pydantic import BaseModel, ConfigDict, Field
from structlog.stdlib import BoundLogger

__all__ = [
    "EventBus",
    "ForbiddenEvent",
    "LogoutEvent",
    "SessionEvent",
    "SessionExpiredEvent",
    "TokenUpdatedEvent",
]


class SessionEvent(BaseModel):
    """Base class for events published on the `EventBus`."""

    model_config = ConfigDict(frozen=True)

    name: ClassVar[str]
    """Name of the event as seen by the application."""


class TokenUpdatedEvent(SessionEvent):
    """Tokens were installed or cleared."""

    name = "token-updated"

    has_token: bool = Field(
        ..., title="Has token", description="Whether tokens are now present"
    )


class LogoutEvent(SessionEvent):
    """The session ended and the user must log in again."""

    name = "auth:logout"


class ForbiddenEvent(SessionEvent):
    """A request was refused with 403 Forbidden.

    The session itself is unaffected.
    """

    name = "auth:forbidden"

    message: str = Field(..., title="Message")


class SessionExpiredEvent(SessionEvent):
    """The session could not be refreshed and was torn down."""

    name = "auth:session-expired"

    message: str = Field(..., title="Message")


class EventBus:
    """Publish/subscribe channel between the session layer and its users.

    The application subscribes to the event types it cares about (typically
    to redirect to a login page or show an error). Listeners are called
    synchronously, in subscription order, when an event is published.

    Parameters
    ----------
    logger
        Logger to use. If not given, the default structlog logger will be
        used.
    """

    def __init__(self, logger: BoundLogger | None = None) -> None:
        self._logger = logger or structlog.get_logger("algosync_session")
        self._listeners: defaultdict[
            type[SessionEvent], list[Callable[[SessionEvent], None]]
        ]
        self._listeners = defaultdict(list)

    def publish(self, event: SessionEvent) -> None:
        """Deliver an event to every listener for its type.

        A listener that raises an exception is logged and skipped so that it
        cannot prevent delivery to the remaining listeners or break the
        session operation that published the event.

        Parameters
        ----------
        event
            Event to publish.
        """
        self._logger.debug("Publishing event", event_name=event.name)
        for listener in list(self._listeners[type(event)]):
            try:
                listener(event)
            except Exception:
                self._logger.exception(
                    "Event listener failed", event_name=event.name
                )

    def subscribe[E: SessionEvent](
        self, event_type: type[E], listener: Callable[[E], None]
    ) -> Callable[[], None]:
        """Register a listener for one type of event.

        Parameters
        ----------
        event_type
            Class of event to listen for.
        listener
            Called with each published event of that type.

        Returns
        -------
        Callable
            Call with no arguments to remove the listener again.
        """
        listeners = self._listeners[event_type]
        listeners.append(listener)  # type: ignore[arg-type]

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)  # type: ignore[arg-type]

        return unsubscribe
