"""Tests for the session event bus."""

from __future__ import annotations

from algosync_session import (
    EventBus,
    ForbiddenEvent,
    LogoutEvent,
    TokenUpdatedEvent,
)


def test_subscribe() -> None:
    events = EventBus()
    seen: list[str] = []
    unsubscribe = events.subscribe(LogoutEvent, lambda e: seen.append(e.name))
    events.subscribe(ForbiddenEvent, lambda e: seen.append(e.message))

    events.publish(LogoutEvent())
    events.publish(ForbiddenEvent(message="No access"))
    events.publish(TokenUpdatedEvent(has_token=True))
    assert seen == ["auth:logout", "No access"]

    unsubscribe()
    unsubscribe()
    events.publish(LogoutEvent())
    assert seen == ["auth:logout", "No access"]


def test_event_names() -> None:
    assert TokenUpdatedEvent.name == "token-updated"
    assert LogoutEvent.name == "auth:logout"
    assert ForbiddenEvent.name == "auth:forbidden"


def test_failing_listener() -> None:
    events = EventBus()
    seen: list[bool] = []

    def fail(event: TokenUpdatedEvent) -> None:
        raise ValueError("Listener failure")

    events.subscribe(TokenUpdatedEvent, fail)
    events.subscribe(TokenUpdatedEvent, lambda e: seen.append(e.has_token))

    # The failure is logged and does not prevent delivery to others.
    events.publish(TokenUpdatedEvent(has_token=False))
    assert seen == [False]
