"""Tests for the single-flight refresh coordinator."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from safir.datetime import current_datetime

from algosync_session import (
    ClientError,
    EventBus,
    LogoutEvent,
    MemoryStore,
    RefreshCoordinator,
    RefreshError,
    SessionExpiredEvent,
    SessionState,
    TokenPair,
    TokenStore,
    TokenUpdatedEvent,
    compute_refresh_delay,
)

from tests.support.events import EventRecorder
from tests.support.tokens import make_pair


class MockRefresher:
    """Stand-in for the refresh network call.

    Each call blocks until `release` is called, so that tests control when
    the refresh episode settles.
    """

    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.pairs: list[TokenPair] = []
        self.error = error
        self._release = asyncio.Event()

    async def __call__(self, refresh_token: str) -> TokenPair:
        self.calls.append(refresh_token)
        await self._release.wait()
        if self.error:
            raise self.error
        pair = make_pair()
        self.pairs.append(pair)
        return pair

    def release(self) -> None:
        self._release.set()


class FailingStore(MemoryStore):
    """Shared storage whose writes fail once `fail` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    async def set_many(self, items: dict[str, str]) -> None:
        if self.fail:
            raise ConnectionError("Storage unavailable")
        await super().set_many(items)

    async def delete_many(self, keys: list[str]) -> None:
        if self.fail:
            raise ConnectionError("Storage unavailable")
        await super().delete_many(keys)


def test_compute_refresh_delay() -> None:
    # For a 60 minute lifetime, 80% (48 minutes) comes before 10 minutes
    # before expiration (50 minutes).
    delay = compute_refresh_delay(timedelta(minutes=60))
    assert delay == timedelta(minutes=48)

    # For a 30 minute lifetime, the margin wins.
    delay = compute_refresh_delay(timedelta(minutes=30))
    assert delay == timedelta(minutes=20)

    # Too short for a proactive refresh.
    assert compute_refresh_delay(timedelta(minutes=10)) is None
    assert compute_refresh_delay(timedelta(minutes=5)) is None
    assert compute_refresh_delay(timedelta(0)) is None

    delay = compute_refresh_delay(
        timedelta(seconds=10), ratio=0.5, margin=timedelta(0)
    )
    assert delay == timedelta(seconds=5)


@pytest.mark.asyncio
async def test_install(token_store: TokenStore, events: EventBus) -> None:
    coordinator = RefreshCoordinator(token_store, events, MockRefresher())
    assert coordinator.state == SessionState.anonymous
    assert coordinator.refresh_deadline is None

    pair = make_pair(timedelta(minutes=60))
    now = current_datetime(microseconds=True)
    await coordinator.install(pair)
    assert coordinator.state == SessionState.authenticated
    assert token_store.get_access() == pair.access_token

    # The proactive refresh happens 48 minutes in, not 50.
    deadline = coordinator.refresh_deadline
    assert deadline
    expected = now + timedelta(minutes=48)
    assert expected - timedelta(seconds=5) < deadline
    assert deadline < expected + timedelta(seconds=1)

    # A short-lived token cancels the timer without arming a new one.
    await coordinator.install(make_pair(timedelta(minutes=5)))
    assert coordinator.refresh_deadline is None
    coordinator.close()


@pytest.mark.asyncio
async def test_single_flight(
    token_store: TokenStore, events: EventBus
) -> None:
    refresher = MockRefresher()
    coordinator = RefreshCoordinator(token_store, events, refresher)
    old = make_pair()
    await coordinator.install(old)

    order: list[int] = []

    async def waiter(n: int) -> str:
        token = await coordinator.force_refresh(stale=old.access_token)
        order.append(n)
        return token.token

    tasks = [asyncio.create_task(waiter(n)) for n in range(10)]
    await asyncio.sleep(0)
    assert coordinator.state == SessionState.refreshing
    assert coordinator.is_refreshing
    refresher.release()
    results = await asyncio.gather(*tasks)

    assert refresher.calls == [old.refresh_token]
    new = refresher.pairs[0]
    assert results == [new.access_token.token] * 10
    assert order == list(range(10))
    assert coordinator.state == SessionState.authenticated
    assert not coordinator.is_refreshing
    assert token_store.get_access() == new.access_token
    assert token_store.get_refresh() == new.refresh_token
    assert coordinator.refresh_deadline

    # A caller holding the old token gets the new one without a refresh.
    token = await coordinator.force_refresh(stale=old.access_token)
    assert token == new.access_token
    assert len(refresher.calls) == 1
    coordinator.close()


@pytest.mark.asyncio
async def test_refresh_failure(
    token_store: TokenStore, events: EventBus
) -> None:
    recorder = EventRecorder(events)
    error = ClientError("Invalid refresh token", 5001)
    refresher = MockRefresher(error=error)
    coordinator = RefreshCoordinator(token_store, events, refresher)
    await coordinator.install(make_pair())
    recorder.clear()

    tasks = [
        asyncio.create_task(coordinator.force_refresh()) for _ in range(5)
    ]
    await asyncio.sleep(0)
    refresher.release()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert len(refresher.calls) == 1
    for result in results:
        assert isinstance(result, RefreshError)
        assert result.code == 5001
        assert isinstance(result.__cause__, ClientError)
    assert coordinator.state == SessionState.anonymous
    assert token_store.get_access() is None
    assert token_store.get_refresh() is None
    assert coordinator.refresh_deadline is None
    assert recorder.events == [
        TokenUpdatedEvent(has_token=False),
        SessionExpiredEvent(message=results[0].message),
        LogoutEvent(),
    ]

    # Late arrivals fail without another refresh or logout.
    with pytest.raises(RefreshError):
        await coordinator.force_refresh()
    assert len(refresher.calls) == 1
    assert recorder.count(LogoutEvent) == 1


@pytest.mark.asyncio
async def test_logout_during_refresh(
    token_store: TokenStore, events: EventBus
) -> None:
    recorder = EventRecorder(events)
    refresher = MockRefresher()
    coordinator = RefreshCoordinator(token_store, events, refresher)
    await coordinator.install(make_pair())

    task = asyncio.create_task(coordinator.force_refresh())
    await asyncio.sleep(0)
    await coordinator.logout()
    with pytest.raises(RefreshError):
        await task
    assert coordinator.state == SessionState.anonymous
    assert recorder.count(LogoutEvent) == 1

    # The refresh completing afterwards does not log the user back in.
    refresher.release()
    await asyncio.sleep(0.01)
    assert coordinator.state == SessionState.anonymous
    assert token_store.get_access() is None
    assert token_store.get_refresh() is None
    assert recorder.count(LogoutEvent) == 1
    assert recorder.count(SessionExpiredEvent) == 0


@pytest.mark.asyncio
async def test_expire(token_store: TokenStore, events: EventBus) -> None:
    recorder = EventRecorder(events)
    coordinator = RefreshCoordinator(token_store, events, MockRefresher())

    # Nothing happens without a session.
    await coordinator.expire("Token rejected")
    assert recorder.events == []

    await coordinator.install(make_pair())
    recorder.clear()
    await coordinator.expire("Token rejected")
    assert coordinator.state == SessionState.anonymous
    assert token_store.get_refresh() is None
    assert recorder.events == [
        TokenUpdatedEvent(has_token=False),
        SessionExpiredEvent(message="Token rejected"),
        LogoutEvent(),
    ]


@pytest.mark.asyncio
async def test_not_logged_in(
    token_store: TokenStore, events: EventBus
) -> None:
    recorder = EventRecorder(events)
    refresher = MockRefresher()
    coordinator = RefreshCoordinator(token_store, events, refresher)

    with pytest.raises(RefreshError):
        await coordinator.force_refresh()
    assert refresher.calls == []
    assert recorder.events == []


@pytest.mark.asyncio
async def test_proactive_refresh(
    token_store: TokenStore, events: EventBus
) -> None:
    refresher = MockRefresher()
    refresher.release()
    coordinator = RefreshCoordinator(
        token_store, events, refresher, ratio=0.01, margin=timedelta(0)
    )
    old = make_pair(timedelta(seconds=10))
    await coordinator.install(old)
    assert coordinator.refresh_deadline

    # The timer fires after about 0.1 seconds.
    for _ in range(100):
        if refresher.pairs:
            break
        await asyncio.sleep(0.05)
    assert refresher.calls == [old.refresh_token]
    await asyncio.sleep(0)
    assert token_store.get_access() == refresher.pairs[0].access_token
    assert coordinator.state == SessionState.authenticated
    coordinator.close()


@pytest.mark.asyncio
async def test_storage_failure(events: EventBus) -> None:
    recorder = EventRecorder(events)
    storage = FailingStore()
    token_store = TokenStore(storage, events)
    error = ClientError("Invalid refresh token", 5001)
    refresher = MockRefresher(error=error)
    coordinator = RefreshCoordinator(token_store, events, refresher)
    await coordinator.install(make_pair())
    recorder.clear()

    # The session still ends, and every waiter hears about it, when the
    # tokens cannot be removed from storage.
    storage.fail = True
    tasks = [
        asyncio.create_task(coordinator.force_refresh()) for _ in range(3)
    ]
    await asyncio.sleep(0)
    refresher.release()
    results = await asyncio.wait_for(
        asyncio.gather(*tasks, return_exceptions=True), timeout=1
    )
    assert all(isinstance(r, RefreshError) for r in results)
    assert coordinator.state == SessionState.anonymous
    assert not coordinator.is_refreshing
    assert token_store.get_access() is None
    assert token_store.get_refresh() is None
    assert recorder.events == [
        TokenUpdatedEvent(has_token=False),
        SessionExpiredEvent(message=results[0].message),
        LogoutEvent(),
    ]

    # Later callers fail immediately instead of waiting forever.
    with pytest.raises(RefreshError):
        await asyncio.wait_for(coordinator.force_refresh(), timeout=1)


@pytest.mark.asyncio
async def test_storage_failure_on_success(events: EventBus) -> None:
    storage = FailingStore()
    token_store = TokenStore(storage, events)
    refresher = MockRefresher()
    coordinator = RefreshCoordinator(token_store, events, refresher)
    await coordinator.install(make_pair())

    # The new pair cannot be saved, so the refresh fails.
    storage.fail = True
    refresher.release()
    with pytest.raises(RefreshError) as exc_info:
        await asyncio.wait_for(coordinator.force_refresh(), timeout=1)
    assert "Storage unavailable" in exc_info.value.message
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert coordinator.state == SessionState.anonymous
    assert token_store.get_access() is None

    # Logging out with failing storage still ends the session locally.
    storage.fail = False
    await coordinator.install(make_pair())
    storage.fail = True
    await coordinator.logout()
    assert coordinator.state == SessionState.anonymous
    assert token_store.get_refresh() is None
