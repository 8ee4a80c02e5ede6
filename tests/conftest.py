"""Test fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import timedelta

import pytest
import pytest_asyncio
import respx
from httpx import AsyncClient

from algosync_session import (
    AlgoSyncClient,
    EventBus,
    MemoryStore,
    MockAlgoSyncAPI,
    SessionConfig,
    TokenStore,
    register_mock_algosync,
)

from tests.support.constants import TEST_BASE_URL, TEST_EMAIL, TEST_PASSWORD
from tests.support.events import EventRecorder


@pytest.fixture
def config() -> SessionConfig:
    """Return a configuration with retries that do not wait."""
    return SessionConfig(
        base_url=TEST_BASE_URL,
        retry_base_delay=timedelta(0),
        retry_max_jitter=timedelta(0),
    )


@pytest.fixture
def mock_api(respx_mock: respx.Router) -> MockAlgoSyncAPI:
    mock = register_mock_algosync(respx_mock, TEST_BASE_URL)
    mock.add_user(TEST_EMAIL, TEST_PASSWORD)
    return mock


@pytest_asyncio.fixture
async def client(
    config: SessionConfig, mock_api: MockAlgoSyncAPI
) -> AsyncIterator[AlgoSyncClient]:
    """Return a started client talking to the mock API."""
    async with AsyncClient() as http_client:
        async with AlgoSyncClient(config, http_client) as client:
            yield client


@pytest.fixture
def recorder(client: AlgoSyncClient) -> EventRecorder:
    return EventRecorder(client.events)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def token_store(events: EventBus) -> TokenStore:
    return TokenStore(MemoryStore(), events)
