"""Client for the AlgoSync API with automatic session management."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from types import TracebackType
from typing import Any, Self

import redis.asyncio
import structlog
from httpx import AsyncClient
from pydantic import BaseModel, ValidationError
from redis.backoff import ExponentialBackoff
from redis.retry import Retry
from structlog.stdlib import BoundLogger

from .config import SessionConfig
from .constants import (
    EXPIRING_THRESHOLD,
    REDIS_BACKOFF_MAX,
    REDIS_BACKOFF_START,
    REDIS_RETRIES,
)
from .dedup import DedupCache
from .events import EventBus, TokenUpdatedEvent
from .exceptions import InvalidResponseError, RefreshError, SessionError
from .models import (
    AccessToken,
    LoginData,
    RefreshData,
    RegisterData,
    SessionState,
    TokenPair,
    User,
)
from .pipeline import RequestPipeline
from .refresh import RefreshCoordinator
from .retry import RetryPolicy
from .storage import MemoryStore, RedisStore, SharedStore
from .sync import CrossContextSync
from .token_store import TokenStore

__all__ = ["AlgoSyncClient"]


class AlgoSyncClient:
    """Client for the AlgoSync API.

    Holds the session of one execution context: it logs in, keeps the access
    token fresh, and sends every API call through the request pipeline. All
    components are created per client, so several independent sessions may
    coexist in one process. Sessions that should be shared, such as several
    workers acting for the same user, share a `SharedStore`.

    Parameters
    ----------
    config
        Client configuration.
    http_client
        Existing ``httpx.AsyncClient`` to use instead of creating a new one.
        This allows the caller to reuse an existing client and connection
        pool.
    storage
        Shared storage for the refresh token. If not given, a private
        `MemoryStore` is used and nothing is shared.
    logger
        Logger to use. If not given, the default structlog logger will be
        used.
    """

    def __init__(
        self,
        config: SessionConfig,
        http_client: AsyncClient | None = None,
        *,
        storage: SharedStore | None = None,
        logger: BoundLogger | None = None,
    ) -> None:
        self._config = config
        self._logger = logger or structlog.get_logger("algosync_session")
        self._client = http_client or AsyncClient()
        self._storage = storage or MemoryStore(logger=self._logger)

        # Whether the HTTP client and storage need to be explicitly closed
        # because we created them.
        self._close_client = http_client is None
        self._close_storage = storage is None
        self._redis: redis.asyncio.Redis | None = None

        self._events = EventBus(self._logger)
        self._store = TokenStore(
            self._storage, self._events, logger=self._logger
        )
        self._coordinator = RefreshCoordinator(
            self._store,
            self._events,
            self._refresh_tokens,
            ratio=config.refresh_ratio,
            margin=config.refresh_margin,
            logger=self._logger,
        )
        retry = RetryPolicy(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_jitter=config.retry_max_jitter,
            logger=self._logger,
        )
        signing_key = None
        if config.signing_key:
            signing_key = config.signing_key.get_secret_value()
        self._pipeline = RequestPipeline(
            self._client,
            base_url=config.api_url,
            store=self._store,
            coordinator=self._coordinator,
            events=self._events,
            retry=retry,
            dedup=DedupCache(self._logger),
            signing_key=signing_key,
            timeout=config.timeout,
            max_download_size=config.max_download_size,
            logger=self._logger,
        )
        self._sync = CrossContextSync(
            self._storage,
            self._store,
            self._coordinator,
            logger=self._logger,
        )

    @classmethod
    def from_config(
        cls,
        config: SessionConfig,
        http_client: AsyncClient | None = None,
        *,
        logger: BoundLogger | None = None,
    ) -> Self:
        """Create a client with the storage selected by the configuration.

        If ``storage_url`` is set, the refresh token is shared through Redis
        with every other client using the same server and prefix. The Redis
        connection pool is closed by `aclose`.

        Parameters
        ----------
        config
            Client configuration.
        http_client
            Existing ``httpx.AsyncClient`` to use instead of creating a new
            one.
        logger
            Logger to use. If not given, the default structlog logger will be
            used.

        Returns
        -------
        AlgoSyncClient
            Newly-created client. `start` must still be called.
        """
        if not config.storage_url:
            return cls(config, http_client, logger=logger)
        password = None
        if config.storage_password:
            password = config.storage_password.get_secret_value()
        redis_client = redis.asyncio.from_url(
            str(config.storage_url),
            password=password,
            retry=Retry(
                ExponentialBackoff(
                    base=REDIS_BACKOFF_START, cap=REDIS_BACKOFF_MAX
                ),
                REDIS_RETRIES,
            ),
        )
        storage = RedisStore(
            redis_client, prefix=config.storage_prefix, logger=logger
        )
        client = cls(config, http_client, storage=storage, logger=logger)
        client._close_storage = True
        client._redis = redis_client
        return client

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    @property
    def events(self) -> EventBus:
        """Bus on which session events are published."""
        return self._events

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._coordinator.state

    @property
    def refresh_deadline(self) -> datetime | None:
        """When the next proactive refresh happens, if one is scheduled."""
        return self._coordinator.refresh_deadline

    async def start(self) -> None:
        """Start the client.

        Begins watching shared storage for changes by other contexts and
        loads the persisted refresh token. If there is one, the session is
        restored by refreshing the access token. Failure to restore it is
        logged and leaves the client logged out.
        """
        await self._storage.start()
        await self._store.load()
        self._sync.start()
        if self._store.get_refresh():
            self._logger.info("Restoring session from persisted token")
            try:
                await self._coordinator.force_refresh()
            except RefreshError as e:
                self._logger.warning("Could not restore session", error=str(e))

    async def aclose(self) -> None:
        """Shut down the client.

        Stops timers and watchers and closes the HTTP connection pool and the
        storage, if they were created by this client. The stored tokens are
        kept so that a later client can restore the session. The object must
        not be used after calling this method.
        """
        self._sync.stop()
        self._coordinator.close()
        if self._close_storage:
            await self._storage.aclose()
        if self._redis:
            await self._redis.aclose()
        if self._close_client:
            await self._client.aclose()

    async def login(self, email: str, password: str) -> LoginData:
        """Log in with an email address and password.

        Parameters
        ----------
        email
            Email address of the user.
        password
            Password of the user.

        Returns
        -------
        LoginData
            Login response, including the user if the API returned it.

        Raises
        ------
        ClientError
            Raised if the credentials were rejected.
        InvalidResponseError
            Raised if the response from the API is invalid.
        WebError
            Raised if the API could not be reached.
        """
        payload = await self._pipeline.request(
            "POST",
            "/auth/login",
            json={"email": email, "password": password},
            authenticate=False,
            refresh=False,
            retry=False,
            dedup=False,
        )
        data = _parse(LoginData, payload)
        pair = data.to_token_pair()
        await self._coordinator.install(pair)
        self._logger.info(
            "Logged in", **pair.access_token.to_logging_context()
        )
        return data

    async def register(
        self, username: str, email: str, password: str
    ) -> RegisterData:
        """Register a new account and log in as it.

        Parameters
        ----------
        username
            Username for the new account.
        email
            Email address for the new account.
        password
            Password for the new account.

        Returns
        -------
        RegisterData
            Registration response, including the user if the API returned
            it.

        Raises
        ------
        ClientError
            Raised if the registration was rejected.
        InvalidResponseError
            Raised if the response from the API is invalid.
        WebError
            Raised if the API could not be reached.
        """
        payload = await self._pipeline.request(
            "POST",
            "/auth/register",
            json={"username": username, "email": email, "password": password},
            authenticate=False,
            refresh=False,
            retry=False,
            dedup=False,
        )
        data = _parse(RegisterData, payload)
        await self._coordinator.install(data.to_token_pair())
        self._logger.info("Registered new account", username=username)
        return data

    async def refresh(self) -> str:
        """Refresh the access token now.

        Returns
        -------
        str
            New access token.

        Raises
        ------
        RefreshError
            Raised if the refresh failed. The session has been ended.
        """
        token = await self._coordinator.force_refresh()
        return token.token

    async def logout(self) -> None:
        """Log out.

        The API is told about the logout on a best-effort basis. The local
        session is ended even if that call fails.
        """
        if self._store.get_access():
            try:
                await self._pipeline.request(
                    "POST",
                    "/auth/logout",
                    refresh=False,
                    retry=False,
                    dedup=False,
                )
            except SessionError as e:
                self._logger.warning("Server logout failed", error=str(e))
        await self._coordinator.logout()

    async def get_current_user(self) -> User:
        """Get the user the session belongs to.

        Raises
        ------
        InvalidResponseError
            Raised if the response from the API is invalid.
        SessionError
            Raised on any failure of the request.
        """
        data = _unwrap(await self.get("/auth/me"))
        if isinstance(data, dict) and isinstance(data.get("user"), dict):
            data = data["user"]
        return _parse(User, data)

    async def validate_token(self) -> bool:
        """Check with the API whether the session is valid."""
        try:
            await self.get("/auth/validate")
        except SessionError:
            return False
        return True

    def is_authenticated(self) -> bool:
        """Whether an unexpired access token is held."""
        token = self._store.get_access()
        return token is not None and not token.is_expired()

    def current_user(self) -> AccessToken | None:
        """Return the access token and its claims, if logged in."""
        return self._store.get_access()

    def is_token_expiring(self) -> bool:
        """Whether the access token is missing or about to expire."""
        token = self._store.get_access()
        return not token or token.is_expired(EXPIRING_THRESHOLD)

    def on_token_update(
        self, callback: Callable[[bool], None]
    ) -> Callable[[], None]:
        """Register a callback for tokens being installed or cleared.

        Parameters
        ----------
        callback
            Called with whether tokens are now present.

        Returns
        -------
        Callable
            Call with no arguments to remove the callback again.
        """
        return self._events.subscribe(
            TokenUpdatedEvent, lambda e: callback(e.has_token)
        )

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Make an API request through the request pipeline.

        Parameters
        ----------
        method
            HTTP method.
        path
            Path relative to the base URL, starting with ``/``.
        **kwargs
            Passed to `RequestPipeline.request`.

        Returns
        -------
        typing.Any
            Decoded response body.
        """
        return await self._pipeline.request(method, path, **kwargs)

    async def get(self, path: str, **kwargs: Any) -> Any:
        """Make a GET request. See `request`."""
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        """Make a POST request. See `request`."""
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        """Make a PUT request. See `request`."""
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        """Make a DELETE request. See `request`."""
        return await self.request("DELETE", path, **kwargs)

    async def download(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        accept: str = "application/octet-stream",
    ) -> bytes:
        """Download a file. See `RequestPipeline.download`."""
        return await self._pipeline.download(
            path, params=params, accept=accept
        )

    async def _refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new token pair.

        This is the only network call made by the refresh coordinator. It is
        sent without an access token and is never retried or refreshed.
        """
        payload = await self._pipeline.request(
            "POST",
            "/auth/refresh",
            json={"refresh_token": refresh_token},
            authenticate=False,
            refresh=False,
            retry=False,
            dedup=False,
        )
        try:
            data = RefreshData.model_validate(_unwrap(payload))
        except ValidationError as e:
            raise RefreshError(f"Invalid refresh response: {e}") from e
        return data.to_token_pair()


def _unwrap(payload: Any) -> Any:
    """Return the ``data`` of a response envelope, or the payload itself."""
    if isinstance(payload, dict) and "code" in payload and "data" in payload:
        return payload["data"]
    return payload


def _parse[T: BaseModel](model: type[T], payload: Any) -> T:
    """Validate an API response against a model."""
    try:
        return model.model_validate(_unwrap(payload))
    except ValidationError as e:
        msg = f"Invalid {model.__name__} response: {e}"
        raise InvalidResponseError(msg) from e
