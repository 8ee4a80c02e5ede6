"""Request pipeline wrapping every call to the AlgoSync API."""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

import sentry_sdk
import structlog
from httpx import AsyncClient, HTTPStatusError, RequestError, Response
from structlog.stdlib import BoundLogger

from .constants import (
    HTTP_TIMEOUT,
    MAX_DOWNLOAD_SIZE,
    SIGNATURE_HEADER,
    SIGNATURE_LENGTH,
    SUCCESS_CODES,
    TIMESTAMP_HEADER,
    TOKEN_INVALID_CODES,
)
from .dedup import DedupCache
from .events import EventBus, ForbiddenEvent
from .exceptions import (
    AuthenticationError,
    ClientError,
    ForbiddenError,
    InvalidDownloadError,
    InvalidResponseError,
    NetworkError,
    RefreshError,
    ServerError,
    SessionError,
)
from .logging import sanitize
from .models import AccessToken
from .refresh import RefreshCoordinator
from .retry import RetryPolicy
from .token_store import TokenStore
from .util import canonical_json, current_timestamp_ms

__all__ = [
    "Failure",
    "FailureKind",
    "RequestPipeline",
    "Success",
    "sign_request",
]


class FailureKind(Enum):
    """Kind of non-transient failure decoded from a response."""

    auth = "auth"
    """The access token was missing, invalid, or expired."""

    forbidden = "forbidden"
    """Authenticated but not allowed to perform the request."""

    client = "client"
    """Any other rejection of the request."""


@dataclass(frozen=True, slots=True)
class Success:
    """Response accepted by the API."""

    payload: Any
    """Decoded JSON body, text body, or raw bytes for downloads."""


@dataclass(frozen=True, slots=True)
class Failure:
    """Response rejected by the API."""

    kind: FailureKind
    """How the rejection is handled."""

    message: str
    """Human-readable error message."""

    code: int | None = None
    """Application status code from the envelope, else the HTTP status."""


type Outcome = Success | Failure
"""Result of decoding one response."""


@dataclass(frozen=True, slots=True)
class _Call:
    """Everything needed to issue, and re-issue, one logical request.

    Retries and the replay after a token refresh send exactly these values
    again, so they are fixed when the request is first made.
    """

    method: str
    path: str
    params: dict[str, Any] | None = None
    content: bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)
    accept: str | None = None


def sign_request(
    key: str, method: str, path: str, timestamp: int, body: bytes | None
) -> str:
    """Compute the request signature header value.

    This only deters trivial replay of captured requests. The key ships with
    every client, so the signature proves nothing about who sent the
    request.

    Parameters
    ----------
    key
        Client signing key.
    method
        HTTP method.
    path
        Request path as given to the pipeline.
    timestamp
        Request time in milliseconds since epoch.
    body
        Exact request body, if any.

    Returns
    -------
    str
        Truncated hex HMAC-SHA256 of ``METHOD|path|timestamp|sha256(body)``.
    """
    digest = hashlib.sha256(body or b"").hexdigest()
    message = f"{method.upper()}|{path}|{timestamp}|{digest}"
    mac = hmac.new(key.encode(), message.encode(), hashlib.sha256)
    return mac.hexdigest()[:SIGNATURE_LENGTH]


class RequestPipeline:
    """Issue API requests with authentication, retries, and deduplication.

    Each request is optionally coalesced with identical requests in flight,
    then sent with the current access token and a request signature.
    Transient failures are retried by the `RetryPolicy`. A response that
    reports an invalid token triggers one refresh through the
    `RefreshCoordinator` and one replay of the request with the new token.
    A second such response for the same request ends the session.

    Parameters
    ----------
    http_client
        HTTP client used for all requests.
    base_url
        Base URL of the API, including any version prefix.
    store
        Token storage used to read the current access token.
    coordinator
        Coordinator used to refresh the access token.
    events
        Bus on which to publish forbidden events.
    retry
        Retry policy for transient failures.
    dedup
        Cache of in-flight requests.
    signing_key
        Key used to sign requests. If `None`, requests are not signed.
    timeout
        Timeout for each HTTP call.
    max_download_size
        Largest declared size accepted for a download, in bytes.
    logger
        Logger to use. If not given, the default structlog logger will be
        used.
    """

    def __init__(
        self,
        http_client: AsyncClient,
        *,
        base_url: str,
        store: TokenStore,
        coordinator: RefreshCoordinator,
        events: EventBus,
        retry: RetryPolicy | None = None,
        dedup: DedupCache | None = None,
        signing_key: str | None = None,
        timeout: timedelta = HTTP_TIMEOUT,
        max_download_size: int = MAX_DOWNLOAD_SIZE,
        logger: BoundLogger | None = None,
    ) -> None:
        self._client = http_client
        self._base_url = base_url.rstrip("/")
        self._store = store
        self._coordinator = coordinator
        self._events = events
        self._logger = logger or structlog.get_logger("algosync_session")
        self._retry = retry or RetryPolicy(logger=self._logger)
        self._dedup = dedup or DedupCache(self._logger)
        self._signing_key = signing_key
        self._timeout = timeout.total_seconds()
        self._max_download_size = max_download_size

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        authenticate: bool = True,
        refresh: bool = True,
        retry: bool = True,
        dedup: bool = True,
    ) -> Any:
        """Make an API request.

        Parameters
        ----------
        method
            HTTP method.
        path
            Path relative to the base URL, starting with ``/``.
        params
            Query parameters.
        json
            JSON body.
        headers
            Additional request headers.
        authenticate
            Whether to send the current access token.
        refresh
            Whether to refresh the access token and replay the request once
            if the token is rejected.
        retry
            Whether to retry transient failures.
        dedup
            Whether to share the call with identical requests in flight.

        Returns
        -------
        typing.Any
            Decoded JSON body of the response, or its text if it is not
            JSON.

        Raises
        ------
        AuthenticationError
            Raised if the access token was rejected and could not be
            replaced.
        ClientError
            Raised if the API rejected the request.
        ForbiddenError
            Raised if the API returned 403.
        InvalidResponseError
            Raised if a response claiming to be JSON could not be parsed.
        NetworkError
            Raised if no response was received after all retries.
        RefreshError
            Raised if refreshing the access token failed.
        ServerError
            Raised if the API returned a 5xx status after all retries.
        """
        method = method.upper()
        content = None
        if json is not None:
            content = canonical_json(json).encode()
        call = _Call(
            method=method,
            path=path,
            params=params,
            content=content,
            headers=dict(headers or {}),
        )
        operation = self._perform(
            call, authenticate=authenticate, refresh=refresh, retry=retry
        )
        if not dedup:
            return await operation
        key = DedupCache.pending_key(method, path, params, json)
        return await self._dedup.run(key, operation)

    async def download(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        accept: str = "application/octet-stream",
    ) -> bytes:
        """Download a file.

        A JSON error envelope in place of the file is reported like the same
        error on any other request. Otherwise the content type must contain
        ``accept`` and the size must not exceed the configured maximum.

        Parameters
        ----------
        path
            Path relative to the base URL, starting with ``/``.
        params
            Query parameters.
        accept
            Expected content type of the file.

        Returns
        -------
        bytes
            Contents of the file.

        Raises
        ------
        InvalidDownloadError
            Raised if the content type or size of the file is unacceptable.
        """
        call = _Call(
            method="GET",
            path=path,
            params=params,
            headers={"Accept": accept},
            accept=accept,
        )
        return await self._perform(
            call, authenticate=True, refresh=True, retry=True
        )

    async def _perform(
        self, call: _Call, *, authenticate: bool, refresh: bool, retry: bool
    ) -> Any:
        """Run one logical request through the refresh protocol."""
        try:
            replayed = False
            while True:
                token = self._store.get_access() if authenticate else None
                if retry:
                    outcome = await self._retry.run(
                        lambda: self._send(call, token)
                    )
                else:
                    outcome = await self._send(call, token)
                if isinstance(outcome, Success):
                    return outcome.payload

                if outcome.kind == FailureKind.forbidden:
                    self._logger.warning(
                        "Request forbidden",
                        method=call.method,
                        path=call.path,
                        error=outcome.message,
                    )
                    self._events.publish(
                        ForbiddenEvent(message=outcome.message)
                    )
                    raise ForbiddenError(outcome.message, outcome.code)
                if outcome.kind == FailureKind.client:
                    raise ClientError(outcome.message, outcome.code)

                # The token was rejected.
                if not (authenticate and refresh):
                    raise AuthenticationError(outcome.message, outcome.code)
                if replayed:
                    await self._coordinator.expire(outcome.message)
                    raise AuthenticationError(outcome.message, outcome.code)
                replayed = True
                self._logger.info(
                    "Access token rejected, refreshing",
                    method=call.method,
                    path=call.path,
                )
                await self._coordinator.force_refresh(stale=token)
        except (AuthenticationError, ForbiddenError, RefreshError):
            raise
        except SessionError as e:
            sentry_sdk.capture_exception(e)
            raise

    @sentry_sdk.trace
    async def _send(self, call: _Call, token: AccessToken | None) -> Outcome:
        """Send a request once and decode the response.

        Raises
        ------
        NetworkError
            Raised if no complete response was received.
        ServerError
            Raised if the API returned a 5xx status.
        """
        request = self._client.build_request(
            call.method,
            self._base_url + call.path,
            params=call.params,
            content=call.content,
            headers=self._build_headers(call, token),
            timeout=self._timeout,
        )
        self._logger.debug(
            "Sending API request",
            method=call.method,
            path=call.path,
            params=sanitize(call.params),
            body=sanitize(_loads(call.content)),
        )
        try:
            r = await self._client.send(request, stream=True)
            try:
                if call.accept:
                    return await self._decode_download(r, call.accept)
                await r.aread()
                return self._decode(r)
            finally:
                await r.aclose()
        except RequestError as e:
            raise NetworkError.from_exception(e) from e

    def _build_headers(
        self, call: _Call, token: AccessToken | None
    ) -> dict[str, str]:
        headers = dict(call.headers)
        if call.content is not None:
            headers["Content-Type"] = "application/json"
        if token:
            headers["Authorization"] = f"Bearer {token.token}"
        if self._signing_key:
            timestamp = current_timestamp_ms()
            signature = sign_request(
                self._signing_key,
                call.method,
                call.path,
                timestamp,
                call.content,
            )
            headers[TIMESTAMP_HEADER] = str(timestamp)
            headers[SIGNATURE_HEADER] = signature
        return headers

    def _decode(self, r: Response) -> Outcome:
        """Decode a fully read response into an outcome."""
        self._raise_for_server_error(r)
        body: Any = None
        if _is_json(r):
            try:
                body = r.json()
            except ValueError as e:
                if r.is_success:
                    msg = f"Invalid JSON in response from {r.url}"
                    raise InvalidResponseError(msg) from e
        elif r.content:
            body = r.text
        self._logger.debug(
            "Received API response",
            status=r.status_code,
            path=r.url.path,
            body=sanitize(body),
        )
        return _classify(r.status_code, body)

    async def _decode_download(self, r: Response, accept: str) -> Outcome:
        """Decode a streamed file download into an outcome."""
        self._raise_for_server_error(r)
        content_type = r.headers.get("Content-Type", "")
        if _is_json(r) or not r.is_success:
            await r.aread()
            try:
                body = r.json() if _is_json(r) else None
            except ValueError:
                body = None
            outcome = _classify(r.status_code, body)
            if isinstance(outcome, Failure):
                return outcome
        if accept not in content_type:
            msg = f"Unexpected file type {content_type} (expected {accept})"
            raise InvalidDownloadError(msg)
        length = r.headers.get("Content-Length")
        if length and length.isdigit():
            if int(length) > self._max_download_size:
                msg = f"File of {length} bytes exceeds size limit"
                raise InvalidDownloadError(msg)
        if r.is_stream_consumed:
            return Success(r.content)
        data = bytearray()
        async for chunk in r.aiter_bytes():
            data.extend(chunk)
            if len(data) > self._max_download_size:
                raise InvalidDownloadError("File exceeds size limit")
        self._logger.debug(
            "Downloaded file", status=r.status_code, size=len(data)
        )
        return Success(bytes(data))

    def _raise_for_server_error(self, r: Response) -> None:
        if r.is_server_error:
            try:
                r.raise_for_status()
            except HTTPStatusError as e:
                raise ServerError.from_exception(e) from e


def _classify(status: int, body: Any) -> Outcome:
    """Classify a non-5xx response by HTTP status and envelope code."""
    code = None
    message = None
    if isinstance(body, dict):
        raw_code = body.get("code")
        if isinstance(raw_code, int) and not isinstance(raw_code, bool):
            code = raw_code
        message = body.get("error") or body.get("message")
    if status == 401 or code in TOKEN_INVALID_CODES:
        message = message or "Authentication required"
        return Failure(FailureKind.auth, str(message), code or status)
    if status == 403:
        message = message or "Access forbidden"
        return Failure(FailureKind.forbidden, str(message), code or status)
    if status >= 400:
        message = message or f"Request failed with status {status}"
        return Failure(FailureKind.client, str(message), code or status)
    if code is not None and code not in SUCCESS_CODES:
        message = message or f"Request failed with code {code}"
        return Failure(FailureKind.client, str(message), code)
    return Success(body)


def _is_json(r: Response) -> bool:
    return "json" in r.headers.get("Content-Type", "")


def _loads(content: bytes | None) -> Any:
    return json.loads(content) if content else None
