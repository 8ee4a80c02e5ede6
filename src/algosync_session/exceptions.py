"""Exceptions for the AlgoSync session layer."""

from __future__ import annotations

from safir.slack.blockkit import SlackException, SlackWebException

__all__ = [
    "APIError",
    "AuthenticationError",
    "ClientError",
    "ForbiddenError",
    "InvalidDownloadError",
    "InvalidResponseError",
    "NetworkError",
    "RefreshError",
    "ServerError",
    "SessionError",
    "WebError",
]


class SessionError(SlackException):
    """Base class for AlgoSync session exceptions."""

    @property
    def code(self) -> int | None:
        """HTTP status or application status code, if known."""
        return None


class InvalidResponseError(SessionError):
    """API response did not validate against the expected model."""


class WebError(SlackWebException, SessionError):
    """An HTTP request failed at the transport level.

    These are the transient failures that may be retried.
    """

    @property
    def code(self) -> int | None:
        return self.status


class NetworkError(WebError):
    """No response was received (connection failure, DNS, or timeout)."""


class ServerError(WebError):
    """The API returned a 5xx status."""


class APIError(SessionError):
    """The API rejected the request.

    Parameters
    ----------
    message
        Human-readable error message, usually from the API.
    code
        HTTP status or application status code from the response envelope.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self._code = code

    @property
    def code(self) -> int | None:
        return self._code


class AuthenticationError(APIError):
    """The access token was rejected even after a refresh."""


class ForbiddenError(APIError):
    """The API returned 403: authenticated but not authorized."""


class ClientError(APIError):
    """The request was invalid (4xx or a non-success application code)."""


class InvalidDownloadError(ClientError):
    """A file download failed its content type or size checks."""


class RefreshError(APIError):
    """Refreshing the access token failed.

    This is terminal for the session. By the time it is raised, the tokens
    have been cleared and the logout signal has been sent.
    """
