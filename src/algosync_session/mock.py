"""Mock for the parts of the AlgoSync API used by the client."""

from __future__ import annotations

import json
import os
import re
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from functools import wraps
from typing import Any, Concatenate

import jwt
import respx
from httpx import Request, Response
from safir.datetime import current_datetime

from .constants import SIGNATURE_HEADER, TIMESTAMP_HEADER
from .models import User
from .pipeline import sign_request

__all__ = [
    "MockAlgoSyncAPI",
    "MockAlgoSyncAction",
    "register_mock_algosync",
]

_DEFAULT_PROBLEMS = [
    {"id": 1, "title": "Two Sum", "difficulty": "easy"},
    {"id": 2, "title": "Add Two Numbers", "difficulty": "medium"},
    {"id": 3, "title": "Valid Parentheses", "difficulty": "easy"},
    {"id": 4, "title": "Median of Two Sorted Arrays", "difficulty": "hard"},
]


class MockAlgoSyncAction(Enum):
    """Possible actions that could fail."""

    ADMIN = "admin"
    DOWNLOAD = "download"
    LOGIN = "login"
    LOGOUT = "logout"
    ME = "me"
    PROBLEMS = "problems"
    REFRESH = "refresh"
    REGISTER = "register"
    VALIDATE = "validate"


@dataclass
class _Failure:
    """Failure injected for one action."""

    status: int
    remaining: int | None


class MockAlgoSyncAPI:
    """Mock for the parts of the AlgoSync API used by the client.

    Access tokens are real HS256 JWTs signed with a random secret, so that
    the client can decode their expiration. Refresh tokens are rotated on
    every refresh. Every handled request is counted in `calls`, including
    requests that fail.

    Parameters
    ----------
    token_lifetime
        Lifetime of newly-issued access tokens.
    envelope_errors
        If `True`, rejected access tokens produce a 200 response whose
        envelope carries code 4010, as the AlgoSync backend does. Otherwise
        they produce a 401 response.
    signing_key
        If given, requests whose signature headers do not match this key are
        rejected with a 400 response.
    """

    def __init__(
        self,
        *,
        token_lifetime: timedelta = timedelta(hours=1),
        envelope_errors: bool = False,
        signing_key: str | None = None,
    ) -> None:
        self.calls: Counter[MockAlgoSyncAction] = Counter()
        self.token_lifetime = token_lifetime
        self.envelope_errors = envelope_errors
        self._signing_key = signing_key
        self._secret = os.urandom(32).hex()
        self._base_path = ""
        self._fail: dict[MockAlgoSyncAction, _Failure] = {}
        self._users: dict[str, User] = {}
        self._passwords: dict[str, str] = {}
        self._access_tokens: dict[str, str] = {}
        self._refresh_tokens: dict[str, str] = {}
        self._files: dict[str, tuple[str, bytes]] = {}
        self._problems = list(_DEFAULT_PROBLEMS)

    def add_user(
        self,
        email: str,
        password: str,
        *,
        username: str | None = None,
        role: str = "user",
    ) -> User:
        """Create a user that can log in.

        Parameters
        ----------
        email
            Email address of the user, used to log in.
        password
            Password of the user.
        username
            Username. Defaults to the local part of the email address.
        role
            Role of the user. Only ``admin`` users may use the admin route.

        Returns
        -------
        User
            The new user.
        """
        user = User(
            id=len(self._users) + 1,
            username=username or email.split("@", 1)[0],
            email=email,
            role=role,
        )
        self._users[email] = user
        self._passwords[email] = password
        return user

    def add_file(
        self, name: str, content: bytes, content_type: str = "text/plain"
    ) -> None:
        """Make a file available for download at ``/files/<name>``."""
        self._files[name] = (content_type, content)

    def create_session(self, email: str) -> tuple[str, str]:
        """Issue a token pair for a user without logging in.

        Returns
        -------
        tuple of str, str
            New access token and refresh token.
        """
        issued = self._issue(self._users[email])
        return issued["access_token"], issued["refresh_token"]

    def fail_on(
        self,
        actions: MockAlgoSyncAction | Iterable[MockAlgoSyncAction],
        *,
        status: int = 500,
        count: int | None = None,
    ) -> None:
        """Configure the API to fail on the given actions.

        This can be used by test suites to test handling of AlgoSync
        failures.

        Parameters
        ----------
        actions
            An action or iterable of actions that should fail.
        status
            HTTP status of the failure response.
        count
            Number of times to fail before behaving normally again, or
            `None` to fail until `reset_failures` is called.
        """
        if isinstance(actions, MockAlgoSyncAction):
            actions = [actions]
        for action in actions:
            self._fail[action] = _Failure(status=status, remaining=count)

    def reset_failures(self) -> None:
        """Restore regular operation for all actions."""
        self._fail = {}

    def revoke_access_tokens(self) -> None:
        """Invalidate every issued access token, as if they had expired."""
        self._access_tokens = {}

    def revoke_refresh_tokens(self) -> None:
        """Invalidate every issued refresh token."""
        self._refresh_tokens = {}

    def install_routes(self, respx_mock: respx.Router, base_url: str) -> None:
        """Install the mock routes for the AlgoSync API.

        Parameters
        ----------
        respx_mock
            Mock router to use to install routes.
        base_url
            Base URL for the mock routes, including the version prefix.
        """
        base_url = base_url.rstrip("/")
        self._base_path = re.sub(r"^https?://[^/]+", "", base_url)
        respx_mock.post(f"{base_url}/auth/login").mock(
            side_effect=self._handle_login
        )
        respx_mock.post(f"{base_url}/auth/register").mock(
            side_effect=self._handle_register
        )
        respx_mock.post(f"{base_url}/auth/refresh").mock(
            side_effect=self._handle_refresh
        )
        respx_mock.post(f"{base_url}/auth/logout").mock(
            side_effect=self._handle_logout
        )
        respx_mock.get(f"{base_url}/auth/me").mock(
            side_effect=self._handle_me
        )
        respx_mock.get(f"{base_url}/auth/validate").mock(
            side_effect=self._handle_validate
        )
        respx_mock.get(f"{base_url}/problems").mock(
            side_effect=self._handle_problems
        )
        respx_mock.get(f"{base_url}/admin/users").mock(
            side_effect=self._handle_admin
        )

        # This route requires regex matching of the file name.
        base_regex = re.escape(base_url)
        regex = re.compile(base_regex + "/files/(?P<name>[^/?]+)$")
        respx_mock.get(url__regex=regex).mock(side_effect=self._handle_file)

    @staticmethod
    def _check[**P](
        action: MockAlgoSyncAction, *, authenticated: bool = True
    ) -> Callable[
        [
            Callable[
                Concatenate[MockAlgoSyncAPI, Request, User | None, P],
                Response,
            ]
        ],
        Callable[Concatenate[MockAlgoSyncAPI, Request, P], Response],
    ]:
        """Wrap `MockAlgoSyncAPI` methods to perform common checks.

        Every request is counted, has its signature checked if a signing key
        was configured, may be failed on request, and, if it requires
        authentication, has its access token looked up. The user owning the
        token is injected as an additional argument to the method.

        Parameters
        ----------
        action
            Action performed by the wrapped handler.
        authenticated
            Whether the request requires a valid access token.

        Returns
        -------
        typing.Callable
            Decorator to wrap `MockAlgoSyncAPI` methods.
        """

        def decorator(
            f: Callable[
                Concatenate[MockAlgoSyncAPI, Request, User | None, P],
                Response,
            ],
        ) -> Callable[Concatenate[MockAlgoSyncAPI, Request, P], Response]:
            @wraps(f)
            def wrapper(
                mock: MockAlgoSyncAPI,
                request: Request,
                *args: P.args,
                **kwargs: P.kwargs,
            ) -> Response:
                mock.calls[action] += 1
                if mock._signing_key and not mock._is_signed(request):
                    return _error(400, 4003, "Invalid request signature")
                if failure := mock._fail.get(action):
                    if failure.remaining is not None:
                        failure.remaining -= 1
                        if failure.remaining <= 0:
                            del mock._fail[action]
                    return _error(failure.status, failure.status, "Failed")
                user = None
                if authenticated:
                    user = mock._authenticate(request)
                    if not user:
                        if mock.envelope_errors:
                            return _error(200, 4010, "Token expired")
                        return _error(401, 401, "Invalid token")
                return f(mock, request, user, *args, **kwargs)

            return wrapper

        return decorator

    @_check(MockAlgoSyncAction.LOGIN, authenticated=False)
    def _handle_login(self, request: Request, user: User | None) -> Response:
        body = json.loads(request.content)
        email = body.get("email")
        password = self._passwords.get(email)
        if password is None or password != body.get("password"):
            return _error(200, 5001, "Invalid email or password")
        issued = self._issue(self._users[email])
        return _success(
            {
                "token": issued["access_token"],
                "refresh_token": issued["refresh_token"],
                "expires_at": issued["expires_at"],
                "token_type": "Bearer",
                "user": self._users[email].model_dump(mode="json"),
            }
        )

    @_check(MockAlgoSyncAction.REGISTER, authenticated=False)
    def _handle_register(
        self, request: Request, user: User | None
    ) -> Response:
        body = json.loads(request.content)
        if body["email"] in self._users:
            return _error(200, 5001, "Email already registered")
        new_user = self.add_user(
            body["email"], body["password"], username=body["username"]
        )
        issued = self._issue(new_user)
        return _success(
            {
                "access_token": issued["access_token"],
                "refresh_token": issued["refresh_token"],
                "expires_in": issued["expires_in"],
                "user": new_user.model_dump(mode="json"),
            }
        )

    @_check(MockAlgoSyncAction.REFRESH, authenticated=False)
    def _handle_refresh(
        self, request: Request, user: User | None
    ) -> Response:
        body = json.loads(request.content)
        email = self._refresh_tokens.pop(body.get("refresh_token"), None)
        if not email:
            return _error(200, 5001, "Invalid refresh token")
        issued = self._issue(self._users[email])
        return _success(
            {
                "access_token": issued["access_token"],
                "refresh_token": issued["refresh_token"],
                "expires_in": issued["expires_in"],
            }
        )

    @_check(MockAlgoSyncAction.LOGOUT)
    def _handle_logout(self, request: Request, user: User | None) -> Response:
        token = _bearer_token(request)
        if token:
            self._access_tokens.pop(token, None)
        return _success(None)

    @_check(MockAlgoSyncAction.ME)
    def _handle_me(self, request: Request, user: User | None) -> Response:
        assert user
        return _success(user.model_dump(mode="json"))

    @_check(MockAlgoSyncAction.VALIDATE)
    def _handle_validate(
        self, request: Request, user: User | None
    ) -> Response:
        return _success({"valid": True})

    @_check(MockAlgoSyncAction.PROBLEMS)
    def _handle_problems(
        self, request: Request, user: User | None
    ) -> Response:
        difficulty = request.url.params.get("difficulty")
        problems = [
            p
            for p in self._problems
            if not difficulty or p["difficulty"] == difficulty
        ]
        return _success(problems)

    @_check(MockAlgoSyncAction.ADMIN)
    def _handle_admin(self, request: Request, user: User | None) -> Response:
        assert user
        if user.role != "admin":
            return _error(403, 403, "Admin access required")
        users = [u.model_dump(mode="json") for u in self._users.values()]
        return _success(users)

    @_check(MockAlgoSyncAction.DOWNLOAD)
    def _handle_file(
        self, request: Request, user: User | None, *, name: str
    ) -> Response:
        if name not in self._files:
            return _error(200, 4004, "File not found")
        content_type, content = self._files[name]
        return Response(
            200, content=content, headers={"Content-Type": content_type}
        )

    def _authenticate(self, request: Request) -> User | None:
        token = _bearer_token(request)
        if not token or token not in self._access_tokens:
            return None
        try:
            jwt.decode(token, self._secret, algorithms=["HS256"])
        except jwt.InvalidTokenError:
            return None
        return self._users.get(self._access_tokens[token])

    def _is_signed(self, request: Request) -> bool:
        assert self._signing_key
        timestamp = request.headers.get(TIMESTAMP_HEADER)
        signature = request.headers.get(SIGNATURE_HEADER)
        if not timestamp or not timestamp.isdigit() or not signature:
            return False
        path = request.url.path.removeprefix(self._base_path)
        expected = sign_request(
            self._signing_key,
            request.method,
            path,
            int(timestamp),
            request.content,
        )
        return signature == expected

    def _issue(self, user: User) -> dict[str, Any]:
        now = current_datetime()
        expires = now + self.token_lifetime
        claims = {
            "sub": str(user.id),
            "username": user.username,
            "email": user.email,
            "roles": [user.role] if user.role else [],
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
            "jti": os.urandom(8).hex(),
        }
        access_token = jwt.encode(claims, self._secret, algorithm="HS256")
        refresh_token = os.urandom(16).hex()
        assert user.email
        self._access_tokens[access_token] = user.email
        self._refresh_tokens[refresh_token] = user.email
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires.isoformat(),
            "expires_in": int(self.token_lifetime.total_seconds()),
        }


def register_mock_algosync(
    respx_mock: respx.Router, base_url: str, **kwargs: Any
) -> MockAlgoSyncAPI:
    """Mock out the AlgoSync API.

    Parameters
    ----------
    respx_mock
        Mock router.
    base_url
        Base URL of the API, including the version prefix.
    **kwargs
        Passed to the `MockAlgoSyncAPI` constructor.

    Returns
    -------
    MockAlgoSyncAPI
        Mock AlgoSync API object.
    """
    mock = MockAlgoSyncAPI(**kwargs)
    mock.install_routes(respx_mock, base_url)
    return mock


def _bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("Authorization")
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def _error(status: int, code: int, message: str) -> Response:
    return Response(
        status, json={"code": code, "message": message, "data": None}
    )


def _success(data: Any) -> Response:
    return Response(200, json={"code": 0, "message": "success", "data": data})
