"""Session and request-resilience layer for the AlgoSync API."""

from .client import AlgoSyncClient
from .config import SessionConfig
from .dedup import DedupCache
from .events import (
    EventBus,
    ForbiddenEvent,
    LogoutEvent,
    SessionEvent,
    SessionExpiredEvent,
    TokenUpdatedEvent,
)
from .exceptions import (
    APIError,
    AuthenticationError,
    ClientError,
    ForbiddenError,
    InvalidDownloadError,
    InvalidResponseError,
    NetworkError,
    RefreshError,
    ServerError,
    SessionError,
    WebError,
)
from .mock import MockAlgoSyncAction, MockAlgoSyncAPI, register_mock_algosync
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
from .refresh import RefreshCoordinator, compute_refresh_delay
from .retry import RetryPolicy
from .storage import MemoryBackend, MemoryStore, RedisStore, SharedStore
from .sync import CrossContextSync
from .token_store import TokenStore

__all__ = [
    "APIError",
    "AccessToken",
    "AlgoSyncClient",
    "AuthenticationError",
    "ClientError",
    "CrossContextSync",
    "DedupCache",
    "EventBus",
    "ForbiddenError",
    "ForbiddenEvent",
    "InvalidDownloadError",
    "InvalidResponseError",
    "LoginData",
    "LogoutEvent",
    "MemoryBackend",
    "MemoryStore",
    "MockAlgoSyncAPI",
    "MockAlgoSyncAction",
    "NetworkError",
    "RedisStore",
    "RefreshCoordinator",
    "RefreshData",
    "RefreshError",
    "RegisterData",
    "RequestPipeline",
    "RetryPolicy",
    "ServerError",
    "SessionConfig",
    "SessionError",
    "SessionEvent",
    "SessionExpiredEvent",
    "SessionState",
    "SharedStore",
    "TokenPair",
    "TokenStore",
    "TokenUpdatedEvent",
    "User",
    "WebError",
    "compute_refresh_delay",
    "register_mock_algosync",
]
