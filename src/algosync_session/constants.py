"""Constants for the AlgoSync session layer."""

from __future__ import annotations

from datetime import timedelta

__all__ = [
    "EXPIRING_THRESHOLD",
    "EXPIRY_BUFFER",
    "HTTP_TIMEOUT",
    "MAX_DOWNLOAD_SIZE",
    "MAX_RETRIES",
    "REDACTED",
    "REDIS_BACKOFF_MAX",
    "REDIS_BACKOFF_START",
    "REDIS_RETRIES",
    "REFRESH_MARGIN",
    "REFRESH_RATIO",
    "REFRESH_TOKEN_KEY",
    "RETRY_BASE_DELAY",
    "RETRY_MAX_JITTER",
    "SENSITIVE_FIELDS",
    "SIGNATURE_HEADER",
    "SIGNATURE_LENGTH",
    "SUCCESS_CODES",
    "TIMESTAMP_HEADER",
    "TOKEN_INVALID_CODES",
    "TOKEN_TIMESTAMP_KEY",
]

REFRESH_TOKEN_KEY = "algo_refresh_token"
"""Durable storage key holding the encoded refresh token."""

TOKEN_TIMESTAMP_KEY = "algo_token_timestamp"
"""Durable storage key holding the time (epoch ms) of the last token write.

Always written and removed together with `REFRESH_TOKEN_KEY`.
"""

HTTP_TIMEOUT = timedelta(seconds=10)
"""Timeout for each call to the API.

A timeout is a transient failure and is retried like any other network
error.
"""

MAX_RETRIES = 3
"""How many times a request failing with a transient error is re-issued."""

RETRY_BASE_DELAY = timedelta(seconds=1)
"""Delay before the first retry.

Later retries double the delay each time, so the default schedule is roughly
one, two, and four seconds.
"""

RETRY_MAX_JITTER = timedelta(seconds=1)
"""Upper bound of the random delay added to each retry delay."""

REFRESH_RATIO = 0.8
"""Fraction of the remaining token lifetime after which to refresh."""

REFRESH_MARGIN = timedelta(minutes=10)
"""Refresh at least this long before the access token expires.

The proactive refresh happens at whichever of `REFRESH_RATIO` of the
remaining lifetime or the remaining lifetime minus this margin comes first.
If that time is not in the future, no proactive refresh is scheduled.
"""

EXPIRY_BUFFER = timedelta(minutes=5)
"""Treat an access token as expired this long before its real expiration."""

EXPIRING_THRESHOLD = timedelta(minutes=15)
"""An access token with less than this remaining is about to expire."""

MAX_DOWNLOAD_SIZE = 100 * 1024 * 1024
"""Largest declared ``Content-Length`` accepted for a file download."""

SUCCESS_CODES = frozenset({0, 200, 2000})
"""Application status codes in a response envelope that denote success."""

TOKEN_INVALID_CODES = frozenset({401, 4010})
"""Application status codes in a response envelope for an invalid token."""

TIMESTAMP_HEADER = "X-Request-Time"
"""Header carrying the request time (epoch ms) covered by the signature."""

SIGNATURE_HEADER = "X-Request-Signature"
"""Header carrying the request signature."""

SIGNATURE_LENGTH = 32
"""Number of hex characters of the HMAC kept in the signature header."""

SENSITIVE_FIELDS = ("password", "token", "authorization", "secret", "key")
"""Substrings of field names whose values are redacted from debug logs."""

REDACTED = "***REDACTED***"
"""Replacement value for redacted fields."""

REDIS_BACKOFF_START = 0.2
"""How long (in seconds) to initially wait after a Redis failure.

Exponential backoff will be used for subsequent retries, up to
`REDIS_BACKOFF_MAX` total delay.
"""

REDIS_BACKOFF_MAX = 1.0
"""Maximum delay (in seconds) to wait after a Redis failure."""

REDIS_RETRIES = 10
"""How many times to try to connect to Redis before giving up."""
