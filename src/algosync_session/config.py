"""Configuration for the AlgoSync session layer.

All settings may be given as constructor arguments or as environment
variables with the ``ALGOSYNC_`` prefix. Durations accept either a number of
seconds or a human-readable string such as ``10m``.
"""

from __future__ import annotations

from pydantic import Field, HttpUrl, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from safir.logging import LogLevel, Profile, configure_logging
from safir.pydantic import EnvRedisDsn, HumanTimedelta

from .constants import (
    HTTP_TIMEOUT,
    MAX_DOWNLOAD_SIZE,
    MAX_RETRIES,
    REFRESH_MARGIN,
    REFRESH_RATIO,
    RETRY_BASE_DELAY,
    RETRY_MAX_JITTER,
)

__all__ = ["SessionConfig"]


class SessionConfig(BaseSettings):
    """Configuration for an `~algosync_session.AlgoSyncClient`."""

    model_config = SettingsConfigDict(
        env_prefix="ALGOSYNC_", case_sensitive=False
    )

    base_url: HttpUrl = Field(
        ...,
        title="API base URL",
        description=(
            "Base URL of the AlgoSync API, including the versioned path"
            " prefix, such as ``https://algosync.example.com/api/v1``"
        ),
    )

    timeout: HumanTimedelta = Field(
        HTTP_TIMEOUT,
        title="Request timeout",
        description="Timeout for each HTTP call to the API",
    )

    max_retries: int = Field(
        MAX_RETRIES,
        title="Maximum retries",
        description=(
            "How many times a request failing with a network error or a 5xx"
            " response is re-issued before the error is returned"
        ),
        ge=0,
    )

    retry_base_delay: HumanTimedelta = Field(
        RETRY_BASE_DELAY,
        title="Base retry delay",
        description="Delay before the first retry, doubled for each retry",
    )

    retry_max_jitter: HumanTimedelta = Field(
        RETRY_MAX_JITTER,
        title="Maximum retry jitter",
        description="Upper bound of the random delay added to each retry",
    )

    refresh_ratio: float = Field(
        REFRESH_RATIO,
        title="Proactive refresh ratio",
        description=(
            "Fraction of the remaining access token lifetime after which"
            " the token is refreshed proactively"
        ),
        gt=0,
        le=1,
    )

    refresh_margin: HumanTimedelta = Field(
        REFRESH_MARGIN,
        title="Proactive refresh margin",
        description=(
            "Refresh the access token proactively at least this long before"
            " it expires"
        ),
    )

    max_download_size: int = Field(
        MAX_DOWNLOAD_SIZE,
        title="Maximum download size",
        description="Largest file size in bytes accepted for a download",
        gt=0,
    )

    signing_key: SecretStr | None = Field(
        None,
        title="Request signing key",
        description=(
            "Key used to sign requests. This key is distributed with the"
            " client and therefore only deters trivial replay. If not set,"
            " requests are not signed."
        ),
    )

    storage_url: EnvRedisDsn | None = Field(
        None,
        title="Shared storage Redis DSN",
        description=(
            "If set, the refresh token is shared through this Redis server"
            " between processes. Otherwise it is only shared between clients"
            " in the same process."
        ),
    )

    storage_password: SecretStr | None = Field(
        None,
        title="Shared storage Redis password",
        description="Password for the shared storage Redis server",
    )

    storage_prefix: str = Field(
        "algosync",
        title="Shared storage key prefix",
        description="Prefix for Redis keys and the change channel",
        min_length=1,
    )

    log_level: LogLevel = Field(
        LogLevel.INFO,
        title="Logging level",
        description="Python logging level",
    )

    log_profile: Profile = Field(
        Profile.production,
        title="Logging profile",
        description=(
            "Logging profile, either ``production`` for JSON logs or"
            " ``development`` for human-readable logs"
        ),
    )

    @property
    def api_url(self) -> str:
        """Base URL of the API without a trailing slash."""
        return str(self.base_url).rstrip("/")

    def configure_logging(self) -> None:
        """Configure logging based on this configuration."""
        configure_logging(
            name="algosync_session",
            profile=self.log_profile,
            log_level=self.log_level,
        )
