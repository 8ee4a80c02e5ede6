"""Retries with exponential backoff for transient request failures."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import timedelta

import structlog
from structlog.stdlib import BoundLogger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .constants import MAX_RETRIES, RETRY_BASE_DELAY, RETRY_MAX_JITTER
from .exceptions import NetworkError, ServerError

__all__ = ["RetryPolicy"]


class RetryPolicy:
    """Retry transient request failures after a delay.

    Network failures (no response at all, including timeouts) and 5xx
    responses are transient. Everything else, including every 4xx response,
    is returned to the caller immediately. The delay before retry ``n``
    (counting from zero) is ``base_delay × 2^n`` plus random jitter.

    Parameters
    ----------
    max_retries
        How many times to re-issue a failing request before giving up.
    base_delay
        Delay before the first retry. Each later retry doubles it.
    max_jitter
        Upper bound of the uniformly random delay added to each retry.
    logger
        Logger to use. If not given, the default structlog logger will be
        used.
    """

    def __init__(
        self,
        *,
        max_retries: int = MAX_RETRIES,
        base_delay: timedelta = RETRY_BASE_DELAY,
        max_jitter: timedelta = RETRY_MAX_JITTER,
        logger: BoundLogger | None = None,
    ) -> None:
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_jitter = max_jitter
        self._logger = logger or structlog.get_logger("algosync_session")

    async def run[T](self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation, retrying it on transient failures.

        Parameters
        ----------
        operation
            Issues the request. It is called again, unchanged, for each
            retry.

        Returns
        -------
        typing.Any
            Result of the first successful call.

        Raises
        ------
        NetworkError
            Raised if the last attempt failed without a response.
        ServerError
            Raised if the last attempt failed with a 5xx response.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((NetworkError, ServerError)),
            stop=stop_after_attempt(self._max_retries + 1),
            wait=(
                wait_exponential(
                    multiplier=self._base_delay.total_seconds()
                )
                + wait_random(0, self._max_jitter.total_seconds())
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            return await retrying(operation)
        except (NetworkError, ServerError) as e:
            self._logger.warning(
                "Giving up on request after retries",
                retries=self._max_retries,
                error=str(e),
            )
            raise

    def _log_retry(self, retry_state: RetryCallState) -> None:
        """Log each retry before sleeping."""
        outcome = retry_state.outcome
        error = outcome.exception() if outcome else None
        action = retry_state.next_action
        delay = action.sleep if action else 0
        self._logger.info(
            "Retrying request after transient failure",
            attempt=retry_state.attempt_number,
            delay=round(delay, 3),
            error=str(error),
        )
