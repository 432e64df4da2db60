"""Retry policy for transient pipeline failures."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to attempt an operation, how long to wait, and on which errors."""

    max_attempts: int = 2
    delay_seconds: float = 0.75
    retry_on: tuple[type[BaseException], ...] = (SQLAlchemyError,)

    def retrying(self, description: str = "operation", **kwargs: Any) -> AsyncRetrying:
        """Build a tenacity controller for this policy.

        Extra keyword arguments go straight to ``AsyncRetrying`` (e.g. ``sleep``).
        """

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"{description} failed (attempt {retry_state.attempt_number}/"
                f"{self.max_attempts}), retrying in {self.delay_seconds:.2f}s: {error}"
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay_seconds),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=log_retry,
            reraise=True,
            **kwargs,
        )


# One retry after a fixed 750ms delay, store errors only
SINGLE_RETRY = RetryPolicy(max_attempts=2, delay_seconds=0.75)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = SINGLE_RETRY,
    description: str = "operation",
    **kwargs: Any,
) -> T:
    """Run ``operation`` under ``policy``; the last error is re-raised when exhausted.

    Errors outside ``policy.retry_on`` propagate on the first attempt.
    """
    return await policy.retrying(description, **kwargs)(operation)
