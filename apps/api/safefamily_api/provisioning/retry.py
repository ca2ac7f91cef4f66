"""Bounded exponential-backoff retry over result-returning attempts."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from safefamily_api.provisioning.results import Err, Ok, Result

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryOutcome:
    success: bool
    attempts: int
    error: Optional[str] = None
    value: Any = None


def backoff_delay(attempt: int, initial_delay: float = DEFAULT_INITIAL_DELAY) -> float:
    """Delay before retrying after the given (1-based) failed attempt: 1s, 2s, 4s..."""
    return initial_delay * (2 ** (attempt - 1))


async def with_retry(
    operation: Callable[[], Awaitable[Result]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
) -> RetryOutcome:
    """Run ``operation`` until it returns ``Ok`` or the attempt budget is spent.

    No delay follows the final attempt. A non-retryable ``Err`` stops
    immediately and is reported with the attempts made so far.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: Optional[str] = None
    for attempt in range(1, max_attempts + 1):
        result = await operation()

        if isinstance(result, Ok):
            if attempt > 1:
                logger.info(
                    "RETRY_SUCCEEDED",
                    extra={"label": label, "attempt": attempt, "max_attempts": max_attempts},
                )
            return RetryOutcome(success=True, attempts=attempt, value=result.value)

        if not isinstance(result, Err):
            raise TypeError(f"{label} returned {type(result).__name__}, expected Ok or Err")

        last_error = result.error
        logger.warning(
            "RETRY_ATTEMPT_FAILED",
            extra={
                "label": label,
                "attempt": attempt,
                "max_attempts": max_attempts,
                "error": result.error,
                "retryable": result.retryable,
            },
        )

        if not result.retryable:
            return RetryOutcome(success=False, attempts=attempt, error=last_error)

        if attempt < max_attempts:
            await sleep(backoff_delay(attempt, initial_delay))

    return RetryOutcome(success=False, attempts=max_attempts, error=last_error)
