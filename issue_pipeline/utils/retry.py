"""Retry utilities for collaborator calls that may fail transiently.

Only idempotent reads against external collaborators (issue lookups, deployment
status polling) are wrapped. The agent turn loop never retries: a failed
reasoning-service call surfaces as a failed run.

Backoff Formula:
    delay = backoff_factor ** attempt_number
    For backoff_factor=2.0: 2s, 4s, 8s, ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import structlog

from issue_pipeline.exceptions import TransientServiceError

log = structlog.get_logger(__name__)


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (TransientServiceError,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up.
        backoff_factor: Base for the exponential backoff calculation.
        exceptions: Exception types that trigger a retry. Anything else
            propagates immediately.

    Raises:
        The last caught exception once all attempts are exhausted.

    Example:
        >>> @async_retry(max_attempts=5, backoff_factor=1.5)
        ... async def get_status(deployment_id: str) -> Deployment:
        ...     return await client.get(...)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_factor**attempt
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
