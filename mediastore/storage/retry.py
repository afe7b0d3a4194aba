"""Object-store retry policy: Tenacity-based exponential backoff.

Only transient failures (network errors, 5xx, throttling) are retried;
terminal failures surface on the first attempt. After the last attempt the
original exception is re-raised so callers can classify it.

Example:
    >>> policy = create_object_store_retry_policy(max_attempts=4, retry_on=TransientObjectStoreError)
    >>> async for attempt in policy:
    ...     with attempt:
    ...         await store.put(key, data, content_type, len(data))
"""

from __future__ import annotations

import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


def create_object_store_retry_policy(
    max_attempts: int = 4,
    min_wait_seconds: float = 0.5,
    max_wait_seconds: float = 8.0,
    *,
    retry_on: type[BaseException] | tuple[type[BaseException], ...] = Exception,
) -> AsyncRetrying:
    """Create a Tenacity policy for object-store calls.

    Args:
        max_attempts: Total attempts including the first (minimum 1)
        min_wait_seconds: Lower bound of the exponential backoff
        max_wait_seconds: Upper bound of the exponential backoff
        retry_on: Exception type(s) considered transient

    Returns:
        Configured AsyncRetrying, re-raising the last error when exhausted
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, int(max_attempts))),
        wait=wait_exponential(multiplier=min_wait_seconds, min=min_wait_seconds, max=max_wait_seconds),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
