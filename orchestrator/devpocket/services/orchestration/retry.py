"""
Retry policy for cluster API calls.

Errors are classified by message: the kubernetes client and the urllib3 layer
beneath it report transient conditions as text (HTTP reason phrases, socket
errors), not as distinct exception types. Retryable failures back off
linearly: base_delay * attempt.
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_incrementing,
    retry_if_exception,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"connection.*(refused|timeout|reset)",
        r"timeout",
        r"temporarily unavailable",
        r"service unavailable",
        r"too many requests",
        r"etcd cluster (is )?unavailable",
    )
)


def _error_text(exception: BaseException) -> str:
    parts = [str(exception)]
    # ApiException keeps the HTTP reason phrase separately
    reason = getattr(exception, "reason", None)
    if reason:
        parts.append(str(reason))
    return " ".join(parts)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Check if a cluster error is transient.

    Example:
        >>> is_retryable_error(Exception("connect: connection refused"))
        True
        >>> is_retryable_error(Exception("authentication failed"))
        False
    """
    text = _error_text(exception)
    return any(pattern.search(text) for pattern in RETRYABLE_PATTERNS)


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    context: Optional[dict] = None,
    max_attempts: int = 3,
    base_delay_ms: int = 1000,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> T:
    """
    Run ``operation`` with bounded retries on transient cluster errors.

    Args:
        operation: Zero-argument coroutine function, called once per attempt
        operation_name: Name used in log lines
        context: Extra identifiers (environment id, namespace) for log lines
        max_attempts: Total attempts including the first
        base_delay_ms: Delay before attempt N+1 is base_delay_ms * N
        sleep: Awaitable sleep, asyncio.sleep by default

    Returns:
        Whatever the operation returns on its first successful attempt

    Raises:
        The first non-retryable error, or the last error once attempts run out.
    """
    base_delay = base_delay_ms / 1000.0
    context = context or {}

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_incrementing(start=base_delay, increment=base_delay),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep or asyncio.sleep,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            attempt_number = attempt.retry_state.attempt_number
            if attempt_number > 1:
                logger.info(f"[RETRY] {operation_name}: attempt {attempt_number}/{max_attempts} {context}")
            return await operation()

    # AsyncRetrying either returns from the block above or re-raises
    raise RuntimeError(f"{operation_name}: retry loop exited without a result")
