"""Common utilities and types for stack orchestration."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from config import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class ActionResult:
    """Result of one change executed against the control-plane."""
    success: bool
    message: str = ''
    duration: float = 0.0
    physical_id: Optional[str] = None
    attributes: dict = field(default_factory=dict)
    attempts: int = 1


def backoff_delay(attempt: int, retry: RetrySettings) -> float:
    """Delay before retry number `attempt` (0-based): base * 2**attempt, capped."""
    return min(retry.base_delay * (2 ** attempt), retry.max_delay)


def call_with_retry(
    func: Callable[[], T],
    retry: RetrySettings,
    retryable: tuple = (),
    description: str = 'call',
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[T, int]:
    """Call func, retrying retryable exceptions with exponential backoff.

    Args:
        func: Zero-argument callable performing the operation
        retry: Backoff settings (max_attempts, base_delay, max_delay)
        retryable: Exception classes that may be retried
        description: Operation name for log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        (result, attempts) tuple

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    attempt = 0
    while True:
        try:
            return func(), attempt + 1
        except retryable as e:
            attempt += 1
            if attempt >= retry.max_attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = backoff_delay(attempt - 1, retry)
            logger.warning(f"{description} failed ({e}), retrying in {delay:.1f}s "
                           f"(attempt {attempt + 1}/{retry.max_attempts})")
            sleep(delay)


def parse_key_value_args(values: Optional[list[str]], flag: str = '--param') -> dict[str, str]:
    """Parse repeated K=V flags into a dict.

    Raises:
        ValueError: On entries without '=' or with an empty key
    """
    result: dict[str, str] = {}
    for item in values or []:
        if '=' not in item:
            raise ValueError(f"Invalid {flag} format '{item}'. Expected KEY=VALUE")
        key, value = item.split('=', 1)
        if not key:
            raise ValueError(f"Invalid {flag} format '{item}'. Key cannot be empty")
        result[key] = value
    return result
