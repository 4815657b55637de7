"""
Bounded exponential-backoff retry for remote calendar operations.
"""

import logging
import re
import time
from typing import Callable, Optional, TypeVar

from .errors import (
    ConflictError,
    QuotaExceededError,
    ValidationError,
    WriteNotAllowedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404, 409, 412, 422})
# A status code opening the message or following "HTTP"
_STATUS_RE = re.compile(r"(?:^|\bHTTP[ /:]*)(\d{3})\b")

TERMINAL_ERRORS = (ConflictError, WriteNotAllowedError, QuotaExceededError, ValidationError)


def error_status(error: BaseException) -> Optional[int]:
    """HTTP status of an error: its ``status`` attribute, else one named in the message."""
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    match = _STATUS_RE.search(str(error))
    return int(match.group(1)) if match else None


def is_retryable(error: BaseException) -> bool:
    """Client errors (4xx) and policy errors are terminal."""
    if isinstance(error, TERMINAL_ERRORS):
        return False
    return error_status(error) not in NON_RETRYABLE_STATUSES


class RetryExecutor:
    """
    Runs an operation up to ``max_attempts`` times.

    The delay before retry n (1-based) is base_delay * 2**(n-1), capped at
    max_delay.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        name: str,
        source_id: Optional[str] = None,
    ) -> T:
        """
        Invoke operation, retrying transient failures.

        Args:
            operation: zero-argument callable performing the remote call
            name: label used in log messages
            source_id: source the operation targets, for log context

        Returns:
            Whatever operation returns.

        Raises:
            The first terminal error, or the last error once attempts run out.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = operation()
            except Exception as e:
                if not is_retryable(e):
                    logger.info("%s on source %s failed with non-retryable error: %s",
                                name, source_id, e)
                    raise
                if attempt >= self.max_attempts:
                    logger.error("%s on source %s failed after %d attempts: %s",
                                 name, source_id, attempt, e)
                    raise
                delay = self.delay_for(attempt)
                logger.warning("%s on source %s failed (attempt %d/%d), retrying in %.1fs: %s",
                               name, source_id, attempt, self.max_attempts, delay, e)
                self._sleep(delay)
                continue

            if attempt > 1:
                logger.info("%s on source %s succeeded after %d attempts",
                            name, source_id, attempt)
            return result

        raise ValueError(f"{name}: max_attempts must be at least 1")
