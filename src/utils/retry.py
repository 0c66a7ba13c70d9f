"""
Retry helpers with exponential backoff and jitter.

ExponentialBackoff is a small stateful delay calculator used by reconnect
loops; retry_operation / retry_operation_async wrap a single call and
retry it on the configured exception types.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExponentialBackoff:
    """Exponential backoff delay calculator.

    delay(n) = min(initial_delay_ms * multiplier ** n, max_delay_ms), then
    spread by +/- jitter_factor. A multiplier of 1.0 gives a fixed interval.

    Args:
        initial_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound for any single delay
        multiplier: Growth factor between attempts
        jitter_factor: Fraction of the delay used as random spread (0 disables)
        max_attempts: Optional attempt cap; ``exhausted`` turns True once reached
    """

    def __init__(
        self,
        initial_delay_ms: int = 1000,
        max_delay_ms: int = 60000,
        multiplier: float = 2.0,
        jitter_factor: float = 0.1,
        max_attempts: Optional[int] = None,
    ):
        if initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must be non-negative")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")

        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max(max_delay_ms, initial_delay_ms)
        self.multiplier = multiplier
        self.jitter_factor = jitter_factor
        self.max_attempts = max_attempts
        self.attempt_count = 0

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self.attempt_count >= self.max_attempts

    def peek_delay_ms(self) -> int:
        """Delay for the next attempt without jitter and without advancing."""
        delay = self.initial_delay_ms * (self.multiplier ** self.attempt_count)
        return int(min(delay, self.max_delay_ms))

    def next_delay_ms(self) -> int:
        """Return the delay for the next attempt and advance the counter."""
        delay = self.peek_delay_ms()
        self.attempt_count += 1
        if self.jitter_factor > 0 and delay > 0:
            spread = delay * self.jitter_factor
            delay = int(delay + random.uniform(-spread, spread))
        return max(0, min(delay, self.max_delay_ms))

    def reset(self) -> None:
        """Reset after a successful attempt."""
        self.attempt_count = 0


@dataclass
class RetryConfig:
    """Retry policy for a single operation.

    ``max_retries`` counts retries after the first attempt, so the operation
    runs at most ``max_retries + 1`` times.
    """
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter_factor: float = 0.1
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

    def create_backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            multiplier=self.multiplier,
            jitter_factor=self.jitter_factor,
            max_attempts=self.max_retries,
        )


def _is_retryable(
    error: BaseException,
    config: RetryConfig,
    should_retry: Optional[Callable[[BaseException], bool]],
) -> bool:
    if not isinstance(error, config.retryable_exceptions):
        return False
    if should_retry is not None:
        return should_retry(error)
    return True


def retry_operation(
    operation: Callable[[], T],
    config: Optional[RetryConfig] = None,
    operation_name: str = "operation",
    on_retry: Optional[Callable[[int, int, Exception], None]] = None,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Run ``operation`` and retry it with exponential backoff.

    Args:
        operation: Zero-argument callable
        config: Retry policy (defaults to RetryConfig())
        operation_name: Name used in log messages
        on_retry: Called with (attempt, delay_ms, error) before each sleep
        should_retry: Extra predicate; returning False re-raises immediately

    Returns:
        The operation's return value

    Raises:
        The last error once retries are exhausted, or any non-retryable error
    """
    config = config or RetryConfig()
    backoff = config.create_backoff()

    while True:
        try:
            return operation()
        except Exception as e:
            if not _is_retryable(e, config, should_retry) or backoff.exhausted:
                if backoff.attempt_count:
                    logger.error(
                        f"{operation_name} failed after {backoff.attempt_count + 1} attempts: {e}"
                    )
                raise
            delay_ms = backoff.next_delay_ms()
            logger.warning(
                f"{operation_name} failed (attempt {backoff.attempt_count}/{config.max_retries + 1}), "
                f"retrying in {delay_ms}ms: {e}"
            )
            if on_retry is not None:
                on_retry(backoff.attempt_count, delay_ms, e)
            time.sleep(delay_ms / 1000.0)


async def retry_operation_async(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    operation_name: str = "operation",
    on_retry: Optional[Callable[[int, int, Exception], None]] = None,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Async variant of retry_operation; sleeps with asyncio.sleep."""
    config = config or RetryConfig()
    backoff = config.create_backoff()

    while True:
        try:
            return await operation()
        except Exception as e:
            if not _is_retryable(e, config, should_retry) or backoff.exhausted:
                if backoff.attempt_count:
                    logger.error(
                        f"{operation_name} failed after {backoff.attempt_count + 1} attempts: {e}"
                    )
                raise
            delay_ms = backoff.next_delay_ms()
            logger.warning(
                f"{operation_name} failed (attempt {backoff.attempt_count}/{config.max_retries + 1}), "
                f"retrying in {delay_ms}ms: {e}"
            )
            if on_retry is not None:
                on_retry(backoff.attempt_count, delay_ms, e)
            await asyncio.sleep(delay_ms / 1000.0)
