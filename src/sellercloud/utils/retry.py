"""
Retry utilities with exponential backoff for marketplace API calls.

The fetch gateway is the only caller: retry policy is defined here once and
parameterized by an error classifier deciding what is transient.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from sellercloud.utils.exceptions import is_transient
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 2
    base_delay: float = 1.0  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True  # ±25% random variation

    # Honour Retry-After from 429 responses up to this many seconds
    respect_retry_after: bool = True
    max_retry_after: float = 60.0


class ExponentialBackoff:
    """
    Exponential backoff calculator with jitter.

    - Base delay starts at ``base_delay``
    - Each retry multiplies the delay by ``exponential_base``
    - Random jitter prevents a thundering herd
    - ``max_delay`` caps the wait
    """

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0

    def reset(self) -> None:
        """Reset attempt counter."""
        self.attempt = 0

    def calculate_delay(self, retry_after: Optional[float] = None) -> float:
        """
        Calculate delay for the current attempt and advance the counter.

        Args:
            retry_after: Retry-After value (seconds) from the upstream response

        Returns:
            Delay in seconds
        """
        if retry_after is not None and self.config.respect_retry_after:
            if 0 <= retry_after <= self.config.max_retry_after:
                self.attempt += 1
                logger.debug(f"Using Retry-After header: {retry_after}s")
                return retry_after
            logger.warning(f"Retry-After too large ({retry_after}s), using exponential backoff")

        delay = self.config.base_delay * (self.config.exponential_base ** self.attempt)

        if self.config.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        delay = max(0.0, min(delay, self.config.max_delay))

        self.attempt += 1

        logger.debug(f"Calculated retry delay: {delay:.2f}s (attempt {self.attempt})")
        return delay

    def should_retry(self, exception: BaseException,
                     classifier: Callable[[BaseException], bool]) -> bool:
        """
        Determine whether another attempt is allowed for this exception.

        Args:
            exception: Exception that occurred
            classifier: Returns True for transient errors

        Returns:
            True if should retry, False otherwise
        """
        if not classifier(exception):
            logger.debug(f"Not retrying exception: {type(exception).__name__}")
            return False

        if self.attempt >= self.config.max_retries:
            logger.debug(f"Max retries ({self.config.max_retries}) exceeded")
            return False

        return True


async def retry_async(
    func: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    classifier: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    description: str = "operation",
) -> T:
    """
    Await ``func()`` and retry it with exponential backoff on transient errors.

    Args:
        func: Zero-argument coroutine factory; called once per attempt
        config: Retry configuration (defaults to 2 retries)
        classifier: Decides which exceptions are retry-eligible
        sleep: Awaitable sleep, injectable for tests
        on_retry: Callback ``(exception, attempt, delay)`` before each wait
        description: Name used in log messages

    Returns:
        Result of the first successful attempt

    Raises:
        The last exception once it is non-transient or retries are exhausted
    """
    backoff = ExponentialBackoff(config or RetryConfig())

    while True:
        try:
            return await func()
        except Exception as e:
            if not backoff.should_retry(e, classifier):
                raise

            delay = backoff.calculate_delay(getattr(e, "retry_after", None))
            logger.info(f"Retrying {description} in {delay:.2f}s (attempt {backoff.attempt}): {e}")
            if on_retry is not None:
                on_retry(e, backoff.attempt, delay)
            await sleep(delay)
