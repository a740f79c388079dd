"""Retry utilities with exponential backoff."""

import asyncio
import inspect
import logging
import random
from typing import Awaitable, Callable, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _apply_jitter(delay: float) -> float:
    # ±25% of the delay
    jitter_range = delay * 0.25
    return delay + random.uniform(-jitter_range, jitter_range)


class ExponentialBackoff:
    """
    Reconnect delay calculator.

    The n-th consecutive failure waits ``min(initial * factor**(n-1), max)``
    seconds. ``reset()`` is called after every successful handshake so the
    next failure starts again from the initial delay.
    """

    def __init__(
        self,
        initial_delay: float = 2.0,
        max_delay: float = 15 * 60.0,
        backoff_factor: float = 2.0,
        jitter: bool = False
    ):
        if initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_delay must not be lower than initial_delay")

        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter

        self.failures = 0
        self._delay = initial_delay

    @classmethod
    def from_config(cls, config) -> "ExponentialBackoff":
        """Build from a ``RetryConfig``."""
        return cls(
            initial_delay=config.initial_backoff_seconds,
            max_delay=config.max_backoff_seconds,
            backoff_factor=config.backoff_multiplier,
            jitter=config.jitter
        )

    @property
    def current_delay(self) -> float:
        """Delay the next failure will wait, before jitter."""
        return self._delay

    def next_delay(self) -> float:
        """Register a failure and return how long to wait before retrying."""
        delay = self._delay
        self.failures += 1
        self._delay = min(self._delay * self.backoff_factor, self.max_delay)

        if self.jitter:
            delay = min(_apply_jitter(delay), self.max_delay)
        return delay

    def reset(self) -> None:
        self.failures = 0
        self._delay = self.initial_delay


async def exponential_backoff(
    func: Callable[[], Union[T, Awaitable[T]]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: tuple = (Exception,)
) -> T:
    """
    Execute a function with exponential backoff retry logic.

    Args:
        func: Sync or async function to execute
        max_attempts: Maximum number of attempts (1 disables retries)
        initial_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        backoff_factor: Multiplier for delay after each failure
        jitter: Whether to add random jitter to delays
        exceptions: Tuple of exceptions to catch and retry on

    Returns:
        Result of the function call

    Raises:
        The last exception encountered if all attempts fail
    """
    backoff = ExponentialBackoff(
        initial_delay=initial_delay,
        max_delay=max(max_delay, initial_delay),
        backoff_factor=backoff_factor,
        jitter=jitter
    )

    for attempt in range(1, max_attempts + 1):
        try:
            if inspect.iscoroutinefunction(func):
                return await func()
            return func()
        except exceptions as e:
            if attempt >= max_attempts:
                if max_attempts > 1:
                    logger.error(f"Function failed after {max_attempts} attempts: {e}")
                raise

            delay = backoff.next_delay()
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f} seconds..."
            )
            await asyncio.sleep(delay)

    raise ValueError("max_attempts must be at least 1")
