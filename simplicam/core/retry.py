"""
Backoff schedules for network calls to SimpliSafe.

Two schedules are used:
- RETRY_SNAPSHOT: one quick retry of a snapshot download after a
  transport failure (connect error, read timeout, dropped connection)
- socket_backoff(): the delay before re-subscribing a rate-limited event
  socket, doubling with every consecutive failure
"""

import asyncio
import logging
import math
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryConfig:
    """
    How often and how fast to retry.

    Attributes:
        max_attempts: Attempts including the first; 0 when the caller drives
            retries itself and only uses the delay schedule
        base_delay: Delay after the first failure, in seconds
        max_delay: Ceiling for a single delay (math.inf for none)
        exponential_base: Growth factor per failure
        jitter: Spread delays by up to 25% either way
        retryable_exceptions: Exception types worth another attempt
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)


RETRY_SNAPSHOT = RetryConfig(
    max_attempts=2,
    base_delay=0.5,
    max_delay=0.5,
    jitter=False,
    retryable_exceptions=(httpx.TransportError,),
)


def socket_backoff(base_delay: float) -> RetryConfig:
    """
    Delay schedule for a rate-limited event socket: base, 2*base, 4*base, ...

    Uncapped and without jitter, so consecutive failures are predictable.
    """
    return RetryConfig(max_attempts=0, base_delay=base_delay, max_delay=math.inf, jitter=False)


def calculate_delay(failures: int, config: RetryConfig) -> float:
    """
    Delay after a number of consecutive failures.

    Args:
        failures: Failures before this one (0 for the first)
        config: Schedule to follow

    Returns:
        Delay in seconds, never negative
    """
    delay = min(config.base_delay * config.exponential_base ** failures, config.max_delay)
    if config.jitter:
        spread = delay * 0.25
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    config: RetryConfig = RETRY_SNAPSHOT,
    operation_name: Optional[str] = None,
    **kwargs,
) -> T:
    """
    Await func, retrying retryable failures per config.

    Non-retryable exceptions propagate immediately; the last retryable one
    propagates once attempts run out.

    Example:
        frame = await retry_async(self._download_frame, url, operation_name="camera_snapshot")
    """
    name = operation_name or getattr(func, '__name__', 'operation')
    attempts = max(config.max_attempts, 1)

    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == attempts:
                logger.error(
                    f"{name} gave up after {attempts} attempts: {e}",
                    extra={
                        "event_type": "retry_exhausted",
                        "operation": name,
                        "attempts": attempts,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
                raise
            delay = calculate_delay(attempt - 1, config)
            logger.warning(
                f"{name} failed ({type(e).__name__}), attempt {attempt} of {attempts}, next try in {delay:.1f}s",
                extra={
                    "event_type": "retry_attempt",
                    "operation": name,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(e),
                }
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"{name} made no attempts")
