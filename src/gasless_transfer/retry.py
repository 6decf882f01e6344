"""
Retry with exponential backoff for relay calls.

Only transient failures are retried. By default that is RelayUnavailable;
every other GaslessTransferError is surfaced on the first occurrence.

Usage:
    from gasless_transfer.retry import retry_async, RetryConfig

    fees = await retry_async(
        bundler.get_fee_levels,
        config=RetryConfig(max_retries=3, base_delay=0.5),
    )
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import (
    Awaitable,
    Callable,
    Optional,
    ParamSpec,
    Type,
    TypeVar,
)

from .exceptions import GaslessTransferError, RelayUnavailable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for relay calls.

    ``max_retries`` counts retries, so a call runs at most ``max_retries + 1``
    times. ``jitter`` is a fraction of the computed delay. ``retry_condition``
    can narrow ``retryable_exceptions`` further, e.g. to specific relay codes.
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple[Type[BaseException], ...] = (RelayUnavailable,)
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None
    retry_condition: Optional[Callable[[BaseException], bool]] = None

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry following the given 0-based attempt."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        if not isinstance(exception, self.retryable_exceptions):
            return False
        if self.retry_condition is not None:
            return self.retry_condition(exception)
        return True


NO_RETRY = RetryConfig(max_retries=0)


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Await ``func(*args, **kwargs)``, retrying transient failures.

    Non-retryable errors propagate immediately. Once attempts are exhausted the
    last error is re-raised with ``details["attempts"]`` set.
    """
    if config is None:
        config = RetryConfig()

    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)

        except Exception as e:
            if not config.should_retry(e):
                raise

            if attempt >= config.max_retries:
                if isinstance(e, GaslessTransferError):
                    e.details["attempts"] = attempt + 1
                logger.error(
                    f"All {attempt + 1} attempts failed for {name}: {e}"
                )
                raise

            delay = config.calculate_delay(attempt)
            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )

            if config.on_retry:
                config.on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
