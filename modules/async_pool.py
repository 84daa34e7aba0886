"""
RetryPool - bounded concurrency and exponential-backoff retry

Every batch of RPC enrichment calls goes through async_pool() so the
public endpoint is never hit by more than a few requests at once, and each
call is wrapped in with_retry() for transient failures.
"""
import asyncio
import logging
from functools import wraps
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, Type, TypeVar

from sniper_errors import TRANSIENT_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 0.25,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    name: Optional[str] = None,
) -> T:
    """
    Run `operation` until it succeeds or `max_attempts` is exhausted.

    Delay doubles from `base_delay` between attempts. Errors outside
    `retry_on` propagate immediately; once attempts run out the last
    error propagates unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    label = name or getattr(operation, "__name__", "operation")
    for attempt in range(max_attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt == max_attempts - 1:
                logger.warning(f"⚠️  Max retries reached for {label}: {e}")
                raise
            delay = base_delay * (2 ** attempt)
            logger.debug(f"⚠️  Transient error in {label} ({e}), retrying in {delay}s...")
            await asyncio.sleep(delay)


def retry_with_backoff(max_retries: int = 3, base_delay: float = 0.5):
    """Decorator form of with_retry() for async methods"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_retries,
                base_delay=base_delay,
                name=func.__name__,
            )
        return wrapper
    return decorator


async def async_pool(
    concurrency: int,
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
) -> List[R]:
    """
    Run `worker` over `items` with at most `concurrency` in flight.

    Results keep the order of `items`. If any worker fails, the remaining
    workers still run to completion and the first error is raised.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    semaphore = asyncio.Semaphore(concurrency)

    async def run(item):
        async with semaphore:
            return await worker(item)

    results = await asyncio.gather(*(run(item) for item in items), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results
