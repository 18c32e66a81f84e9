"""Async utilities for calling the blocking sync engine from async code."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Module-level semaphore, initialized at daemon startup
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 1) -> None:
    """Initialize the concurrency semaphore. Call once at daemon startup.

    The default of one keeps sync runs of a process strictly sequential:
    two concurrent runs would race each other's pushes for no benefit.
    """
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.info("Sync semaphore initialized: max_parallel=%d", max_parallel)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        report = await run_sync(engine.run)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool, bounded by the semaphore.

    Falls back to unbounded if semaphore not initialized.
    """
    if _semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with _semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)
