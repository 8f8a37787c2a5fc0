from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

T = TypeVar("T")


class StageTimeout(Exception):
    """Raised when a blocking stage call (e.g. an oracle request) takes too long."""


async def run_blocking_with_timeout(func: Callable[..., T], timeout_seconds: float, *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking function in a worker thread, bounded by timeout_seconds.

    Note: the function should be thread-safe. On timeout the worker thread keeps
    running in the background; only the awaiting caller is released.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        name = getattr(func, "__name__", "call")
        raise StageTimeout(f"{name} timed out after {timeout_seconds}s") from exc
