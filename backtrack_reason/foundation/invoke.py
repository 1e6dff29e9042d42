"""Uniform invocation of injected functions.

Generation, thought and evaluation functions are supplied by callers and
may be plain callables or coroutine functions.  Both are awaited here,
optionally under a deadline.  Synchronous functions run in a worker
thread when a deadline applies so the event loop can enforce it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from backtrack_reason.domain.errors import CallTimeoutError

logger = logging.getLogger(__name__)


async def call_injected(
    fn: Callable[..., Any],
    *args: Any,
    timeout: float | None = None,
    label: str | None = None,
) -> Any:
    """Call *fn* with *args*, awaiting it if needed.

    Raises:
        CallTimeoutError: If *timeout* seconds elapse before completion.
    """
    name = label or getattr(fn, "__name__", repr(fn))

    if timeout is None:
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    if inspect.iscoroutinefunction(fn):
        pending = fn(*args)
    else:
        pending = asyncio.to_thread(_call_sync, fn, args)

    try:
        return await asyncio.wait_for(pending, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("Injected call %s exceeded %.3fs deadline", name, timeout)
        raise CallTimeoutError(name, timeout) from exc


def _call_sync(fn: Callable[..., Any], args: tuple) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        # A sync wrapper handed back a coroutine; drive it on this worker thread.
        return asyncio.run(_await(result))
    return result


async def _await(awaitable: Any) -> Any:
    return await awaitable
