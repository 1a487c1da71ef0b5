"""Run blocking backend calls off the event loop under a hard timeout."""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

from memlayer.errors import BackendUnavailable, MemlayerError, OperationTimeout

T = TypeVar("T")


async def bounded(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    **kwargs: Any,
) -> T:
    """Call ``func`` in a worker thread, raising OperationTimeout past ``timeout``.

    Backend exceptions are wrapped in BackendUnavailable; memlayer errors and
    cancellation pass through untouched. On timeout or cancellation the thread
    is abandoned, the awaiting coroutine returns immediately.
    """
    call = functools.partial(func, *args, **kwargs)
    try:
        return await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeout(operation, timeout) from e
    except MemlayerError:
        raise
    except Exception as e:
        raise BackendUnavailable(f"{operation} failed: {e}") from e
