from __future__ import annotations

import functools
from typing import Callable, TypeVar

import anyio

T = TypeVar("T")


async def run_sync(fn: Callable[..., T], *args, **kwargs) -> T:
    """
    Run blocking code (ORM sessions, sync Redis) from async code.

    - Executes in AnyIO's worker thread pool so the event loop keeps pumping.
    - Calls are sequential per awaiting task, so one Session may be reused
      across calls made by the same connection.
    """
    return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))
