"""Core utility functions shared across modules."""

from __future__ import annotations

import asyncio


async def wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for ``stop_event``.

    Returns True when the event was set, so callers can leave their loop
    without sleeping out the rest of the interval.

    Examples:
        >>> while not stop_event.is_set():
        ...     await do_work()
        ...     if await wait_for_stop(stop_event, interval):
        ...         break
    """
    if stop_event.is_set():
        return True
    if timeout <= 0:
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True
