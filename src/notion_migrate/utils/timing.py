"""Waiting that gives way to an abort request."""

import asyncio
from typing import Awaitable, Callable, Optional


async def sleep_unless_aborted(
    sleep: Callable[[float], Awaitable[None]],
    seconds: float,
    abort: Optional[asyncio.Event] = None,
) -> bool:
    """Sleep for ``seconds``, returning early once ``abort`` is set.

    Returns:
        True if the full delay elapsed, False if the abort cut it short
    """
    if abort is None:
        await sleep(seconds)
        return True
    if abort.is_set():
        return False

    sleeper = asyncio.ensure_future(sleep(seconds))
    aborter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({sleeper, aborter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, aborter):
            if not task.done():
                task.cancel()
        await asyncio.gather(sleeper, aborter, return_exceptions=True)

    if sleeper.done() and not sleeper.cancelled():
        # Surface errors raised by the sleep itself
        sleeper.result()
        return not abort.is_set()
    return False
