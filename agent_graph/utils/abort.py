import asyncio
from typing import Awaitable, Optional, TypeVar

from agent_graph.core.errors import RunAbortedError

T = TypeVar("T")


def check_abort(signal: Optional[asyncio.Event]) -> None:
    if signal is not None and signal.is_set():
        raise RunAbortedError("Run aborted")


async def run_with_abort(awaitable: Awaitable[T], signal: Optional[asyncio.Event]) -> T:
    """Await `awaitable`, cancelling it and raising RunAbortedError if the signal fires first."""
    if signal is None:
        return await awaitable
    check_abort(signal)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()
    task.cancel()
    raise RunAbortedError("Run aborted")
