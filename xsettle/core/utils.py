"""Small asyncio helpers used at the engine's suspension points."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from xsettle.core.errors import StreamAbort

T = TypeVar("T")


async def abortable_sleep(delay: float, abort_event: Optional[asyncio.Event] = None) -> bool:
    """
    Sleep for ``delay`` seconds unless ``abort_event`` fires first.

    Returns True if the sleep was cut short by the abort signal.
    """
    if abort_event is None:
        await asyncio.sleep(max(0.0, delay))
        return False
    if abort_event.is_set():
        return True
    try:
        await asyncio.wait_for(abort_event.wait(), timeout=max(0.0, delay))
        return True
    except asyncio.TimeoutError:
        return False


def is_aborted(abort_event: Optional[asyncio.Event]) -> bool:
    return abort_event is not None and abort_event.is_set()


def short_hex(value: str, keep: int = 10) -> str:
    """Abbreviate a hex identifier for narration ("0x12345678...")."""
    if len(value) <= keep:
        return value
    return f"{value[:keep]}..."


async def run_until_aborted(aw: Awaitable[T], abort_event: Optional[asyncio.Event]) -> T:
    """
    Await ``aw`` unless the abort signal fires first, in which case the
    pending work is cancelled and StreamAbort is raised.
    """
    if abort_event is None:
        return await aw
    if abort_event.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise StreamAbort()
    task = asyncio.ensure_future(aw)
    abort_waiter = asyncio.ensure_future(abort_event.wait())
    try:
        await asyncio.wait({task, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        abort_waiter.cancel()
    if task.done():
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise StreamAbort()
