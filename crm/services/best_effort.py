"""
Fire-and-forget side effects.

Enrichment calls (calling-platform sync, failure audit records) are not part
of the lead's consistency contract: they run as detached tasks whose failures
are logged and dropped. The returned task can be awaited in tests; production
call sites do not wait on it.
"""
import asyncio
import logging
from typing import Awaitable

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage-collected mid-flight
_pending: set = set()


def _report(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        logger.info(f"Best-effort task cancelled: {task.get_name()}")


async def _guarded(coro: Awaitable, label: str):
    try:
        return await coro
    except Exception as e:
        logger.error(f"[{label}] {e!r}")
        return None


def fire_and_forget(coro: Awaitable, label: str) -> asyncio.Task:
    """
    Schedule ``coro`` without waiting for it.

    The task never raises to whoever awaits it; a failure resolves to
    ``None`` after being logged.
    """
    task = asyncio.get_running_loop().create_task(_guarded(coro, label), name=label)
    _pending.add(task)
    task.add_done_callback(_report)
    return task
