"""
In-process retry queue for failed dual-writes.

When an inline write to both stores fails, the write command is queued here
and retried on a poll loop with a fixed backoff schedule. After the maximum
number of attempts the item is dropped and a structured CRITICAL record is
emitted on the ``crm.dead_letter`` logger; that log is the dead-letter store.

The queue is deliberately process-local and in-memory: the document store may
be the very backend that is down, so it cannot hold its own retries. A process
restart loses queued items; ``stop()`` logs whatever is still pending as
dead letters so the loss is at least recorded.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from django.conf import settings

logger = logging.getLogger(__name__)
dead_letter_logger = logging.getLogger('crm.dead_letter')

Clock = Callable[[], float]
Executor = Callable[[Any], Awaitable[Any]]
DeadLetterHook = Callable[['PendingWrite', str], Awaitable[None]]


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class PendingWrite:
    operation_id: str
    command: Any
    metadata: dict = field(default_factory=dict)
    attempts: int = 0
    next_retry_at: float = 0.0
    enqueued_at: float = 0.0
    last_error: Optional[str] = None


class PendingWriteQueue:
    """
    Time-ordered retry scheduler with exponential backoff and dead-lettering.

    Args:
        execute: coroutine function performing one attempt of a queued
            command; it raises on failure and must be idempotent
        clock: seconds-since-epoch source (injectable for tests)
        poll_interval: seconds between scheduler ticks
        max_attempts: attempts before an item is dead-lettered
        backoff_schedule: delay in seconds before the next attempt, indexed by
            the number of attempts made; the last value holds thereafter
        on_dead_letter: optional best-effort hook called after the record is
            logged
        autostart: start the background loop on first enqueue
    """

    def __init__(self, execute: Executor, clock: Clock = time.time,
                 poll_interval: Optional[float] = None,
                 max_attempts: Optional[int] = None,
                 backoff_schedule: Optional[Sequence[float]] = None,
                 on_dead_letter: Optional[DeadLetterHook] = None,
                 autostart: bool = True):
        self._execute = execute
        self._clock = clock
        self.poll_interval = poll_interval or getattr(settings, 'RETRY_POLL_INTERVAL_SECONDS', 10)
        self.max_attempts = max_attempts or getattr(settings, 'RETRY_MAX_ATTEMPTS', 5)
        self.backoff_schedule = list(
            backoff_schedule or getattr(settings, 'RETRY_BACKOFF_SCHEDULE', [0, 15, 60, 300, 900])
        )
        self._on_dead_letter = on_dead_letter
        self._autostart = autostart
        self._items: list[PendingWrite] = []
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, operation_id: str) -> bool:
        return any(item.operation_id == operation_id for item in self._items)

    def backoff_for(self, attempts: int) -> float:
        if attempts < len(self.backoff_schedule):
            return self.backoff_schedule[attempts]
        return self.backoff_schedule[-1]

    def enqueue(self, operation_id: str, command: Any, metadata: Optional[dict] = None) -> bool:
        """
        Queue a failed write for background retry.

        A second enqueue of an ``operation_id`` still in the queue is a no-op.
        The first retry is due immediately, i.e. on the next tick.

        Returns:
            True if the item was added
        """
        if operation_id in self:
            logger.info(f"Already queued: {operation_id}")
            return False

        now = self._clock()
        self._items.append(PendingWrite(
            operation_id=operation_id,
            command=command,
            metadata=dict(metadata or {}),
            next_retry_at=now,
            enqueued_at=now,
        ))
        logger.warning(f"Enqueued: {operation_id} | {json.dumps(metadata or {}, default=str)}")

        if self._autostart:
            self.start()
        return True

    async def process_due(self) -> int:
        """
        Run one scheduler tick: attempt every item whose retry time has come.

        Returns:
            Number of items attempted
        """
        now = self._clock()
        due = [item for item in self._items if item.next_retry_at <= now]

        for item in due:
            item.attempts += 1
            logger.info(f"Retry #{item.attempts}: {item.operation_id}")
            try:
                await self._execute(item.command)
            except Exception as e:
                item.last_error = str(e) or repr(e)
                if item.attempts >= self.max_attempts:
                    self._items.remove(item)
                    await self._dead_letter(item, reason='max_attempts')
                else:
                    backoff = self.backoff_for(item.attempts)
                    item.next_retry_at = now + backoff
                    logger.warning(
                        f"#{item.attempts} failed: {item.operation_id} - {item.last_error}. "
                        f"Next in {backoff:g}s"
                    )
            else:
                self._items.remove(item)
                logger.info(f"Resolved: {item.operation_id} after {item.attempts} attempt(s)")
        return len(due)

    async def _dead_letter(self, item: PendingWrite, reason: str) -> None:
        command = item.command.to_dict() if hasattr(item.command, 'to_dict') else repr(item.command)
        dead_letter_logger.critical(json.dumps({
            'type': 'DEAD_LETTER',
            'severity': 'CRITICAL',
            'reason': reason,
            'operation_id': item.operation_id,
            'attempts': item.attempts,
            'last_error': item.last_error,
            'metadata': item.metadata,
            'command': command,
            'enqueued_at': _iso(item.enqueued_at),
            'died_at': _iso(self._clock()),
        }, default=str))

        if self._on_dead_letter is not None:
            try:
                await self._on_dead_letter(item, reason)
            except Exception as e:
                logger.error(f"Dead-letter hook failed for {item.operation_id}: {e!r}")

    def get_stats(self) -> dict:
        """Read-only snapshot of queue depth and per-item progress."""
        return {
            'pending': len(self._items),
            'running': self.is_running,
            'items': [
                {
                    'operation_id': item.operation_id,
                    'attempts': item.attempts,
                    'next_retry_at': _iso(item.next_retry_at),
                    'enqueued_at': _iso(item.enqueued_at),
                    'last_error': item.last_error,
                    'metadata': item.metadata,
                }
                for item in self._items
            ],
        }

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the poll loop on the running event loop, if not already running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; retry loop not started")
            return
        # A task left behind by a closed loop is replaced
        if self.is_running and self._task.get_loop() is loop:
            return
        self._task = loop.create_task(self.run_forever())
        logger.info("Retry loop started")

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if not self._items:
                continue
            try:
                await self.process_due()
            except Exception:
                logger.exception("Retry tick failed")

    async def stop(self, flush: bool = True) -> None:
        """
        Cancel the poll loop. With ``flush``, every item still queued is
        logged as a dead letter with reason ``shutdown``.
        """
        task, self._task = self._task, None
        if task is not None and task.get_loop() is asyncio.get_running_loop():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Retry loop stopped")

        if flush:
            pending, self._items = self._items, []
            for item in pending:
                await self._dead_letter(item, reason='shutdown')
