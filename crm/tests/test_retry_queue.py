"""
Tests for the pending-write retry queue.
"""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from asgiref.sync import async_to_sync

from crm.services.dual_write import UPSERT_CONTACT, WriteCommand
from crm.services.retry_queue import PendingWriteQueue

SCHEDULE = [0, 15, 60, 300, 900]


class FlakyWrite:
    """Execute callable failing the first ``failures`` calls."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    async def __call__(self, command):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f'backend down (call {self.calls})')
        return command


def make_queue(execute, clock, **kwargs):
    options = {'max_attempts': 5, 'backoff_schedule': SCHEDULE, 'autostart': False}
    options.update(kwargs)
    return PendingWriteQueue(execute, clock=clock, **options)


def tick(queue):
    return async_to_sync(queue.process_due)()


class TestEnqueue:

    def test_duplicate_operation_is_ignored(self, fake_clock):
        queue = make_queue(FlakyWrite(), fake_clock)

        assert queue.enqueue('op-1', 'cmd', {'phone': '919876543210'}) is True
        assert queue.enqueue('op-1', 'cmd-again') is False

        assert len(queue) == 1
        assert 'op-1' in queue

    def test_first_retry_is_due_immediately(self, fake_clock):
        execute = FlakyWrite()
        queue = make_queue(execute, fake_clock)
        queue.enqueue('op-1', 'cmd')

        assert tick(queue) == 1
        assert execute.calls == 1
        assert len(queue) == 0

    def test_enqueue_without_loop_does_not_start(self, fake_clock):
        queue = make_queue(FlakyWrite(), fake_clock, autostart=True)
        queue.enqueue('op-1', 'cmd')
        assert queue.is_running is False


class TestBackoff:
    """Tests for scheduling of repeated failures."""

    def test_backoff_holds_at_last_value(self, fake_clock):
        queue = make_queue(FlakyWrite(), fake_clock)
        assert [queue.backoff_for(n) for n in range(7)] == [0, 15, 60, 300, 900, 900, 900]

    def test_retry_waits_for_backoff(self, fake_clock):
        execute = FlakyWrite(failures=1)
        queue = make_queue(execute, fake_clock)
        queue.enqueue('op-1', 'cmd')

        tick(queue)
        fake_clock.advance(14)
        assert tick(queue) == 0

        fake_clock.advance(1)
        assert tick(queue) == 1
        assert len(queue) == 0
        assert execute.calls == 2

    def test_delays_are_non_decreasing(self, fake_clock):
        queue = make_queue(FlakyWrite(failures=100), fake_clock, max_attempts=10)
        queue.enqueue('op-1', 'cmd')

        delays = []
        for _ in range(6):
            tick(queue)
            item = queue._items[0]
            delays.append(item.next_retry_at - fake_clock())
            fake_clock.advance(item.next_retry_at - fake_clock())

        assert delays == sorted(delays)
        assert delays[0] == 15

    def test_item_survives_with_error_recorded(self, fake_clock):
        queue = make_queue(FlakyWrite(failures=1), fake_clock)
        queue.enqueue('op-1', 'cmd')

        tick(queue)

        item = queue.get_stats()['items'][0]
        assert item['attempts'] == 1
        assert 'backend down' in item['last_error']


class TestDeadLetter:
    """Tests for exhaustion and shutdown."""

    def _exhaust(self, queue, clock):
        for _ in range(queue.max_attempts):
            tick(queue)
            if queue._items:
                clock.advance(queue._items[0].next_retry_at - clock())

    def test_dead_lettered_after_max_attempts(self, fake_clock, dead_letters):
        execute = FlakyWrite(failures=100)
        queue = make_queue(execute, fake_clock)
        command = WriteCommand(UPSERT_CONTACT, '919876543210', {'phone': '919876543210'}, submitted_at=1)
        queue.enqueue(command.operation_id, command, {'phone': '919876543210'})

        self._exhaust(queue, fake_clock)

        assert execute.calls == 5
        assert len(queue) == 0
        assert len(dead_letters) == 1
        record = json.loads(dead_letters[0].getMessage())
        assert record['type'] == 'DEAD_LETTER'
        assert record['reason'] == 'max_attempts'
        assert record['attempts'] == 5
        assert record['operation_id'] == command.operation_id
        assert record['command']['kind'] == UPSERT_CONTACT
        assert record['metadata'] == {'phone': '919876543210'}
        assert 'call 5' in record['last_error']

    def test_not_dead_lettered_before_last_attempt(self, fake_clock, dead_letters):
        queue = make_queue(FlakyWrite(failures=4), fake_clock)
        queue.enqueue('op-1', 'cmd')

        self._exhaust(queue, fake_clock)

        assert dead_letters == []
        assert len(queue) == 0

    def test_hook_receives_item_and_reason(self, fake_clock):
        hook = AsyncMock()
        queue = make_queue(FlakyWrite(failures=100), fake_clock, max_attempts=1, on_dead_letter=hook)
        queue.enqueue('op-1', 'cmd')

        tick(queue)

        item, reason = hook.await_args.args
        assert item.operation_id == 'op-1'
        assert reason == 'max_attempts'

    def test_hook_failure_is_contained(self, fake_clock, dead_letters):
        hook = AsyncMock(side_effect=RuntimeError('audit store down'))
        queue = make_queue(FlakyWrite(failures=100), fake_clock, max_attempts=1, on_dead_letter=hook)
        queue.enqueue('op-1', 'cmd')

        tick(queue)

        assert len(dead_letters) == 1
        assert len(queue) == 0

    def test_stop_flushes_pending_items(self, fake_clock, dead_letters):
        queue = make_queue(FlakyWrite(), fake_clock)
        queue.enqueue('op-1', 'cmd')
        queue.enqueue('op-2', 'cmd')

        async_to_sync(queue.stop)()

        assert len(queue) == 0
        assert [json.loads(r.getMessage())['reason'] for r in dead_letters] == ['shutdown', 'shutdown']

    def test_stop_without_flush_keeps_items(self, fake_clock, dead_letters):
        queue = make_queue(FlakyWrite(), fake_clock)
        queue.enqueue('op-1', 'cmd')

        async_to_sync(queue.stop)(flush=False)

        assert len(queue) == 1
        assert dead_letters == []


class TestBackgroundLoop:

    def test_loop_drains_queue(self):
        execute = FlakyWrite()

        async def scenario():
            queue = PendingWriteQueue(execute, poll_interval=0.01, max_attempts=5,
                                      backoff_schedule=SCHEDULE)
            queue.enqueue('op-1', 'cmd')
            assert queue.is_running
            for _ in range(100):
                if not len(queue):
                    break
                await asyncio.sleep(0.01)
            remaining = len(queue)
            await queue.stop()
            return remaining, queue.is_running

        remaining, running = async_to_sync(scenario)()

        assert remaining == 0
        assert running is False
        assert execute.calls == 1


def test_stats_snapshot(fake_clock):
    queue = make_queue(FlakyWrite(), fake_clock)
    queue.enqueue('op-1', 'cmd', {'phone': '919876543210', 'kind': UPSERT_CONTACT})

    stats = queue.get_stats()

    assert stats['pending'] == 1
    assert stats['running'] is False
    assert stats['items'][0]['operation_id'] == 'op-1'
    assert stats['items'][0]['attempts'] == 0
    assert stats['items'][0]['metadata']['kind'] == UPSERT_CONTACT


@pytest.mark.parametrize('attempts,expected', [(0, 0), (1, 15), (4, 900), (9, 900)])
def test_backoff_for(fake_clock, attempts, expected):
    assert make_queue(FlakyWrite(), fake_clock).backoff_for(attempts) == expected
