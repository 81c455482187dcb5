"""
Tests for the cache-backed lease lock.
"""
import asyncio
from unittest.mock import MagicMock

import pytest
from asgiref.sync import async_to_sync

from crm.services.lease_lock import LeaseLock, LeaseTimeoutError


def make_lock(cache, **kwargs):
    options = {'ttl': 30, 'poll_interval': 0.005, 'max_attempts': 400, 'store_timeout': 1, 'strict': False}
    options.update(kwargs)
    return LeaseLock(cache=cache, **options)


async def critical_section(events, name, delay=0.02):
    events.append(f'{name}:start')
    await asyncio.sleep(delay)
    events.append(f'{name}:end')
    return name


class TestMutualExclusion:
    """Tests for serialization per identity."""

    def test_same_identity_is_serialized(self, lock_cache):
        lock = make_lock(lock_cache)
        events = []

        async def scenario():
            return await asyncio.gather(
                lock.with_lock('9876543210', critical_section, events, 'a'),
                lock.with_lock('9876543210', critical_section, events, 'b'),
            )

        assert async_to_sync(scenario)() == ['a', 'b']
        first = events[0].split(':')[0]
        assert events[1] == f'{first}:end'

    def test_different_identities_overlap(self, lock_cache):
        lock = make_lock(lock_cache)
        events = []

        async def scenario():
            await asyncio.gather(
                lock.with_lock('9876543210', critical_section, events, 'a'),
                lock.with_lock('9123456780', critical_section, events, 'b'),
            )

        async_to_sync(scenario)()
        assert sorted(events[:2]) == ['a:start', 'b:start']

    def test_lease_released_after_error(self, lock_cache):
        lock = make_lock(lock_cache)

        async def boom():
            raise ValueError('handler failed')

        with pytest.raises(ValueError):
            async_to_sync(lock.with_lock)('9876543210', boom)

        assert lock_cache.get('lead_lock:9876543210') is None


class TestTimeout:

    def test_timeout_proceeds_without_lock(self, lock_cache):
        lock = make_lock(lock_cache, max_attempts=3, poll_interval=0.001)
        lock_cache.add('lead_lock:9876543210', {'token': 'someone-else'}, timeout=30)

        async def write():
            return 'written'

        assert async_to_sync(lock.with_lock)('9876543210', write) == 'written'
        # The other holder's lease is untouched
        assert lock_cache.get('lead_lock:9876543210') == {'token': 'someone-else'}

    def test_strict_mode_raises(self, lock_cache):
        lock = make_lock(lock_cache, max_attempts=3, poll_interval=0.001, strict=True)
        lock_cache.add('lead_lock:9876543210', {'token': 'someone-else'}, timeout=30)
        fn = MagicMock()

        with pytest.raises(LeaseTimeoutError) as exc_info:
            async_to_sync(lock.with_lock)('9876543210', fn)

        assert exc_info.value.attempts == 3
        fn.assert_not_called()


class TestRelease:
    """Tests for token-checked release and store failures."""

    def test_release_requires_matching_token(self, lock_cache):
        lock = make_lock(lock_cache)
        token = async_to_sync(lock.acquire)('9876543210')
        assert token is not None

        # Lease expired and was taken by another holder
        lock_cache.set('lead_lock:9876543210', {'token': 'someone-else'}, timeout=30)
        async_to_sync(lock.release)('9876543210', token)

        assert lock_cache.get('lead_lock:9876543210') == {'token': 'someone-else'}

    def test_release_with_matching_token(self, lock_cache):
        lock = make_lock(lock_cache)
        token = async_to_sync(lock.acquire)('9876543210')

        lease = lock_cache.get('lead_lock:9876543210')
        assert lease['token'] == token
        assert lease['ttl'] == 30

        async_to_sync(lock.release)('9876543210', token)
        assert lock_cache.get('lead_lock:9876543210') is None

    def test_unreachable_store_degrades_to_unlocked(self):
        cache = MagicMock()
        cache.aadd.side_effect = ConnectionError('redis down')
        lock = make_lock(cache)

        async def write():
            return 'written'

        assert async_to_sync(lock.with_lock)('9876543210', write) == 'written'
        cache.adelete.assert_not_called()

    def test_empty_identity_runs_unlocked(self, lock_cache):
        lock = make_lock(lock_cache)

        async def scenario():
            async with lock.hold('') as token:
                return token

        assert async_to_sync(scenario)() is None
