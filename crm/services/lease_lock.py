"""
Lease-based lock keyed by lead identity, shared by every process instance.

The lease lives in the ``locks`` cache (Redis in production). Acquisition is
the cache's atomic add-if-absent, so exactly one holder wins; each lease
carries a TTL so a crashed holder's lock expires on its own.
"""
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)

KEY_PREFIX = 'lead_lock'


class LeaseTimeoutError(Exception):
    """Raised in strict mode when a lease could not be acquired in time."""

    def __init__(self, identity: str, attempts: int):
        super().__init__(f"Lock for {identity} not acquired after {attempts} attempts")
        self.identity = identity
        self.attempts = attempts


class LeaseLock:
    """
    Blocking-with-timeout mutex over a shared cache.

    On exhausting ``max_attempts`` the guarded function runs anyway, unless
    ``strict`` is set, in which case ``LeaseTimeoutError`` is raised. A lock
    store that cannot be reached degrades to unlocked execution.
    """

    def __init__(self, cache=None, ttl: Optional[int] = None,
                 poll_interval: Optional[float] = None,
                 max_attempts: Optional[int] = None,
                 store_timeout: Optional[float] = None,
                 strict: Optional[bool] = None):
        self.cache = cache if cache is not None else caches['locks']
        self.ttl = ttl or settings.LOCK_TTL_SECONDS
        self.poll_interval = poll_interval or settings.LOCK_POLL_INTERVAL_SECONDS
        self.max_attempts = max_attempts or settings.LOCK_MAX_ATTEMPTS
        self.store_timeout = store_timeout or settings.LOCK_STORE_TIMEOUT_SECONDS
        self.strict = settings.LOCK_STRICT if strict is None else strict

    @staticmethod
    def _key(identity: str) -> str:
        return f"{KEY_PREFIX}:{identity}"

    async def _store(self, awaitable: Awaitable) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.store_timeout)

    async def acquire(self, identity: str) -> Optional[str]:
        """
        Take the lease for ``identity``.

        Returns:
            The holder token, or ``None`` when proceeding without the lock

        Raises:
            LeaseTimeoutError: in strict mode, when the lease stays taken
        """
        token = uuid.uuid4().hex
        lease = {'token': token, 'acquired_at': time.time(), 'ttl': self.ttl}

        for attempt in range(1, self.max_attempts + 1):
            try:
                if await self._store(self.cache.aadd(self._key(identity), lease, timeout=self.ttl)):
                    logger.debug(f"Lock acquired: {identity}")
                    return token
            except Exception as e:
                logger.error(f"Lock store error acquiring {identity}, proceeding unlocked: {e!r}")
                return None

            if attempt == 1:
                logger.info(f"Lock busy, waiting: {identity}")
            await asyncio.sleep(self.poll_interval)

        if self.strict:
            raise LeaseTimeoutError(identity, self.max_attempts)
        logger.warning(f"Lock timeout: {identity} - proceeding anyway")
        return None

    async def release(self, identity: str, token: Optional[str]) -> None:
        """Delete the lease only if it still belongs to ``token``."""
        if token is None:
            return
        key = self._key(identity)
        try:
            lease = await self._store(self.cache.aget(key))
            if lease and lease.get('token') == token:
                await self._store(self.cache.adelete(key))
                logger.debug(f"Lock released: {identity}")
            else:
                logger.warning(f"Lease for {identity} expired before release")
        except Exception as e:
            logger.error(f"Lock store error releasing {identity}: {e!r}")

    @asynccontextmanager
    async def hold(self, identity: str):
        if not identity:
            yield None
            return
        token = await self.acquire(identity)
        try:
            yield token
        finally:
            await self.release(identity, token)

    async def with_lock(self, identity: str, fn: Callable[..., Awaitable], *args, **kwargs):
        """Run ``fn`` while holding the lease for ``identity``; always releases."""
        async with self.hold(identity):
            return await fn(*args, **kwargs)
