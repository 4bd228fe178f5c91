"""
Keyed advisory locks for per-(site, period) and per-digest exclusion.

Every key maps to an in-process ``asyncio.Lock`` that is created on first use
and dropped once nobody holds or waits for it. When a Redis client is given,
the holder additionally takes a Redis lease (``SET key token NX PX ttl``) so
that several worker processes sharing one store also exclude each other.
While the block runs, a background task renews the lease every third of its
TTL with a compare-and-PEXPIRE script, so a long anchor retry loop keeps the
lease for as long as it needs it. The lease is released with a
compare-and-delete script so an expired lease that another process
re-acquired is never deleted.

Key helpers:
- aggregation_key(site_id, period): ``agg:{site}:{period}``
- anchor_key(site_id, day): ``anchor:{site}:{day}``

CHANGELOG:
- 2026-10-19: Renew held leases in the background (STORY-118)
- 2026-10-03: Add optional Redis lease backing (STORY-109)
- 2026-10-03: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator

import redis.asyncio as redis

from iot_oracle.src.errors import LockTimeoutError

logger = logging.getLogger(__name__)

_DEFAULT_NAMESPACE = "iot-oracle:lock"
_DEFAULT_POLL_S = 0.1

# Deletes the lease only if it still carries our token.
_RELEASE_SCRIPT = """\
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Extends the lease only if it still carries our token.
_RENEW_SCRIPT = """\
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


def aggregation_key(site_id: str, period: str) -> str:
    """Lock key for aggregating one site over one hour or day."""
    return f"agg:{site_id}:{period}"


def anchor_key(site_id: str, day: str) -> str:
    """Lock key for anchoring one site's digest of one day."""
    return f"anchor:{site_id}:{day}"


def connect_redis(url: str) -> redis.Redis:
    """Create an async Redis client for lease operations."""
    return redis.from_url(url)


class KeyedLocks:
    """Named mutual-exclusion locks, optionally backed by Redis leases.

    Args:
        redis_client: Async Redis client. ``None`` keeps the locks
            process-local.
        ttl_s: Lease time-to-live; bounds how long a crashed holder blocks
            other processes. Live holders renew it every ``ttl_s / 3``.
        wait_s: Maximum time to wait for a Redis lease before raising
            :class:`LockTimeoutError`.
        poll_s: Interval between lease acquisition attempts.
        namespace: Prefix for Redis lease keys.

    Usage::

        locks = KeyedLocks()
        async with locks.hold(anchor_key("PRJ001", "2024-01-15")):
            ...
    """

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        *,
        ttl_s: float = 60.0,
        wait_s: float = 30.0,
        poll_s: float = _DEFAULT_POLL_S,
        namespace: str = _DEFAULT_NAMESPACE,
    ) -> None:
        self._redis = redis_client
        self._ttl_ms = max(1, int(ttl_s * 1000))
        self._wait_s = wait_s
        self._poll_s = poll_s
        self._namespace = namespace
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def distributed(self) -> bool:
        """True when a Redis lease backs every lock."""
        return self._redis is not None

    @property
    def active_keys(self) -> list[str]:
        """Keys currently held or waited on in this process."""
        return sorted(self._locks)

    def locked(self, key: str) -> bool:
        """Return whether *key* is currently held in this process."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for *key* for the duration of the ``async with`` block.

        Raises:
            LockTimeoutError: If the Redis lease cannot be obtained within
                ``wait_s``.
        """
        lock = self._checkout(key)
        try:
            async with lock:
                token = await self._acquire_lease(key) if self._redis is not None else None
                renewer = (
                    asyncio.create_task(self._renew_lease(key, token))
                    if token is not None
                    else None
                )
                try:
                    yield
                finally:
                    if renewer is not None:
                        renewer.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await renewer
                    if token is not None:
                        await self._release_lease(key, token)
        finally:
            self._checkin(key)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        remaining = self._refs[key] - 1
        if remaining:
            self._refs[key] = remaining
        else:
            del self._refs[key]
            del self._locks[key]

    async def _acquire_lease(self, key: str) -> str:
        assert self._redis is not None
        name = f"{self._namespace}:{key}"
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_s

        while True:
            try:
                acquired = await self._redis.set(name, token, nx=True, px=self._ttl_ms)
            except redis.RedisError as exc:
                raise LockTimeoutError(f"lease backend unavailable for '{key}': {exc}") from exc
            if acquired:
                logger.debug("Acquired lease %s", name)
                return token
            if loop.time() >= deadline:
                raise LockTimeoutError(
                    f"could not acquire lease '{key}' within {self._wait_s:.1f}s"
                )
            await asyncio.sleep(self._poll_s)

    async def _renew_lease(self, key: str, token: str) -> None:
        assert self._redis is not None
        name = f"{self._namespace}:{key}"
        interval_s = self._ttl_ms / 3000

        while True:
            await asyncio.sleep(interval_s)
            try:
                renewed = await self._redis.eval(_RENEW_SCRIPT, 1, name, token, self._ttl_ms)
            except redis.RedisError:
                # Retried on the next tick while the lease has TTL left.
                logger.warning("Failed to renew lease %s", name, exc_info=True)
                continue
            if not renewed:
                logger.error("Lease %s was lost before release", name)
                return
            logger.debug("Renewed lease %s", name)

    async def _release_lease(self, key: str, token: str) -> None:
        assert self._redis is not None
        name = f"{self._namespace}:{key}"
        try:
            await self._redis.eval(_RELEASE_SCRIPT, 1, name, token)
        except redis.RedisError:
            # The lease expires on its own after ttl_s.
            logger.warning("Failed to release lease %s", name, exc_info=True)
