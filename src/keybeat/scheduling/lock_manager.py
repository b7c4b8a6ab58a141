"""Distributed arming and locking protocol on top of key expiry.

Manifesto:
    Many scheduler processes share one store, yet each schedule must fire at
    most once per computed interval. The store's atomic conditional set
    (``SET key value NX PX ttl``) is the only consensus primitive needed:
    the process whose set succeeds wins, everyone else observes the key and
    backs off. Expiry of the armed key *is* the trigger.

Protocol::

    Instance A                           Store                    Instance B
    ──────────                           ─────                    ──────────
    schedule_next_run(def) ──SET NX PX──► expiry key  ◄──SET NX PX── schedule_next_run(def)
         armed=True  ◄──────── OK                         nil ───────►  armed=False
                                 ... ttl elapses ...
                          __keyevent@0__:expired ──► both subscribers
    acquire_work_lock ──SET NX PX──► work lock ◄──SET NX PX── acquire_work_lock
         handle      ◄──── OK                       nil ─────►  None (skip)
    invoke, re-arm, release (compare-and-delete)

Lock Types:
    1. Registration lock (``r:schedules:next:<name>``): serializes arming
    2. Invocation lock (``r:schedules:work:<name>``): one runner per expiry
    3. Concurrency lock (``r:locks:<resource>:<name>``): general purpose

    All locks carry a TTL so a crashed holder cannot deadlock the schedule,
    and release only deletes the key while it still holds the holder's token.

Tags:
    keybeat, scheduling, distributed-locks, TTL, redis, expiry

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from keybeat.core.logging import get_logger
from keybeat.scheduling.connections import RedisConnections, store_errors
from keybeat.scheduling.keys import KeyNamer
from keybeat.scheduling.registry import coerce_definition
from keybeat.scheduling.timers import next_run_time_for

logger = get_logger(__name__)

# Delete KEYS[1] only while it still holds ARGV[1]
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def _now() -> datetime:
    return datetime.now(UTC)


def ttl_until(moment: datetime, now: datetime | None = None) -> int:
    """Milliseconds from ``now`` until ``moment``, rounded up, at least 1."""
    delta = moment - (now or _now())
    return max(1, math.ceil(delta.total_seconds() * 1000))


@dataclass(frozen=True)
class ScheduledRun:
    """Outcome of an arming attempt.

    ``armed`` is True only for the process whose conditional set succeeded.
    A losing process still gets the computed ``next_run_at``.
    """

    name: str
    next_run_at: datetime
    armed: bool
    ttl_ms: int


@dataclass
class LockHandle:
    """A held lock. Release deletes the key only if it still holds ``token``."""

    key: str
    token: str
    ttl_ms: int
    connections: RedisConnections = field(repr=False)
    released: bool = False

    async def release(self) -> bool:
        """Release the lock.

        Returns:
            True if this call deleted the key, False if it had already
            expired, been taken over or been released
        """
        if self.released:
            return False

        with store_errors("EVAL", key=self.key):
            deleted = await self.connections.scheduler.eval(RELEASE_SCRIPT, 1, self.key, self.token)
        self.released = True

        if not deleted:
            logger.debug("lock_release_noop", key=self.key)
        return bool(deleted)


class LockManager:
    """Arming and lock primitives for one scheduler process.

    Example:
        >>> manager = LockManager(connections, KeyNamer(), instance_id="worker-1")
        >>> if not await manager.is_already_scheduled(definition):
        ...     run = await manager.schedule_next_run(definition)
        ...     run.armed
        True
        >>> async with manager.work_lock("sendEmail") as handle:
        ...     if handle is None:
        ...         ...  # another instance is running it
    """

    def __init__(
        self,
        connections: RedisConnections,
        keys: KeyNamer | None = None,
        *,
        lock_ttl: int = 1000,
        instance_id: str | None = None,
    ) -> None:
        """Initialize lock manager.

        Args:
            connections: Open store connections
            keys: Key namer (defaults to the standard layout)
            lock_ttl: Default lock TTL in milliseconds
            instance_id: Unique identifier for this scheduler instance.
                        Auto-generated if not provided.
        """
        if lock_ttl <= 0:
            raise ValueError("lock_ttl must be a positive number of milliseconds")

        self.connections = connections
        self.keys = keys or KeyNamer()
        self.lock_ttl = lock_ttl
        self.instance_id = instance_id or str(uuid4())

    # === Expiry keys ===

    async def is_already_scheduled(self, definition: Any) -> bool:
        """Whether the schedule's expiry key exists with a remaining TTL.

        Raises:
            InvalidScheduleDefinition: Before any store I/O
            StoreError: If PTTL fails
        """
        definition = coerce_definition(definition)
        key = self.keys.expiry_key(definition.name)

        with store_errors("PTTL", key=key, schedule=definition.name):
            ttl = await self.connections.scheduler.pttl(key)

        # -2 missing key, -1 key without TTL
        return ttl is not None and ttl > 0

    async def schedule_next_run(
        self,
        definition: Any,
        *,
        last_run_at: datetime | None = None,
    ) -> ScheduledRun:
        """Arm the schedule's expiry key to fire at its next run time.

        Args:
            definition: Schedule to arm
            last_run_at: Base instant (default: the definition's, else now)

        Returns:
            ScheduledRun with ``armed=True`` only when this call created the key

        Raises:
            InvalidScheduleDefinition: Before any store I/O
            InvalidPattern: If the interval matches no grammar
            StoreError: If SET fails
        """
        definition = coerce_definition(definition)
        next_run_at = next_run_time_for(
            definition.interval,
            last_run_at or definition.last_run_at,
            definition.timezone,
        )
        ttl_ms = ttl_until(next_run_at)
        key = self.keys.expiry_key(definition.name)

        with store_errors("SET", key=key, schedule=definition.name):
            armed = bool(
                await self.connections.scheduler.set(key, self.instance_id, px=ttl_ms, nx=True)
            )

        if armed:
            logger.info(
                "schedule_armed",
                schedule=definition.name,
                next_run_at=next_run_at.isoformat(),
                ttl_ms=ttl_ms,
            )
        else:
            logger.debug("schedule_already_armed", schedule=definition.name)

        return ScheduledRun(
            name=definition.name, next_run_at=next_run_at, armed=armed, ttl_ms=ttl_ms
        )

    # === Locks ===

    async def _acquire(self, key: str, ttl: int | None) -> LockHandle | None:
        ttl_ms = ttl or self.lock_ttl
        token = f"{self.instance_id}:{uuid4().hex}"

        with store_errors("SET", key=key, instance_id=self.instance_id):
            acquired = await self.connections.scheduler.set(key, token, px=ttl_ms, nx=True)

        if not acquired:
            logger.debug("lock_busy", key=key)
            return None

        logger.debug("lock_acquired", key=key, ttl_ms=ttl_ms)
        return LockHandle(key=key, token=token, ttl_ms=ttl_ms, connections=self.connections)

    async def acquire_schedule_lock(self, name: str, ttl: int | None = None) -> LockHandle | None:
        """Try to take the registration lock for ``name``.

        Returns:
            LockHandle if acquired, None if another holder has it
        """
        return await self._acquire(self.keys.schedule_lock_key(name), ttl)

    async def acquire_work_lock(self, name: str, ttl: int | None = None) -> LockHandle | None:
        """Try to take the invocation lock for ``name``."""
        return await self._acquire(self.keys.work_lock_key(name), ttl)

    async def acquire_concurrency_lock(
        self, resource: str, name: str, ttl: int | None = None
    ) -> LockHandle | None:
        return await self._acquire(self.keys.concurrency_lock_key(resource, name), ttl)

    @asynccontextmanager
    async def _scoped(self, handle: LockHandle | None) -> AsyncIterator[LockHandle | None]:
        try:
            yield handle
        finally:
            if handle is not None:
                await handle.release()

    @asynccontextmanager
    async def schedule_lock(
        self, name: str, ttl: int | None = None
    ) -> AsyncIterator[LockHandle | None]:
        """Registration lock held for the ``async with`` block (None if busy)."""
        async with self._scoped(await self.acquire_schedule_lock(name, ttl)) as handle:
            yield handle

    @asynccontextmanager
    async def work_lock(
        self, name: str, ttl: int | None = None
    ) -> AsyncIterator[LockHandle | None]:
        """Invocation lock held for the ``async with`` block (None if busy)."""
        async with self._scoped(await self.acquire_work_lock(name, ttl)) as handle:
            yield handle

    async def lock_holder(self, key: str) -> str | None:
        """Value stored at a lock or expiry key (holder token / instance id)."""
        with store_errors("GET", key=key):
            return await self.connections.scheduler.get(key)

    async def clear_schedule_keys(self) -> int:
        """Delete every schedule-owned key and schedule lock.

        Returns:
            Number of keys deleted
        """
        client = self.connections.scheduler
        deleted = 0

        for pattern in (self.keys.schedule_pattern(), self.keys.schedule_lock_pattern()):
            with store_errors("SCAN", key=pattern):
                found = [key async for key in client.scan_iter(match=pattern)]
                if found:
                    deleted += await client.delete(*found)

        logger.info("schedule_keys_cleared", deleted=deleted)
        return deleted


__all__ = ["LockManager", "LockHandle", "ScheduledRun", "RELEASE_SCRIPT", "ttl_until"]
