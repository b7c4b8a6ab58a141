"""Store connections for a scheduler process.

Manifesto:
    A subscribed client cannot issue ordinary commands, so a scheduler
    needs two clients: one for commands (``scheduler`` role) and one parked
    in subscribe mode (``listener`` role). Both are owned by a single
    ``RedisConnections`` object with an explicit lifecycle instead of living
    in module globals.

Lifecycle::

    RedisConnections(url, db=0)
        │ open()        create both clients (idempotent) and ping
        │ replace(role) recreate one or both clients explicitly
        │ close()       close both, return the handles that were open
        ▼

Every ``redis.exceptions.RedisError`` raised by a command issued through
this module is re-raised as ``StoreError`` with the key/channel attached.

Tags:
    keybeat, redis, connections, lifecycle, keyspace-notifications

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from keybeat.core.errors import SchedulerStateError, StoreError
from keybeat.core.logging import get_logger

logger = get_logger(__name__)

SCHEDULER_ROLE = "scheduler"
LISTENER_ROLE = "listener"
ROLES = (SCHEDULER_ROLE, LISTENER_ROLE)

KEYSPACE_EVENTS_CONFIG = "notify-keyspace-events"

ClientFactory = Callable[[str, int], Any]


def _default_client_factory(url: str, db: int) -> Any:
    return aioredis.from_url(url, db=db, decode_responses=True)


@contextmanager
def store_errors(operation: str, **context: Any) -> Iterator[None]:
    """Re-raise store client failures as ``StoreError``.

    Example:
        with store_errors("PTTL", key=key):
            ttl = await client.pttl(key)
    """
    try:
        yield
    except RedisError as e:
        raise StoreError(f"{operation} failed: {e}", cause=e).with_context(**context) from e


def keyspace_events_enabled(flags: str | None) -> bool:
    """Whether a ``notify-keyspace-events`` value delivers expired-key events.

    ``E`` (keyevent channel) must be present together with ``x`` (expired)
    or ``A`` (alias for all classes, which includes ``x``).
    """
    flags = flags or ""
    return "E" in flags and ("x" in flags or "A" in flags)


class RedisConnections:
    """Owner of the scheduler-role and listener-role store clients.

    Example:
        >>> async with RedisConnections("redis://127.0.0.1:6379") as conns:
        ...     await conns.enable_keyspace_events()
        ...     await conns.scheduler.set("k", "v")
    """

    def __init__(
        self,
        url: str,
        *,
        db: int = 0,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.url = url
        self.db = db
        self._client_factory = client_factory or _default_client_factory
        self._clients: dict[str, Any] = {}

    @property
    def is_open(self) -> bool:
        return bool(self._clients)

    def _client(self, role: str) -> Any:
        client = self._clients.get(role)
        if client is None:
            raise SchedulerStateError(
                f"No open {role} connection, call open() first"
            ).with_context(role=role)
        return client

    @property
    def scheduler(self) -> Any:
        """Client for ordinary commands."""
        return self._client(SCHEDULER_ROLE)

    @property
    def listener(self) -> Any:
        """Client reserved for subscribe mode."""
        return self._client(LISTENER_ROLE)

    async def open(self) -> RedisConnections:
        """Create any missing client. Calling it again is a no-op."""
        created = [role for role in ROLES if role not in self._clients]
        for role in created:
            self._clients[role] = self._client_factory(self.url, self.db)

        if created:
            with store_errors("PING"):
                await self._clients[SCHEDULER_ROLE].ping()
            logger.debug("connections_opened", db=self.db, roles=created)
        return self

    async def replace(self, role: str | None = None) -> RedisConnections:
        """Close and recreate the client for ``role`` (both when None)."""
        if role is not None and role not in ROLES:
            raise ValueError(f"Unknown connection role {role!r}, expected one of {ROLES}")

        for name in (ROLES if role is None else (role,)):
            old = self._clients.pop(name, None)
            if old is not None:
                await self._close_client(name, old)
            self._clients[name] = self._client_factory(self.url, self.db)

        logger.info("connections_replaced", role=role or "all")
        return self

    async def close(self) -> dict[str, Any]:
        """Close every client.

        Returns:
            Mapping of role to the client handle that was open (empty when
            nothing was open)
        """
        prior = dict(self._clients)
        self._clients.clear()
        for role, client in prior.items():
            await self._close_client(role, client)

        if prior:
            logger.debug("connections_closed", roles=list(prior))
        return prior

    async def _close_client(self, role: str, client: Any) -> None:
        try:
            await client.aclose()
        except RedisError as e:
            logger.warning("connection_close_failed", role=role, error=str(e))

    # ── Store-wide commands ──────────────────────────────────────────

    async def keyspace_event_flags(self) -> str:
        with store_errors("CONFIG GET", key=KEYSPACE_EVENTS_CONFIG):
            config = await self.scheduler.config_get(KEYSPACE_EVENTS_CONFIG)
        return config.get(KEYSPACE_EVENTS_CONFIG, "") or ""

    async def enable_keyspace_events(self, flags: str = "xE") -> None:
        """Turn on expired-key notifications (``CONFIG SET``)."""
        with store_errors("CONFIG SET", key=KEYSPACE_EVENTS_CONFIG):
            await self.scheduler.config_set(KEYSPACE_EVENTS_CONFIG, flags)
        logger.info("keyspace_events_enabled", flags=flags)

    async def is_keyspace_events_enabled(self) -> bool:
        return keyspace_events_enabled(await self.keyspace_event_flags())

    async def publish(self, channel: str, message: str) -> int:
        """Publish ``message`` and return the number of receivers."""
        with store_errors("PUBLISH", channel=channel):
            return await self.scheduler.publish(channel, message)

    async def __aenter__(self) -> RedisConnections:
        return await self.open()

    async def __aexit__(self, *args) -> None:
        await self.close()


__all__ = [
    "RedisConnections",
    "store_errors",
    "keyspace_events_enabled",
    "SCHEDULER_ROLE",
    "LISTENER_ROLE",
]
