"""Expired-key subscription.

Manifesto:
    The scheduler never polls. Armed expiry keys lapse inside the store, and
    the store announces each lapse on ``__keyevent@<db>__:expired``. The
    subscriber turns that channel into calls of ``handle_expired_key``.

    ``subscribe()`` returns only once the store has acknowledged the
    subscription, so anything armed after it returns cannot expire unseen.

Flow::

    subscribe(handler)
        │ SUBSCRIBE __keyevent@0__:expired
        │ wait for the "subscribe" acknowledgement ──► ExpirySubscription
        ▼
    background task: async for message in pubsub.listen()
        └── handler(channel, key)   (sync or async, store order)
              └── raises? log "expiry_handler_error", report, keep going

Tags:
    keybeat, redis, pub-sub, keyspace-notifications, async

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from redis.exceptions import RedisError

from keybeat.core.errors import StoreError
from keybeat.core.logging import get_logger
from keybeat.scheduling.connections import RedisConnections, store_errors
from keybeat.scheduling.keys import expired_channel_for

logger = get_logger(__name__)

ExpiredKeyHandler = Callable[[str, str], Awaitable[Any] | Any]
ErrorObserver = Callable[[Exception], Any]


@dataclass
class ExpirySubscription:
    """An acknowledged subscription and its delivery task."""

    channel: str
    task: asyncio.Task
    pubsub: Any = field(repr=False)
    closed: bool = False

    async def close(self) -> None:
        """Unsubscribe and stop delivering messages."""
        if self.closed:
            return
        self.closed = True

        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass

        try:
            await self.pubsub.unsubscribe(self.channel)
            await self.pubsub.aclose()
        except RedisError as e:
            logger.warning("expiry_unsubscribe_failed", channel=self.channel, error=str(e))

        logger.debug("expiry_unsubscribed", channel=self.channel)


class ExpirySubscriber:
    """Subscribes the listener connection to expired-key events.

    Example::

        subscriber = ExpirySubscriber(connections, db=0)

        async def on_expired(channel: str, key: str) -> None:
            print(f"{key} expired")

        subscription = await subscriber.subscribe(on_expired)
        ...
        await subscription.close()
    """

    def __init__(
        self,
        connections: RedisConnections,
        *,
        db: int | None = 0,
        on_error: ErrorObserver | None = None,
        ack_timeout: float = 5.0,
    ) -> None:
        self.connections = connections
        self.channel = expired_channel_for(db)
        self.on_error = on_error
        self.ack_timeout = ack_timeout

    async def subscribe(self, handle_expired_key: ExpiredKeyHandler) -> ExpirySubscription:
        """Subscribe and return once the store acknowledged it.

        Raises:
            StoreError: If SUBSCRIBE fails or no acknowledgement arrives
                within ``ack_timeout`` seconds
        """
        pubsub = self.connections.listener.pubsub()

        with store_errors("SUBSCRIBE", channel=self.channel):
            await pubsub.subscribe(self.channel)
            acknowledged = await self._wait_for_ack(pubsub)

        task = asyncio.create_task(
            self._listen(pubsub, handle_expired_key), name=f"keybeat-expiry:{acknowledged}"
        )
        logger.info("expiry_subscribed", channel=acknowledged)
        return ExpirySubscription(channel=acknowledged, task=task, pubsub=pubsub)

    async def _wait_for_ack(self, pubsub: Any) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ack_timeout

        while (remaining := deadline - loop.time()) > 0:
            message = await pubsub.get_message(timeout=remaining)
            if message is not None and message.get("type") == "subscribe":
                return message["channel"]

        raise StoreError("Timed out waiting for subscription acknowledgement").with_context(
            channel=self.channel
        )

    async def _listen(self, pubsub: Any, handle_expired_key: ExpiredKeyHandler) -> None:
        """Background task delivering expired keys in store order."""
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self._deliver(handle_expired_key, message["channel"], message["data"])
        except asyncio.CancelledError:
            raise
        except RedisError as e:
            error = StoreError(f"Expiry subscription lost: {e}", cause=e).with_context(
                channel=self.channel
            )
            logger.error("expiry_listener_error", channel=self.channel, error=str(e))
            self._report(error)

    async def _deliver(self, handle_expired_key: ExpiredKeyHandler, channel: str, key: str) -> None:
        try:
            result = handle_expired_key(channel, key)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("expiry_handler_error", channel=channel, key=key, error=str(e))
            self._report(e)

    def _report(self, error: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.warning("error_observer_failed", error=str(e))


__all__ = ["ExpirySubscriber", "ExpirySubscription"]
