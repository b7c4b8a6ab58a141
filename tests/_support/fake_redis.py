"""
In-memory asyncio test double for the store commands keybeat issues.

One ``FakeRedisServer`` holds the keyspace; any number of ``FakeRedis``
clients (scheduler role, listener role, a second "process") share it. Keys
with a TTL really expire on the running event loop and, when
``notify-keyspace-events`` allows it, announce themselves on
``__keyevent@<db>__:expired`` exactly like the real server.

Usage:
    server = FakeRedisServer()
    connections = RedisConnections("redis://fake", client_factory=server.client_factory)

    server.expire_now("r:schedules:keys:sendEmail")   # fire without waiting
    server.fail_with = ConnectionError("down")        # every command raises
"""

from __future__ import annotations

import asyncio
import fnmatch
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

from keybeat.scheduling.lock_manager import RELEASE_SCRIPT


@dataclass
class _Entry:
    value: Any
    expires_at: float | None = None
    timer: asyncio.TimerHandle | None = None


class FakeRedisServer:
    """Shared keyspace, config and pub/sub registry."""

    def __init__(self, notify_keyspace_events: str = "") -> None:
        self.data: dict[str, _Entry] = {}
        self.config: dict[str, str] = {"notify-keyspace-events": notify_keyspace_events}
        self.subscribers: list[FakePubSub] = []
        self.published: list[tuple[str, str]] = []
        self.commands: list[tuple[Any, ...]] = []
        self.clients: list[FakeRedis] = []
        self.fail_with: RedisError | None = None
        self.db = 0

    def client_factory(self, url: str, db: int) -> FakeRedis:
        self.db = db
        client = FakeRedis(self)
        self.clients.append(client)
        return client

    # ── Keyspace ─────────────────────────────────────────────────────

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()

    def _check(self, *command: Any) -> None:
        self.commands.append(command)
        if self.fail_with is not None:
            raise self.fail_with

    def _live(self, key: str) -> _Entry | None:
        entry = self.data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._now():
            self._expire(key, entry)
            return None
        return entry

    def _drop(self, key: str) -> bool:
        entry = self.data.pop(key, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        return True

    def _expire(self, key: str, entry: _Entry) -> None:
        if self.data.get(key) is not entry:
            return
        self._drop(key)
        flags = self.config.get("notify-keyspace-events", "")
        if "E" in flags and ("x" in flags or "A" in flags):
            self.publish(f"__keyevent@{self.db}__:expired", key)

    def put(self, key: str, value: Any, px: int | None = None) -> None:
        self._drop(key)
        entry = _Entry(value=value)
        if px is not None:
            loop = asyncio.get_running_loop()
            entry.expires_at = loop.time() + px / 1000
            entry.timer = loop.call_later(px / 1000, self._expire, key, entry)
        self.data[key] = entry

    def expire_now(self, key: str) -> bool:
        """Expire ``key`` immediately (as if its TTL elapsed)."""
        entry = self.data.get(key)
        if entry is None:
            return False
        self._expire(key, entry)
        return True

    def keys(self) -> list[str]:
        return [key for key in list(self.data) if self._live(key) is not None]

    # ── Pub/Sub ──────────────────────────────────────────────────────

    def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        receivers = [s for s in self.subscribers if channel in s.channels]
        for pubsub in receivers:
            pubsub.queue.put_nowait(
                {"type": "message", "pattern": None, "channel": channel, "data": message}
            )
        return len(receivers)


class FakeRedis:
    """Client bound to a ``FakeRedisServer`` (decode_responses=True semantics)."""

    def __init__(self, server: FakeRedisServer) -> None:
        self.server = server
        self.closed = False

    async def ping(self) -> bool:
        self.server._check("PING")
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def set(
        self, key: str, value: Any, px: int | None = None, nx: bool = False
    ) -> bool | None:
        self.server._check("SET", key, value, px, nx)
        if nx and self.server._live(key) is not None:
            return None
        self.server.put(key, str(value), px=px)
        return True

    async def get(self, key: str) -> str | None:
        self.server._check("GET", key)
        entry = self.server._live(key)
        return entry.value if entry else None

    async def pttl(self, key: str) -> int:
        self.server._check("PTTL", key)
        entry = self.server._live(key)
        if entry is None:
            return -2
        if entry.expires_at is None:
            return -1
        return max(1, int((entry.expires_at - self.server._now()) * 1000))

    async def delete(self, *keys: str) -> int:
        self.server._check("DEL", *keys)
        return sum(1 for key in keys if self.server._live(key) and self.server._drop(key))

    async def scan_iter(self, match: str | None = None):
        self.server._check("SCAN", match)
        for key in self.server.keys():
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def eval(self, script: str, numkeys: int, *args: Any) -> int:
        self.server._check("EVAL", *args)
        if script != RELEASE_SCRIPT:
            raise NotImplementedError("FakeRedis only understands the lock release script")
        key, token = args[0], args[numkeys]
        entry = self.server._live(key)
        if entry is not None and entry.value == token:
            self.server._drop(key)
            return 1
        return 0

    async def config_get(self, name: str) -> dict[str, str]:
        self.server._check("CONFIG GET", name)
        return {name: self.server.config.get(name, "")}

    async def config_set(self, name: str, value: str) -> bool:
        self.server._check("CONFIG SET", name, value)
        self.server.config[name] = value
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.server._check("PUBLISH", channel)
        return self.server.publish(channel, message)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self.server)


class FakePubSub:
    def __init__(self, server: FakeRedisServer) -> None:
        self.server = server
        self.channels: set[str] = set()
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.closed = False
        self.acknowledge = True

    async def subscribe(self, *channels: str) -> None:
        self.server._check("SUBSCRIBE", *channels)
        for channel in channels:
            self.channels.add(channel)
            if self.acknowledge:
                self.queue.put_nowait(
                    {"type": "subscribe", "pattern": None, "channel": channel, "data": 1}
                )
        if self not in self.server.subscribers:
            self.server.subscribers.append(self)

    async def unsubscribe(self, *channels: str) -> None:
        for channel in channels or tuple(self.channels):
            self.channels.discard(channel)
        if not self.channels and self in self.server.subscribers:
            self.server.subscribers.remove(self)

    async def get_message(
        self, ignore_subscribe_messages: bool = False, timeout: float | None = 0.0
    ) -> dict[str, Any] | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout or 0.001)
        except TimeoutError:
            return None

    async def listen(self):
        while not self.closed:
            yield await self.queue.get()

    async def aclose(self) -> None:
        self.closed = True
        await self.unsubscribe()
