"""Tests for ExpirySubscriber."""

import asyncio

import pytest

from keybeat.core.errors import StoreError
from keybeat.scheduling.listener import ExpirySubscriber


async def until(predicate, timeout: float = 1.0) -> None:
    async def wait():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(wait(), timeout)


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_returns_after_acknowledgement(self, connections, fake_server):
        subscriber = ExpirySubscriber(connections, db=0)
        subscription = await subscriber.subscribe(lambda channel, key: None)
        try:
            assert subscription.channel == "__keyevent@0__:expired"
            assert len(fake_server.subscribers) == 1
            assert not subscription.task.done()
        finally:
            await subscription.close()

    @pytest.mark.asyncio
    async def test_channel_follows_db(self, connections):
        subscription = await ExpirySubscriber(connections, db=4).subscribe(lambda c, k: None)
        try:
            assert subscription.channel == "__keyevent@4__:expired"
        finally:
            await subscription.close()

    @pytest.mark.asyncio
    async def test_times_out_without_acknowledgement(self, connections, monkeypatch):
        listener = connections.listener
        make_pubsub = listener.pubsub

        def silent_pubsub():
            pubsub = make_pubsub()
            pubsub.acknowledge = False
            return pubsub

        monkeypatch.setattr(listener, "pubsub", silent_pubsub)

        subscriber = ExpirySubscriber(connections, ack_timeout=0.05)
        with pytest.raises(StoreError):
            await subscriber.subscribe(lambda c, k: None)


class TestDelivery:
    @pytest.mark.asyncio
    async def test_delivers_expired_keys_in_order(self, connections, fake_server):
        await connections.enable_keyspace_events()
        received = []
        subscription = await ExpirySubscriber(connections).subscribe(
            lambda channel, key: received.append((channel, key))
        )
        try:
            await connections.scheduler.set("a", "1", px=10)
            await connections.scheduler.set("b", "1", px=30)
            await until(lambda: len(received) == 2)
            assert received == [
                ("__keyevent@0__:expired", "a"),
                ("__keyevent@0__:expired", "b"),
            ]
        finally:
            await subscription.close()

    @pytest.mark.asyncio
    async def test_async_handler(self, connections, fake_server):
        await connections.enable_keyspace_events()
        received = []

        async def handler(channel, key):
            received.append(key)

        subscription = await ExpirySubscriber(connections).subscribe(handler)
        try:
            await connections.scheduler.set("k", "1", px=1000)
            fake_server.expire_now("k")
            await until(lambda: received == ["k"])
        finally:
            await subscription.close()

    @pytest.mark.asyncio
    async def test_handler_errors_are_reported_and_loop_survives(self, connections, fake_server):
        await connections.enable_keyspace_events()
        errors, received = [], []

        def handler(channel, key):
            if key == "bad":
                raise RuntimeError("handler blew up")
            received.append(key)

        subscription = await ExpirySubscriber(connections, on_error=errors.append).subscribe(
            handler
        )
        try:
            await connections.scheduler.set("bad", "1", px=1000)
            await connections.scheduler.set("good", "1", px=1000)
            fake_server.expire_now("bad")
            fake_server.expire_now("good")
            await until(lambda: received == ["good"])

            assert len(errors) == 1
            assert isinstance(errors[0], RuntimeError)
            assert not subscription.task.done()
        finally:
            await subscription.close()

    @pytest.mark.asyncio
    async def test_no_events_when_notifications_disabled(self, connections, fake_server):
        received = []
        subscription = await ExpirySubscriber(connections).subscribe(
            lambda channel, key: received.append(key)
        )
        try:
            await connections.scheduler.set("k", "1", px=1000)
            fake_server.expire_now("k")
            await asyncio.sleep(0.02)
            assert received == []
        finally:
            await subscription.close()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_unsubscribes_and_stops_task(self, connections, fake_server):
        subscription = await ExpirySubscriber(connections).subscribe(lambda c, k: None)
        await subscription.close()

        assert subscription.task.done()
        assert fake_server.subscribers == []
        await subscription.close()
