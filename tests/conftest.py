"""
Shared pytest fixtures and configuration for keybeat tests.

This module provides:
- Registry and settings-cache cleanup for test isolation
- An in-memory store (``fake_server``) and connections bound to it
- Sample perform callables and definitions

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments:

    @pytest.mark.asyncio
    async def test_something(connections, lock_manager):
        ...
"""

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
import pytest_asyncio

from keybeat.core.settings import SchedulerSettings, reset_settings_cache
from keybeat.scheduling.connections import RedisConnections
from keybeat.scheduling.keys import KeyNamer
from keybeat.scheduling.lock_manager import LockManager
from keybeat.scheduling.registry import ScheduleDefinition, clear_registry
from tests._support.fake_redis import FakeRedisServer


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clean_schedule_registry() -> Generator[None, None, None]:
    """Clear the schedule registry before and after each test."""
    clear_registry()
    yield
    clear_registry()


@pytest.fixture(autouse=True)
def clean_settings_cache(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop cached settings and any REDIS_* variables from the environment."""
    import os

    for name in list(os.environ):
        if name.startswith("REDIS_"):
            monkeypatch.delenv(name)
    reset_settings_cache()
    yield
    reset_settings_cache()


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def fake_server() -> FakeRedisServer:
    """Fresh in-memory store with expired-key notifications disabled."""
    return FakeRedisServer()


@pytest_asyncio.fixture
async def connections(fake_server: FakeRedisServer) -> AsyncGenerator[RedisConnections, None]:
    """Open connections bound to ``fake_server``."""
    conns = RedisConnections("redis://fake:6379", client_factory=fake_server.client_factory)
    await conns.open()
    yield conns
    await conns.close()


@pytest.fixture
def keys() -> KeyNamer:
    return KeyNamer()


@pytest.fixture
def lock_manager(connections: RedisConnections, keys: KeyNamer) -> LockManager:
    return LockManager(connections, keys, lock_ttl=1000, instance_id="instance-1")


@pytest.fixture
def settings(tmp_path: Path) -> SchedulerSettings:
    """Settings pointing at an empty schedule directory."""
    schedule_dir = tmp_path / "schedules"
    schedule_dir.mkdir()
    return SchedulerSettings(schedule_path=schedule_dir)


# =============================================================================
# Sample Definitions
# =============================================================================


@pytest.fixture
def calls() -> list[dict]:
    """Records the ``data`` each sample perform was called with."""
    return []


@pytest.fixture
def sync_definition(calls: list[dict]) -> ScheduleDefinition:
    def perform(data: dict) -> str:
        calls.append(data)
        return "done"

    return ScheduleDefinition(
        name="sendEmail", interval="1 second", perform=perform, data={"to": "ops"}
    )


@pytest.fixture
def async_definition(calls: list[dict]) -> ScheduleDefinition:
    async def perform(data: dict) -> str:
        calls.append(data)
        return "done"

    return ScheduleDefinition(name="sendSms", interval="*/2 * * * * *", perform=perform)
