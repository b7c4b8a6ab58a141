"""Scheduler service - main orchestrator.

Manifesto:
    The SchedulerService wires registry (what), time calculator (when),
    lock manager (who) and expiry subscriber (now) into one process-level
    lifecycle. There is no tick loop: the store tells every process when a
    schedule is due by expiring its key, and the lock protocol picks the one
    process that runs it.

Tags:
    keybeat, scheduling, orchestrator, expiry-driven, service

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER SERVICE ARCHITECTURE                                               │
│                                                                               │
│   start()                                                                     │
│     1. load_schedules(schedule_path)                                          │
│     2. connections.open()                                                     │
│     3. connections.enable_keyspace_events("xE")                               │
│     4. subscriber.subscribe(_on_expired)   (returns after acknowledgement)    │
│     5. for each schedule: arm(name)                                           │
│          └── schedule_lock ─► is_already_scheduled? ─► schedule_next_run      │
│                                                                               │
│   _on_expired(channel, key)             one task per expiry                   │
│     ├── key ─► name ─► registry          (unknown keys ignored)               │
│     ├── acquire_work_lock(name)          (None ─► another process runs it)    │
│     ├── is_already_scheduled?            (yes ─► stale notification, skip)    │
│     ├── invoke_schedule(definition)      Ok / Err ─► HandlerError reported    │
│     ├── publish outcome event            (publish_events only)                │
│     ├── schedule_next_run(definition)    re-arm                               │
│     └── release work lock                                                     │
│                                                                               │
│   stop()    close subscription, wait in-flight runs, close connections       │
│   clear()   delete store-side schedule keys, empty the registry               │
│                                                                               │
│   State: STOPPED ─► STARTING ─► RUNNING ─► STOPPING ─► STOPPED                │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from keybeat.core.errors import (
    HandlerError,
    InvalidPattern,
    KeybeatError,
    SchedulerStateError,
    StoreError,
)
from keybeat.core.logging import LogContext, get_logger
from keybeat.core.result import Err, Ok, Result
from keybeat.core.settings import SchedulerSettings, get_settings
from keybeat.scheduling.connections import RedisConnections
from keybeat.scheduling.invoker import invoke_schedule
from keybeat.scheduling.keys import KeyNamer
from keybeat.scheduling.listener import ExpirySubscriber, ExpirySubscription
from keybeat.scheduling.loader import load_schedules
from keybeat.scheduling.lock_manager import LockManager, ScheduledRun
from keybeat.scheduling.registry import (
    ScheduleDefinition,
    clear_registry,
    define_schedule,
    get_schedule,
    list_schedules,
)

logger = get_logger(__name__)

ErrorObserver = Callable[[Exception], Any]


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SchedulerStats:
    """Statistics for scheduler service."""

    expirations_received: int = 0
    schedules_armed: int = 0
    arming_skipped: int = 0
    invocations_succeeded: int = 0
    invocations_failed: int = 0
    invocations_skipped: int = 0
    last_expiry: datetime | None = None
    last_error: str | None = None


@dataclass
class SchedulerHealth:
    """Health status for scheduler service."""

    healthy: bool
    state: ServiceState
    instance_id: str
    schedules_registered: int = 0
    keyspace_events_enabled: bool | None = None
    subscribed: bool = False
    in_flight: int = 0
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "state": self.state.value,
            "instance_id": self.instance_id,
            "schedules_registered": self.schedules_registered,
            "keyspace_events_enabled": self.keyspace_events_enabled,
            "subscribed": self.subscribed,
            "in_flight": self.in_flight,
            "stats": {
                "expirations_received": self.stats.expirations_received,
                "schedules_armed": self.stats.schedules_armed,
                "arming_skipped": self.stats.arming_skipped,
                "invocations_succeeded": self.stats.invocations_succeeded,
                "invocations_failed": self.stats.invocations_failed,
                "invocations_skipped": self.stats.invocations_skipped,
                "last_expiry": self.stats.last_expiry.isoformat() if self.stats.last_expiry else None,
                "last_error": self.stats.last_error,
            },
        }


def every(
    interval: str,
    name: str,
    perform: Callable[..., Any],
    *,
    data: dict[str, Any] | None = None,
    timezone: str | None = None,
) -> ScheduleDefinition | None:
    """Register a recurring schedule.

    Example:
        >>> import keybeat
        >>> keybeat.every("5 minutes", "sendEmail", send_email, data={"to": "ops"})

    Returns:
        The registered definition (the earlier one if ``name`` was taken),
        or None if the definition is invalid
    """
    snapshot = define_schedule(
        {
            "name": name,
            "interval": interval,
            "perform": perform,
            "data": data or {},
            "timezone": timezone,
        }
    )
    return snapshot.get(name) if isinstance(name, str) else None


class SchedulerService:
    """Main scheduler orchestrator, driven by key-expiry events.

    Example:
        >>> from keybeat import SchedulerService, every
        >>>
        >>> every("*/5 * * * * *", "heartbeat", lambda data: print("beat"))
        >>>
        >>> async with SchedulerService() as service:
        ...     await asyncio.Event().wait()
    """

    def __init__(
        self,
        settings: SchedulerSettings | None = None,
        *,
        connections: RedisConnections | None = None,
        on_error: ErrorObserver | None = None,
        instance_id: str | None = None,
    ) -> None:
        """Initialize scheduler service.

        Args:
            settings: Scheduler settings (default: ``get_settings()``)
            connections: Store connections (default: built from settings)
            on_error: Observer receiving every reported failure
            instance_id: Identifier stored in armed keys (default: uuid4)
        """
        self.settings = settings or get_settings()
        self.keys = KeyNamer.from_settings(self.settings)
        self.connections = connections or RedisConnections(self.settings.url, db=self.settings.db)
        self.lock_manager = LockManager(
            self.connections,
            self.keys,
            lock_ttl=self.settings.lock_ttl,
            instance_id=instance_id,
        )
        self.subscriber = ExpirySubscriber(
            self.connections, db=self.settings.db, on_error=self._report
        )
        self.on_error = on_error

        self._state = ServiceState.STOPPED
        self._subscription: ExpirySubscription | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stats = SchedulerStats()

    @property
    def instance_id(self) -> str:
        return self.lock_manager.instance_id

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if service is running."""
        return self._state is ServiceState.RUNNING

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    def reset_stats(self) -> None:
        """Reset scheduler statistics."""
        self._stats = SchedulerStats()

    # === Registration ===

    def every(
        self,
        interval: str,
        name: str,
        perform: Callable[..., Any],
        *,
        data: dict[str, Any] | None = None,
        timezone: str | None = None,
    ) -> ScheduleDefinition | None:
        """Register a schedule, arming it right away when the service is running."""
        definition = every(interval, name, perform, data=data, timezone=timezone)
        if definition is not None and self.is_running:
            self._arm_soon(definition.name)
        return definition

    # === Lifecycle ===

    async def start(self) -> None:
        """Load, connect, subscribe and arm every registered schedule.

        Raises:
            SchedulerStateError: If the service is not stopped
            StoreError: If the store is unreachable or the subscription
                is not acknowledged (the service is back to STOPPED)
        """
        if self._state is not ServiceState.STOPPED:
            raise SchedulerStateError(
                f"Cannot start scheduler in state {self._state.value}"
            ).with_context(instance_id=self.instance_id)

        self._state = ServiceState.STARTING
        self._loop = asyncio.get_running_loop()
        logger.info("scheduler_starting", instance_id=self.instance_id)

        try:
            schedule_path = self.settings.schedule_path
            if schedule_path.is_dir():
                load_schedules(schedule_path, on_error=self._report)
            else:
                logger.debug("schedule_path_missing", path=str(schedule_path))

            await self.connections.open()
            await self.connections.enable_keyspace_events(self.settings.notify_keyspace_events)
            self._subscription = await self.subscriber.subscribe(self._on_expired)

            for name in list_schedules():
                try:
                    await self.arm(name)
                except InvalidPattern as e:
                    # A bad interval must not keep the other schedules from arming
                    self._report(e.with_context(schedule=name))
        except BaseException:
            await self._teardown()
            self._state = ServiceState.STOPPED
            raise

        self._state = ServiceState.RUNNING
        logger.info(
            "scheduler_started",
            instance_id=self.instance_id,
            schedules=len(list_schedules()),
        )

    async def stop(self) -> None:
        """Stop gracefully. Waits for in-flight runs; the registry is kept."""
        if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
            return

        self._state = ServiceState.STOPPING
        logger.info("scheduler_stopping", instance_id=self.instance_id, in_flight=len(self._tasks))
        try:
            await self._teardown()
        finally:
            self._state = ServiceState.STOPPED
        logger.info("scheduler_stopped", instance_id=self.instance_id)

    async def _teardown(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await self.connections.close()

    async def clear(self) -> int:
        """Delete store-side schedule keys and empty the registry.

        Returns:
            Number of store keys deleted
        """
        opened_here = not self.connections.is_open
        if opened_here:
            await self.connections.open()
        try:
            deleted = await self.lock_manager.clear_schedule_keys()
        finally:
            if opened_here:
                await self.connections.close()

        clear_registry()
        return deleted

    async def __aenter__(self) -> SchedulerService:
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    # === Arming ===

    async def arm(self, name: str) -> ScheduledRun | None:
        """Arm one registered schedule unless it is already armed.

        Returns:
            ScheduledRun, or None when another process holds the
            registration lock or the schedule is already armed

        Raises:
            KeyError: If schedule not found
            InvalidPattern: If its interval matches no grammar
            StoreError: If the store fails
        """
        definition = get_schedule(name)
        if definition is None:
            raise KeyError(f"Schedule not found: {name}")

        async with self.lock_manager.schedule_lock(name) as handle:
            if handle is None or await self.lock_manager.is_already_scheduled(definition):
                self._stats.arming_skipped += 1
                logger.debug("schedule_arming_skipped", schedule=name)
                return None

            run = await self.lock_manager.schedule_next_run(definition)

        if run.armed:
            self._stats.schedules_armed += 1
        return run

    def _arm_soon(self, name: str) -> None:
        """Arm ``name`` on the service loop, from the loop or from a worker thread."""
        try:
            on_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            on_loop = False

        if on_loop:
            self._track(self._arm_reporting(name))
        else:
            self._loop.call_soon_threadsafe(
                lambda: self._track(self._arm_reporting(name))
            )

    async def _arm_reporting(self, name: str) -> None:
        try:
            await self.arm(name)
        except KeybeatError as e:
            logger.warning("schedule_arming_failed", schedule=name, error=str(e))
            self._report(e.with_context(schedule=name))

    # === Expiry handling ===

    def _track(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_expired(self, channel: str, key: str) -> None:
        name = self.keys.name_from_expiry_key(key)
        if name is None:
            return

        definition = get_schedule(name)
        if definition is None:
            logger.debug("expired_key_unknown_schedule", key=key)
            return

        self._stats.expirations_received += 1
        self._stats.last_expiry = datetime.now(UTC)
        self._track(self._run_expired(definition))

    async def _run_expired(self, definition: ScheduleDefinition) -> None:
        async with LogContext(schedule=definition.name, instance_id=self.instance_id):
            try:
                handle = await self.lock_manager.acquire_work_lock(definition.name)
                if handle is None:
                    self._stats.invocations_skipped += 1
                    logger.debug("schedule_run_skipped", reason="work_lock_busy")
                    return

                try:
                    # Already re-armed by whoever won this expiry
                    if await self.lock_manager.is_already_scheduled(definition):
                        self._stats.invocations_skipped += 1
                        logger.debug("schedule_run_skipped", reason="already_armed")
                        return

                    started_at = datetime.now(UTC)
                    result = await invoke_schedule(definition)
                    self._record(definition, result)

                    if self.settings.publish_events:
                        await self._publish(definition, result, started_at)

                    await self.lock_manager.schedule_next_run(definition, last_run_at=started_at)
                finally:
                    await handle.release()
            except KeybeatError as e:
                logger.warning("schedule_run_error", error=str(e))
                self._report(e)

    def _record(self, definition: ScheduleDefinition, result: Result[Any]) -> None:
        match result:
            case Ok():
                self._stats.invocations_succeeded += 1
                logger.info("schedule_run_succeeded")
            case Err(error):
                self._stats.invocations_failed += 1
                self._report(HandlerError.from_exception(definition.name, error))

    async def _publish(
        self, definition: ScheduleDefinition, result: Result[Any], started_at: datetime
    ) -> None:
        outcome = "succeeded" if result.is_ok() else "failed"
        message = {
            "schedule": definition.name,
            "outcome": outcome,
            "instance_id": self.instance_id,
            "started_at": started_at.isoformat(),
        }
        if isinstance(result, Err):
            message["error"] = str(result.error)

        await self.connections.publish(
            self.keys.event_channel(outcome), json.dumps(message, default=str)
        )

    def _report(self, error: Exception) -> None:
        self._stats.last_error = str(error)
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.warning("error_observer_failed", error=str(e))

    # === Manual Operations ===

    async def trigger(self, name: str) -> Result[Any]:
        """Invoke a schedule now, bypassing locks and arming.

        Raises:
            KeyError: If schedule not found
        """
        definition = get_schedule(name)
        if definition is None:
            raise KeyError(f"Schedule not found: {name}")

        result = await invoke_schedule(definition)
        self._record(definition, result)
        return result

    # === Health & Stats ===

    async def health(self) -> SchedulerHealth:
        """Get scheduler health status."""
        events_enabled: bool | None = None
        if self.connections.is_open:
            try:
                events_enabled = await self.connections.is_keyspace_events_enabled()
            except StoreError as e:
                self._stats.last_error = str(e)
                events_enabled = False

        subscribed = self._subscription is not None and not self._subscription.task.done()
        return SchedulerHealth(
            healthy=self.is_running and subscribed and events_enabled is True,
            state=self._state,
            instance_id=self.instance_id,
            schedules_registered=len(list_schedules()),
            keyspace_events_enabled=events_enabled,
            subscribed=subscribed,
            in_flight=len(self._tasks),
            stats=self._stats,
        )


__all__ = [
    "SchedulerService",
    "SchedulerStats",
    "SchedulerHealth",
    "ServiceState",
    "every",
]
