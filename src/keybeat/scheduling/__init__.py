"""Keybeat Scheduling -- expiry-driven distributed recurring jobs.

Architecture::

    timers.py        Next run time (cron via croniter, human intervals)
    keys.py          Store key naming
    registry.py      Process-wide schedule registry and validation
    loader.py        Schedule directory loader
    connections.py   Scheduler / listener store clients
    lock_manager.py  Arming (SET NX PX) and TTL locks
    listener.py      Expired-key subscription
    invoker.py       perform() invocation into a Result
    service.py       SchedulerService orchestrator
"""

from keybeat.scheduling.connections import RedisConnections
from keybeat.scheduling.invoker import invoke_schedule
from keybeat.scheduling.keys import KeyNamer, expired_channel_for, key_for
from keybeat.scheduling.listener import ExpirySubscriber, ExpirySubscription
from keybeat.scheduling.loader import load_schedules
from keybeat.scheduling.lock_manager import LockHandle, LockManager, ScheduledRun
from keybeat.scheduling.registry import (
    ScheduleDefinition,
    clear_registry,
    define_schedule,
    get_schedule,
    is_valid_schedule,
    list_schedules,
    registry_snapshot,
)
from keybeat.scheduling.service import (
    SchedulerHealth,
    SchedulerService,
    SchedulerStats,
    ServiceState,
    every,
)
from keybeat.scheduling.timers import (
    CronInterval,
    HumanInterval,
    next_cron_run_time_for,
    next_human_run_time_for,
    next_run_time_for,
    parse_human_interval,
    parse_interval,
    upcoming_run_times,
)

__all__ = [
    # Timers
    "CronInterval",
    "HumanInterval",
    "next_cron_run_time_for",
    "next_human_run_time_for",
    "next_run_time_for",
    "parse_human_interval",
    "parse_interval",
    "upcoming_run_times",
    # Keys
    "KeyNamer",
    "key_for",
    "expired_channel_for",
    # Registry
    "ScheduleDefinition",
    "is_valid_schedule",
    "define_schedule",
    "get_schedule",
    "list_schedules",
    "registry_snapshot",
    "clear_registry",
    "load_schedules",
    # Store
    "RedisConnections",
    "LockManager",
    "LockHandle",
    "ScheduledRun",
    "ExpirySubscriber",
    "ExpirySubscription",
    # Execution
    "invoke_schedule",
    "SchedulerService",
    "SchedulerStats",
    "SchedulerHealth",
    "ServiceState",
    "every",
]
