"""
Keybeat - Distributed recurring jobs on redis key expiry.

Register schedules with ``every`` (or drop files into ``./schedules``), then
run a ``SchedulerService`` in as many processes as you like: each schedule
fires at most once per interval across all of them.

    import keybeat

    keybeat.every("5 minutes", "sendEmail", send_email)

    async with keybeat.SchedulerService():
        ...
"""

__version__ = "0.1.0"

from keybeat.core.errors import (
    HandlerError,
    InvalidPattern,
    InvalidScheduleDefinition,
    KeybeatError,
    LoaderError,
    StoreError,
)
from keybeat.core.result import Err, Ok, Result
from keybeat.core.settings import SchedulerSettings, get_settings
from keybeat.scheduling import *  # noqa: F403
from keybeat.scheduling import __all__ as _scheduling_all

__all__ = [
    "__version__",
    "KeybeatError",
    "InvalidScheduleDefinition",
    "InvalidPattern",
    "StoreError",
    "HandlerError",
    "LoaderError",
    "Ok",
    "Err",
    "Result",
    "SchedulerSettings",
    "get_settings",
    *_scheduling_all,
]
