"""Schedule invocation.

``perform(data)`` may be a plain function or a coroutine function, and it
may fail by raising synchronously or by its coroutine raising. Whatever the
shape, ``invoke_schedule`` reports exactly one outcome: ``Ok(value)`` or
``Err(exception)``, carrying the exact exception object that was raised.

Sync callables run in a worker thread so a slow job does not stall expiry
dispatch for every other schedule.

Tags:
    keybeat, scheduling, invocation, result-pattern, async

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any

from keybeat.core.errors import InvalidScheduleDefinition
from keybeat.core.logging import get_logger
from keybeat.core.result import Err, Ok, Result
from keybeat.scheduling.registry import ScheduleDefinition, is_valid_schedule

logger = get_logger(__name__)


async def invoke_schedule(definition: ScheduleDefinition | Any) -> Result[Any]:
    """Run a schedule's ``perform`` once.

    Args:
        definition: Schedule to invoke (definition or mapping)

    Returns:
        Ok(return value), Err(raised exception), or
        Err(InvalidScheduleDefinition) without running anything
    """
    if not is_valid_schedule(definition):
        return Err(InvalidScheduleDefinition())

    if isinstance(definition, ScheduleDefinition):
        name, perform, data = definition.name, definition.perform, definition.data
    else:
        name, perform, data = definition["name"], definition["perform"], definition.get("data")
    data = dict(data or {})

    try:
        if inspect.iscoroutinefunction(perform):
            value = await perform(data)
        else:
            value = await asyncio.to_thread(perform, data)
            if inspect.isawaitable(value):
                value = await value
    except Exception as e:
        logger.warning("schedule_failed", schedule=name, error=str(e))
        return Err(e)

    logger.debug("schedule_completed", schedule=name)
    return Ok(value)


__all__ = ["invoke_schedule"]
