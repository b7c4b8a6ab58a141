"""Process-wide schedule registry.

Manifesto:
    A schedule is defined once per process and looked up by name whenever
    its expiry key fires. Definitions are validated on the way in: an
    invalid definition is never registered, and defining one never raises.
    The first definition of a name wins.

Architecture::

    define_schedule(candidate) ─► is_valid_schedule? ─► registry[name]
                                        │ no                 (first write wins)
                                        ▼
                                  unchanged snapshot

Tags:
    keybeat, scheduling, registry, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from keybeat.core.errors import InvalidScheduleDefinition
from keybeat.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ScheduleDefinition:
    """A named, recurring unit of work.

    Attributes:
        name: Unique schedule name (derives every store key)
        interval: Cron pattern or human interval phrase
        perform: ``perform(data)``, sync or async; raising signals failure
        data: Mapping handed to ``perform``
        timezone: IANA timezone the interval is evaluated in (default local)
        last_run_at: Base instant for the next computation (default now)
    """

    name: str
    interval: str
    perform: Callable[..., Any]
    data: dict[str, Any] = field(default_factory=dict)
    timezone: str | None = None
    last_run_at: datetime | None = None

    @classmethod
    def from_mapping(
        cls, mapping: Mapping[str, Any], *, name: str | None = None
    ) -> ScheduleDefinition:
        """Build a definition from a dict, ``name`` filling in a missing name.

        No validation happens here, see ``is_valid_schedule``.
        """
        return cls(
            name=mapping.get("name") or name,
            interval=mapping.get("interval"),
            perform=mapping.get("perform"),
            data=_copy_data(mapping.get("data")),
            timezone=mapping.get("timezone"),
            last_run_at=mapping.get("last_run_at"),
        )


def _copy_data(data: Any) -> Any:
    # Non-mapping data is kept as-is so is_valid_schedule can reject it
    if data is None:
        return {}
    return dict(data) if isinstance(data, Mapping) else data


def _non_blank(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_valid_schedule(candidate: Any) -> bool:
    """Check a definition (or mapping) has a name, an interval, a callable perform
    and, when given, mapping ``data``.

    Examples:
        >>> is_valid_schedule({"name": "a", "interval": "1 second", "perform": print})
        True
        >>> is_valid_schedule({"name": "a", "interval": "1 second"})
        False
        >>> is_valid_schedule(None)
        False
    """
    if isinstance(candidate, ScheduleDefinition):
        name, interval, perform = candidate.name, candidate.interval, candidate.perform
        data = candidate.data
    elif isinstance(candidate, Mapping):
        name = candidate.get("name")
        interval = candidate.get("interval")
        perform = candidate.get("perform")
        data = candidate.get("data")
    else:
        return False

    return (
        _non_blank(name)
        and _non_blank(interval)
        and callable(perform)
        and (data is None or isinstance(data, Mapping))
    )


def coerce_definition(candidate: Any) -> ScheduleDefinition:
    """Return ``candidate`` as a ``ScheduleDefinition``.

    Raises:
        InvalidScheduleDefinition: If the candidate is not a valid schedule
    """
    if not is_valid_schedule(candidate):
        raise InvalidScheduleDefinition()
    if isinstance(candidate, ScheduleDefinition):
        return candidate
    return ScheduleDefinition.from_mapping(candidate)


# ── Registry state ───────────────────────────────────────────────────────

_registry: dict[str, ScheduleDefinition] = {}
_lock = threading.RLock()


def registry_snapshot() -> dict[str, ScheduleDefinition]:
    """Shallow copy of the registry."""
    with _lock:
        return dict(_registry)


def define_schedule(candidate: Any, **overrides: Any) -> dict[str, ScheduleDefinition]:
    """Register a schedule if it is valid and its name is not taken.

    Args:
        candidate: ``ScheduleDefinition`` or mapping
        **overrides: Field overrides applied before validation

    Returns:
        Snapshot of the registry after the call
    """
    if overrides:
        if isinstance(candidate, ScheduleDefinition):
            candidate = replace(candidate, **overrides)
        elif isinstance(candidate, Mapping):
            candidate = {**candidate, **overrides}

    if not is_valid_schedule(candidate):
        logger.warning("schedule_rejected", candidate=repr(candidate)[:200])
        return registry_snapshot()

    definition = coerce_definition(candidate)
    with _lock:
        if definition.name in _registry:
            logger.debug("schedule_already_defined", schedule=definition.name)
        else:
            _registry[definition.name] = definition
            logger.debug(
                "schedule_defined", schedule=definition.name, interval=definition.interval
            )
        return dict(_registry)


def get_schedule(name: str) -> ScheduleDefinition | None:
    with _lock:
        return _registry.get(name)


def list_schedules() -> list[str]:
    """Registered schedule names in definition order."""
    with _lock:
        return list(_registry)


def clear_registry() -> dict[str, ScheduleDefinition]:
    """Remove every definition.

    Returns:
        The (empty) registry snapshot
    """
    with _lock:
        _registry.clear()
        return {}


__all__ = [
    "ScheduleDefinition",
    "is_valid_schedule",
    "coerce_definition",
    "define_schedule",
    "get_schedule",
    "list_schedules",
    "registry_snapshot",
    "clear_registry",
]
