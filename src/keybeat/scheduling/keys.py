"""Store key naming for schedules, locks and events.

Manifesto:
    Every process sharing a store must derive byte-identical keys for the
    same schedule, otherwise the expiry protocol silently degrades into
    "every process fires". Naming is therefore pure and centralized: a
    ``KeyNamer`` is built once from settings and nothing else formats keys.

Key layout (defaults)::

    r:schedules:keys:<name>        expiry key (TTL = time until next run)
    r:schedules:data:<name>        data key
    r:schedules:next:<name>        registration lock
    r:schedules:work:<name>        invocation lock
    r:locks:<resource>:<name>      generic concurrency lock
    r:events:schedules:<outcome>   outcome event channel
    __keyevent@<db>__:expired      expired-key notification channel

Tags:
    keybeat, scheduling, keys, naming, redis

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from keybeat.core.settings import SchedulerSettings

DATA_NAMESPACE = "data"
SCHEDULE_LOCK_NAMESPACE = "next"
WORK_LOCK_NAMESPACE = "work"


def key_for(*parts: str | None, prefix: str = "r", separator: str = ":") -> str:
    """Join ``prefix`` and non-empty parts with ``separator``.

    Example:
        >>> key_for("schedules", "", "sendEmail")
        'r:schedules:sendEmail'
    """
    return separator.join([prefix, *(str(p) for p in parts if p)])


def expired_channel_for(db: int | None = 0) -> str:
    """Name of the keyspace-event channel announcing expired keys in ``db``."""
    return f"__keyevent@{db or 0}__:expired"


def _require_name(name: str | None) -> str:
    if not name or not str(name).strip():
        raise ValueError("Schedule name is required to derive a key")
    return str(name)


@dataclass(frozen=True)
class KeyNamer:
    """Derives every store key the scheduler touches."""

    prefix: str = "r"
    separator: str = ":"
    schedule_prefix: str = "schedules"
    lock_prefix: str = "locks"
    event_prefix: str = "events"
    expiry_namespace: str | None = "keys"

    @classmethod
    def from_settings(cls, settings: SchedulerSettings) -> KeyNamer:
        return cls(
            prefix=settings.prefix,
            separator=settings.separator,
            schedule_prefix=settings.schedule_prefix,
            lock_prefix=settings.lock_prefix,
            event_prefix=settings.event_prefix,
            expiry_namespace=settings.expiry_namespace,
        )

    def _key(self, *parts: str | None) -> str:
        return key_for(*parts, prefix=self.prefix, separator=self.separator)

    def expiry_key(self, name: str) -> str:
        return self._key(self.schedule_prefix, self.expiry_namespace, _require_name(name))

    def data_key(self, name: str) -> str:
        return self._key(self.schedule_prefix, DATA_NAMESPACE, _require_name(name))

    def schedule_lock_key(self, name: str) -> str:
        return self._key(self.schedule_prefix, SCHEDULE_LOCK_NAMESPACE, _require_name(name))

    def work_lock_key(self, name: str) -> str:
        return self._key(self.schedule_prefix, WORK_LOCK_NAMESPACE, _require_name(name))

    def concurrency_lock_key(self, resource: str, name: str) -> str:
        if not resource:
            raise ValueError("Lock resource is required to derive a key")
        return self._key(self.lock_prefix, resource, _require_name(name))

    def event_channel(self, outcome: str) -> str:
        return self._key(self.event_prefix, self.schedule_prefix, outcome)

    def schedule_pattern(self) -> str:
        """Wildcard matching every schedule-owned key."""
        return self._key(self.schedule_prefix, "*")

    def schedule_lock_pattern(self) -> str:
        """Wildcard matching concurrency locks taken on the schedules resource."""
        return self._key(self.lock_prefix, self.schedule_prefix, "*")

    def name_from_expiry_key(self, key: str | bytes) -> str | None:
        """Recover the schedule name from an expiry key.

        Returns ``None`` for keys that are not expiry keys (foreign keys,
        lock keys, data keys).
        """
        if isinstance(key, bytes):
            key = key.decode()

        head = self._key(self.schedule_prefix, self.expiry_namespace) + self.separator
        if not key.startswith(head):
            return None

        name = key[len(head):]
        if not name:
            return None

        # Plain variant shares the schedules namespace with data and lock keys
        if self.expiry_namespace is None:
            first = name.split(self.separator, 1)[0]
            if first in (DATA_NAMESPACE, SCHEDULE_LOCK_NAMESPACE, WORK_LOCK_NAMESPACE):
                return None
        return name


__all__ = ["KeyNamer", "key_for", "expired_channel_for"]
