"""Scheduler settings.

Every keybeat process reads the same handful of values: where the store
lives, how keys are named, how long short-lived locks live and where the
schedule files are. ``SchedulerSettings`` declares them once, validated,
environment-driven and ``.env`` aware.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Two processes racing for the same schedule must derive the same keys,
    so key naming lives here and not scattered through call sites.

    - **Pydantic validation:** Type-checked at startup, not at first use
    - **Environment-driven:** ``REDIS_*`` environment variables and .env files
    - **Sensible defaults:** Works against a local redis out of the box

Examples:
    >>> from keybeat.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.url
    'redis://127.0.0.1:6379'
    >>> get_settings(db=2).db
    2

Tags:
    settings, configuration, pydantic, environment, keybeat

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from keybeat.core.errors import ConfigError


class SchedulerSettings(BaseSettings):
    """Settings shared by every scheduler process.

    Fields
    ──────
    url                     : Store connection URL
    db                      : Logical database index (also names the expiry channel)
    prefix / separator      : Global key prefix and separator (``r`` / ``:``)
    notify_keyspace_events  : Flags passed to ``CONFIG SET notify-keyspace-events``
    event_prefix            : Namespace for published outcome events
    lock_prefix             : Namespace for generic concurrency locks
    lock_ttl                : Short-lived lock TTL in milliseconds
    schedule_prefix         : Namespace for schedule keys
    schedule_path           : Directory scanned for schedule definition files
    expiry_namespace        : Sub-namespace of expiry keys (``None`` → plain variant)
    publish_events          : Publish an event after every invocation
    """

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    url: str = "redis://127.0.0.1:6379"
    db: int = 0
    notify_keyspace_events: str = "xE"

    # ── Key naming ───────────────────────────────────────────────
    prefix: str = "r"
    separator: str = ":"
    event_prefix: str = "events"
    lock_prefix: str = "locks"
    schedule_prefix: str = "schedules"
    expiry_namespace: str | None = "keys"

    # ── Locks ────────────────────────────────────────────────────
    lock_ttl: int = Field(default=1000, description="Lock TTL in milliseconds")

    # ── Schedules ────────────────────────────────────────────────
    schedule_path: Path = Field(
        default_factory=lambda: Path.cwd() / "schedules",
        description="Directory scanned for schedule definition files",
    )
    publish_events: bool = False

    @field_validator("lock_ttl")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lock_ttl must be a positive number of milliseconds")
        return value

    @field_validator("db")
    @classmethod
    def _non_negative_db(cls, value: int) -> int:
        if value < 0:
            raise ValueError("db must be >= 0")
        return value

    @field_validator("prefix", "separator", "schedule_prefix")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("expiry_namespace")
    @classmethod
    def _blank_namespace_is_none(cls, value: str | None) -> str | None:
        return value or None


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, SchedulerSettings] = {}


def get_settings(*, _force_reload: bool = False, **overrides: Any) -> SchedulerSettings:
    """Load and validate settings.

    Without overrides the instance is cached per process. Overrides always
    build a fresh instance on top of the environment.

    Raises:
        ConfigError: If the environment or overrides fail validation
    """
    if not overrides and not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]

    try:
        settings = SchedulerSettings(**overrides)
    except ValidationError as exc:
        raise ConfigError(f"Invalid scheduler settings: {exc}", cause=exc) from exc

    if not overrides:
        _settings_cache["default"] = settings
    return settings


def reset_settings_cache() -> None:
    """Drop the cached settings (for tests)."""
    _settings_cache.clear()


__all__ = ["SchedulerSettings", "get_settings", "reset_settings_cache"]
