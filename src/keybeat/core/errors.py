"""
Structured error types for keybeat.

Provides a compact hierarchy of typed errors carrying the metadata a
scheduler operator needs: which schedule, which store key, and the original
exception that caused it.

Manifesto:
    - **Typed Error Hierarchy:** Validation, parse, store, handler and loader
      failures are different things and are routed differently
    - **Rich Context:** Errors carry schedule/key metadata for logging
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       KeybeatError                               │
        │        (category, context, cause)                                │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  InvalidScheduleDefinition   InvalidPattern     StoreError       │
        │  (VALIDATION)                (PARSE)            (STORE)          │
        │                                                                  │
        │  HandlerError   LoaderError   ConfigError   SchedulerStateError  │
        │  (HANDLER)      (LOADER)      (CONFIG)      (ORCHESTRATION)      │
        │                                                                  │
        └─────────────────────────────────────────────────────────────────┘

Propagation:
    - Validation errors are local and immediate, no store I/O attempted
    - Store errors abort the current operation and reach its caller
    - Handler errors are reported, never crash the dispatch loop
    - Loader errors are non-fatal, a partial registry is acceptable
    - Losing a lock or arming race is NOT an error

Usage:
    from keybeat.core.errors import StoreError

    try:
        await client.pttl(key)
    except RedisError as e:
        raise StoreError("PTTL failed", cause=e).with_context(key=key)

Tags:
    error-handling, exception-hierarchy, error-context, keybeat

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by where the failure comes from:
    - **Infrastructure:** STORE
    - **Definition errors:** VALIDATION, PARSE, CONFIG
    - **Runtime errors:** HANDLER, LOADER, ORCHESTRATION
    - **Internal errors:** INTERNAL, UNKNOWN
    """

    STORE = "STORE"                  # Connection loss, command errors
    VALIDATION = "VALIDATION"        # Invalid schedule definition
    PARSE = "PARSE"                  # Cron / human interval grammar
    CONFIG = "CONFIG"                # Invalid settings
    HANDLER = "HANDLER"              # perform() raised
    LOADER = "LOADER"                # Schedule file discovery/import
    ORCHESTRATION = "ORCHESTRATION"  # Illegal lifecycle transitions
    INTERNAL = "INTERNAL"            # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"              # Uncategorized errors


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields for the metadata keybeat errors usually carry; anything
    else goes into ``metadata``. ``to_dict()`` serializes non-None fields.

    Examples:
        >>> ctx = ErrorContext(schedule="sendEmail", key="r:schedules:keys:sendEmail")
        >>> ctx.to_dict()
        {'schedule': 'sendEmail', 'key': 'r:schedules:keys:sendEmail'}
    """

    schedule: str | None = None
    interval: str | None = None
    key: str | None = None
    channel: str | None = None
    path: str | None = None
    instance_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["schedule", "interval", "key", "channel", "path", "instance_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class KeybeatError(Exception):
    """
    Base exception for all keybeat errors.

    All KeybeatError instances carry:
    - **category:** ErrorCategory enum for classification and routing
    - **context:** ErrorContext with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category``.

    Examples:
        >>> error = KeybeatError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(schedule="sendEmail").context.schedule
        'sendEmail'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> KeybeatError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StoreError("SET failed").with_context(
                schedule="sendEmail",
                key="r:schedules:keys:sendEmail",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }

        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict

        if self.cause is not None:
            result["cause"] = str(self.cause)

        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# DEFINITION ERRORS
# =============================================================================


class InvalidScheduleDefinition(KeybeatError):
    """Schedule definition is missing a name, an interval or a callable perform."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str = "Invalid schedule definition", **kwargs: Any):
        super().__init__(message, **kwargs)


class InvalidPattern(KeybeatError):
    """Recurrence pattern could not be parsed by the cron or human grammar."""

    default_category = ErrorCategory.PARSE

    def __init__(self, message: str, *, pattern: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.pattern = pattern
        if pattern is not None:
            self.context.interval = pattern


class ConfigError(KeybeatError):
    """Configuration error."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# RUNTIME ERRORS
# =============================================================================


class StoreError(KeybeatError):
    """Key-value store command or connection failure."""

    default_category = ErrorCategory.STORE


class HandlerError(KeybeatError):
    """A schedule's perform() raised."""

    default_category = ErrorCategory.HANDLER

    @classmethod
    def from_exception(cls, schedule: str, error: Exception) -> HandlerError:
        return cls(f"Schedule {schedule} failed: {error}", cause=error).with_context(
            schedule=schedule
        )


class LoaderError(KeybeatError):
    """Schedule file could not be discovered, imported or understood."""

    default_category = ErrorCategory.LOADER

    def __init__(self, message: str, *, path: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.path = path
        if path is not None:
            self.context.path = path


class SchedulerStateError(KeybeatError):
    """Operation not allowed in the scheduler's current lifecycle state."""

    default_category = ErrorCategory.ORCHESTRATION


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "KeybeatError",
    "InvalidScheduleDefinition",
    "InvalidPattern",
    "ConfigError",
    "StoreError",
    "HandlerError",
    "LoaderError",
    "SchedulerStateError",
]
