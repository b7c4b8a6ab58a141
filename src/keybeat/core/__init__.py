"""Keybeat Core -- ambient primitives shared by every scheduler module.

Architecture::

    errors.py      Structured error hierarchy (KeybeatError, StoreError, ...)
    result.py      Result[T] envelope (Ok / Err / try_result)
    logging.py     structlog configuration and context binding
    settings.py    Environment-driven SchedulerSettings (pydantic-settings)
"""

from keybeat.core.errors import (
    ErrorCategory,
    ErrorContext,
    HandlerError,
    InvalidPattern,
    InvalidScheduleDefinition,
    KeybeatError,
    LoaderError,
    SchedulerStateError,
    StoreError,
)
from keybeat.core.result import Err, Ok, Result, try_result

__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "KeybeatError",
    "InvalidScheduleDefinition",
    "InvalidPattern",
    "StoreError",
    "HandlerError",
    "LoaderError",
    "SchedulerStateError",
    "Ok",
    "Err",
    "Result",
    "try_result",
]
