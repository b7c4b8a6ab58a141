"""
Result envelope for one-shot "error or value" outcomes.

keybeat returns a Result wherever a failure must not escape as an exception:
invoking a schedule's ``perform`` (a sync raise and an async raise both end
up as ``Err(error)``, a returned value as ``Ok(value)``) and parsing a
recurrence pattern against two grammars.

Examples:
    >>> result = await invoke_schedule(definition)
    >>> match result:
    ...     case Ok(value):
    ...         print(f"done: {value}")
    ...     case Err(error):
    ...         print(f"failed: {error}")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome carrying ``value``."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed outcome carrying the exact exception that was raised."""

    error: Exception

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the error."""
        raise self.error

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Ok[T] | Err[T]


def try_result(f: Callable[[], T]) -> Result[T]:
    """
    Call ``f`` and wrap its return value or raised exception.

    Examples:
        >>> try_result(lambda: int("42"))
        Ok(42)
        >>> try_result(lambda: int("nope")).is_err()
        True
    """
    try:
        return Ok(f())
    except Exception as e:
        return Err(e)


__all__ = [
    "Ok",
    "Err",
    "Result",
    "try_result",
]
