"""Directory loader for schedule definition files.

Every ``*.py`` file directly inside the schedule directory defines one
schedule, in one of two shapes::

    # schedules/send_email.py  (explicit definition)
    schedule = {"interval": "5 minutes", "perform": send, "data": {"to": "ops"}}

    # schedules/cleanup.py     (plain function module)
    interval = "0 3 * * *"
    timezone = "Africa/Nairobi"

    def perform(data):
        ...

``name`` defaults to the file stem. Files starting with ``_`` are skipped.

Loading is best effort: a missing directory, an import error or a module
that defines no usable schedule is reported as ``LoaderError`` to the
``on_error`` observer, logged, and the remaining files still load.

Tags:
    keybeat, scheduling, loader, importlib, discovery

Doc-Types:
    api-reference
"""

from __future__ import annotations

import importlib.util
import sys
from collections.abc import Callable, Mapping
from pathlib import Path
from types import ModuleType
from typing import Any

from keybeat.core.errors import LoaderError
from keybeat.core.logging import get_logger
from keybeat.scheduling.registry import (
    ScheduleDefinition,
    define_schedule,
    is_valid_schedule,
    registry_snapshot,
)

logger = get_logger(__name__)

MODULE_PREFIX = "keybeat_schedules"

ErrorObserver = Callable[[Exception], Any]


def discover_schedule_files(path: Path) -> list[Path]:
    """Sorted, non-recursive list of loadable schedule files."""
    return sorted(
        p for p in path.glob("*.py") if p.is_file() and not p.name.startswith("_")
    )


def _import_file(path: Path) -> ModuleType:
    module_name = f"{MODULE_PREFIX}_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise LoaderError(f"Cannot load module from: {path}", path=str(path))

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise LoaderError(f"Error loading {path}: {e}", path=str(path), cause=e) from e
    return module


def definition_from_module(module: ModuleType, *, default_name: str) -> ScheduleDefinition:
    """Extract the schedule a module defines.

    Raises:
        LoaderError: If the module defines neither shape or an invalid one
    """
    path = getattr(module, "__file__", None)
    candidate = getattr(module, "schedule", None)

    if isinstance(candidate, ScheduleDefinition):
        definition = candidate
    elif isinstance(candidate, Mapping):
        definition = ScheduleDefinition.from_mapping(candidate, name=default_name)
    elif callable(getattr(module, "perform", None)):
        definition = ScheduleDefinition.from_mapping(
            {
                "name": getattr(module, "name", None),
                "interval": getattr(module, "interval", None),
                "perform": module.perform,
                "data": getattr(module, "data", None),
                "timezone": getattr(module, "timezone", None),
            },
            name=default_name,
        )
    else:
        raise LoaderError(
            f"Module {default_name} defines neither `schedule` nor a callable `perform`",
            path=path,
        )

    if not is_valid_schedule(definition):
        raise LoaderError(
            f"Module {default_name} does not define a valid schedule "
            "(name, interval and perform are required, data must be a mapping)",
            path=path,
        ).with_context(schedule=definition.name)
    return definition


def _report(error: LoaderError, on_error: ErrorObserver | None) -> None:
    logger.warning("schedule_load_failed", path=error.path, error=str(error))
    if on_error is not None:
        on_error(error)


def load_schedules(
    path: str | Path | None = None,
    *,
    on_error: ErrorObserver | None = None,
) -> dict[str, ScheduleDefinition]:
    """Import every schedule file in ``path`` and register its definition.

    Args:
        path: Schedule directory (default: ``<cwd>/schedules``)
        on_error: Observer receiving each ``LoaderError``

    Returns:
        Registry snapshot after loading
    """
    directory = Path(path) if path is not None else Path.cwd() / "schedules"

    if not directory.is_dir():
        _report(
            LoaderError(f"Schedule directory not found: {directory}", path=str(directory)),
            on_error,
        )
        return registry_snapshot()

    loaded = 0
    for file in discover_schedule_files(directory):
        try:
            module = _import_file(file)
            definition = definition_from_module(module, default_name=file.stem)
        except LoaderError as e:
            _report(e, on_error)
            continue

        define_schedule(definition)
        loaded += 1

    logger.info("schedules_loaded", path=str(directory), loaded=loaded)
    return registry_snapshot()


__all__ = ["load_schedules", "discover_schedule_files", "definition_from_module"]
