"""
Structured logging for task-spine, built on structlog.

Events are dotted names with keyword fields; task identifiers are bound
through contextvars so everything a handler logs carries them.

Processor chain::

    TimeStamper(iso)            (optional)
    merge_contextvars           task_id / task_type from task_log_context()
    add_log_level, add_logger_name
    _add_service                service=<configured name>
    _redact_error_paths         absolute paths in error/trace fields
    JSONRenderer | ConsoleRenderer

Usage:
    >>> configure_logging(level="DEBUG", json_format=True)
    >>> logger = get_logger(__name__)
    >>> with task_log_context(task.id, task.type):
    ...     logger.info("task.started")

Tags:
    logging, structlog, observability, task-spine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from taskspine.core.errors import redact_paths

_service_name = "task-spine"

_REDACTED_KEYS = ("error", "trace", "exception")


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", _service_name)
    return event_dict


def _redact_error_paths(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in _REDACTED_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = redact_paths(value)
    return event_dict


def build_processors(json_format: bool, add_timestamp: bool = True) -> list[Processor]:
    """Return the processor chain used by :func:`configure_logging`."""
    processors: list[Processor] = []
    if add_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))
    processors += [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.dev.set_exc_info,
        _add_service,
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            _redact_error_paths,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [_redact_error_paths, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    return processors


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "task-spine",
    add_timestamp: bool = True,
) -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR).
        json_format: JSON lines when True, console when False, JSON unless
            stdout is a TTY when None.
        service: Value of the ``service`` field on every event.
        add_timestamp: Prefix events with an ISO timestamp.
    """
    global _service_name
    _service_name = service

    numeric_level = logging.getLevelName(level.upper())
    if json_format is None:
        json_format = not sys.stdout.isatty()

    structlog.configure(
        processors=build_processors(json_format, add_timestamp),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger, normally ``get_logger(__name__)``."""
    return structlog.get_logger(name)


@contextmanager
def task_log_context(task_id: str, task_type: str | None = None, **extra: Any) -> Iterator[None]:
    """Bind task identifiers to every event logged inside the block.

    Previous bindings are restored on exit, so nested blocks are safe.
    """
    with structlog.contextvars.bound_contextvars(task_id=task_id, task_type=task_type, **extra):
        yield


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


__all__ = [
    "build_processors",
    "clear_context",
    "configure_logging",
    "get_logger",
    "task_log_context",
]
