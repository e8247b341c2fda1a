"""
Structured error types for task-spine.

Every error raised by the engine carries a category so callers (an API
layer, the scheduler, log processors) can route it without string
matching.  Errors from a caller's malformed request surface as
exceptions; errors raised inside a task's handler lifecycle are turned
into a persisted ``error`` payload via :func:`error_payload`.

Architecture:
    ::

        TaskSpineError (category, context, cause)
          ├── ConfigError ─────────── UnknownTaskTypeError
          ├── InvalidTransitionError  (STATE, also ValueError)
          ├── TaskNotFoundError       (NOT_FOUND, also LookupError)
          ├── ValidationError ─────── InvalidRequestError
          │                      └─── ContinuationPayloadError
          ├── HandlerNotFoundError    (RESOLUTION)
          ├── ExecutionError ──────── PollTimeoutError
          │                      ├─── PollFailedError
          │                      └─── PollInProgressError
          └── AuthenticationError ─── SignatureMismatchError

Tags:
    error-handling, exception-hierarchy, task-spine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
import traceback
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"            # Unknown task type, bad settings
    VALIDATION = "VALIDATION"    # Malformed caller request or payload
    STATE = "STATE"              # Invalid state-machine transition
    NOT_FOUND = "NOT_FOUND"      # Unknown task id
    RESOLUTION = "RESOLUTION"    # Handler module could not be resolved
    EXECUTION = "EXECUTION"      # Handler, callback or poll failure
    AUTH = "AUTH"                # Continuation signature mismatch
    INTERNAL = "INTERNAL"


class TaskSpineError(Exception):
    """Base exception for all task-spine errors.

    Subclasses set ``default_category``; ``context`` holds small,
    loggable metadata (task id, type, ...).
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TaskSpineError:
        """Attach additional context fields and return self for chaining."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging or for the persisted ``error`` field."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# --- configuration ---------------------------------------------------------


class ConfigError(TaskSpineError):
    default_category = ErrorCategory.CONFIG


class UnknownTaskTypeError(ConfigError):
    """No completion callback is registered for the task type."""

    def __init__(self, task_type: str) -> None:
        self.task_type = task_type
        super().__init__(
            f"No task declaration registered for type {task_type!r}",
            context={"task_type": task_type},
        )


# --- state / lookup --------------------------------------------------------


class InvalidTransitionError(TaskSpineError, ValueError):
    """Raised when an illegal status transition is attempted.

    The guard runs before any write, so the record is left unchanged.
    """

    default_category = ErrorCategory.STATE

    def __init__(self, current: str, target: str, task_id: str | None = None) -> None:
        self.current = current
        self.target = target
        self.task_id = task_id
        context = {"current": current, "target": target}
        if task_id is not None:
            context["task_id"] = task_id
        super().__init__(f"Invalid TaskStatus transition: {current} → {target}", context=context)


class TaskNotFoundError(TaskSpineError, LookupError):
    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}", context={"task_id": task_id})


class ValidationError(TaskSpineError):
    default_category = ErrorCategory.VALIDATION


class InvalidRequestError(ValidationError):
    """A lifecycle call was made with missing or contradictory arguments."""


class ContinuationPayloadError(ValidationError):
    """The continuation ``result`` could not be decoded."""


# --- resolution / execution ------------------------------------------------


class HandlerNotFoundError(TaskSpineError):
    default_category = ErrorCategory.RESOLUTION

    def __init__(self, task_type: str, script_name: str, *, cause: BaseException | None = None) -> None:
        self.task_type = task_type
        self.script_name = script_name
        super().__init__(
            f"No task handler matched {task_type}/{script_name}",
            context={"task_type": task_type, "script_name": script_name},
            cause=cause,
        )


class ExecutionError(TaskSpineError):
    default_category = ErrorCategory.EXECUTION


class PollTimeoutError(ExecutionError):
    def __init__(self, max_attempts: int) -> None:
        self.max_attempts = max_attempts
        super().__init__(
            f"Polling timed out after {max_attempts} attempts without a terminal result",
            context={"max_attempts": max_attempts},
        )


class PollFailedError(ExecutionError):
    """The probe reported ``failed`` or raised."""


class PollInProgressError(ExecutionError):
    """A second poll loop was started while one is active for the same task."""


# --- authentication --------------------------------------------------------


class AuthenticationError(TaskSpineError):
    default_category = ErrorCategory.AUTH


class SignatureMismatchError(AuthenticationError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__("Continuation signature mismatch", context={"task_id": task_id})


# --- persisted error payloads ----------------------------------------------

# Absolute POSIX or Windows path prefixes: "/home/x/app/" or "C:\\Users\\x\\".
_ABS_PATH_DIR = re.compile(
    r"(?<![\w:/.])(?:[A-Za-z]:[\\/]|/)"
    r"(?:[^\s\"'<>:|\\/](?:[^\n\"'<>:|\\/]*[^\s\"'<>:|\\/])?[\\/])+"
)


def redact_paths(text: str) -> str:
    """Replace the directory part of absolute paths with ``<path>/``.

    >>> redact_paths('File "/srv/app/tasks/export.py", line 3')
    'File "<path>/export.py", line 3'
    """
    return _ABS_PATH_DIR.sub("<path>/", text)


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Build the sanitized ``error`` structure persisted on a failed task."""
    if isinstance(exc, TaskSpineError):
        payload = exc.to_dict()
    else:
        payload = {"error_type": type(exc).__name__, "message": str(exc)}
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    payload["message"] = redact_paths(payload["message"])
    payload["trace"] = redact_paths(trace)
    return payload


__all__ = [
    "AuthenticationError",
    "ConfigError",
    "ContinuationPayloadError",
    "ErrorCategory",
    "ExecutionError",
    "HandlerNotFoundError",
    "InvalidRequestError",
    "InvalidTransitionError",
    "PollFailedError",
    "PollInProgressError",
    "PollTimeoutError",
    "SignatureMismatchError",
    "TaskNotFoundError",
    "TaskSpineError",
    "UnknownTaskTypeError",
    "ValidationError",
    "error_payload",
    "redact_paths",
]
