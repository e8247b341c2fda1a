"""Task domain models and the status state machine.

``TaskRecord`` is the single persistent entity.  The store owns it; every
other component only holds a transient copy for the duration of one
operation.

Valid transition graph::

    PENDING  → RUNNING | CANCELED
    RUNNING  → SUCCESS | WAITING | FAILED | CANCELED
    WAITING  → SUCCESS | FAILED          (continuation only)
    FAILED   → PENDING                   (retry)
    CANCELED → PENDING                   (retry)
    SUCCESS  → (terminal)

Tags:
    task-spine, execution, models, state-machine

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from taskspine.core.errors import InvalidTransitionError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"  # suspended, awaiting a continuation callback
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"


class RunnerType(str, Enum):
    """Who advances the task: the scheduler (system) or an operator (manual)."""

    MANUAL = "manual"
    SYSTEM = "system"


TASK_VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({
        TaskStatus.RUNNING,
        TaskStatus.CANCELED,
    }),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.SUCCESS,
        TaskStatus.WAITING,
        TaskStatus.FAILED,
        TaskStatus.CANCELED,
    }),
    TaskStatus.WAITING: frozenset({
        TaskStatus.SUCCESS,
        TaskStatus.FAILED,
    }),
    TaskStatus.FAILED: frozenset({
        TaskStatus.PENDING,  # retry
    }),
    TaskStatus.CANCELED: frozenset({
        TaskStatus.PENDING,  # retry
    }),
    TaskStatus.SUCCESS: frozenset(),  # terminal
}

CANCELABLE_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.PENDING, TaskStatus.RUNNING})


def validate_task_transition(
    current: TaskStatus,
    target: TaskStatus,
    task_id: str | None = None,
) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_task_transition(TaskStatus.RUNNING, TaskStatus.SUCCESS)
        >>> validate_task_transition(TaskStatus.SUCCESS, TaskStatus.PENDING)
        InvalidTransitionError: Invalid TaskStatus transition: success → pending
    """
    current = TaskStatus(current)
    target = TaskStatus(target)
    if target not in TASK_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, task_id)


def retry_sources(statuses: Iterable[str | TaskStatus]) -> frozenset[TaskStatus]:
    """Normalize a configured retry-eligible status set.

    Every entry must have a ``→ PENDING`` edge in the state machine.
    """
    result = frozenset(TaskStatus(s) for s in statuses)
    for status in result:
        validate_task_transition(status, TaskStatus.PENDING)
    return result


@dataclass
class TaskRecord:
    """Durable state for one unit of work."""

    id: str
    type: str
    target_id: str
    target_type: str
    runner_type: RunnerType = RunnerType.MANUAL
    script_name: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    start_time: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    resumed_at: datetime | None = None

    input: Any = None
    output: Any = None
    error: Any = None
    context: dict[str, Any] = field(default_factory=dict)
    options: Any = None

    poll_results: list[dict[str, Any]] = field(default_factory=list)
    poll_count: int = 0
    progress: int = 0
    msg: str | None = None

    user_id: str | None = None
    completed_user_id: str | None = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = TaskStatus(self.status)
        self.runner_type = RunnerType(self.runner_type)
        if self.context is None:
            self.context = {}
        if self.poll_results is None:
            self.poll_results = []

    @property
    def is_system(self) -> bool:
        return self.runner_type == RunnerType.SYSTEM

    def apply(self, values: dict[str, Any]) -> None:
        """Copy persisted *values* onto this instance."""
        for key, value in values.items():
            setattr(self, key, value)
        self.__post_init__()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            result[f.name] = value
        return result


RECORD_FIELDS: frozenset[str] = frozenset(f.name for f in fields(TaskRecord))


@dataclass
class Page:
    """One page of a task listing."""

    page_data: list[TaskRecord]
    total_count: int
    current_page: int
    per_page: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_data": [t.to_dict() for t in self.page_data],
            "total_count": self.total_count,
            "current_page": self.current_page,
            "per_page": self.per_page,
        }


__all__ = [
    "CANCELABLE_STATUSES",
    "InvalidTransitionError",
    "Page",
    "RECORD_FIELDS",
    "RunnerType",
    "TASK_VALID_TRANSITIONS",
    "TaskRecord",
    "TaskStatus",
    "retry_sources",
    "utcnow",
    "validate_task_transition",
]
