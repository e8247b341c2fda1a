"""Execution Context — the capabilities a handler receives for one dispatch.

One context is built per dispatch and closed when the task settles.

Example:
    >>> async def run(host, settings, ctx):
    ...     await ctx.report_progress(10)
    ...     job = await ctx.poll(lambda: check_job(host.input["job_id"]))
    ...     if job["needs_approval"]:
    ...         return await ctx.suspend({"secret": new_secret(), "job": job})
    ...     return job

Tags:
    task-spine, execution, context, handler-protocol

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from taskspine.core.errors import ExecutionError, PollInProgressError
from taskspine.core.logging import get_logger
from taskspine.core.settings import TaskSpineSettings

from .models import TaskRecord, TaskStatus
from .polling import Probe, poll_until
from .store import TaskStore, transition

logger = get_logger(__name__)


class Suspended:
    """Sentinel type returned by :meth:`ExecutionContext.suspend`."""

    _instance: Suspended | None = None

    def __new__(cls) -> Suspended:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SUSPENDED"


SUSPENDED = Suspended()


class ExecutionContext:
    """Progress, polling and suspension bound to one running task."""

    def __init__(self, store: TaskStore, task: TaskRecord, settings: TaskSpineSettings) -> None:
        self._store = store
        self._task = task
        self._settings = settings
        self._polling = False
        self._closed = False

    @property
    def task(self) -> TaskRecord:
        return self._task

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise ExecutionError(
                f"Execution context for task {self._task.id} is closed",
                context={"task_id": self._task.id, "operation": operation},
            )

    async def report_progress(self, progress: int) -> None:
        """Persist *progress* (clamped to 0..100); failures are only logged."""
        if self._closed:
            return
        value = max(0, min(100, int(progress)))
        try:
            await self._store.update(self._task, {"progress": value})
        except Exception as exc:
            logger.warning("context.progress_failed", task_id=self._task.id, progress=value, error=str(exc))

    async def _record_poll(self, entry: dict[str, Any]) -> None:
        fields: dict[str, Any] = {
            "poll_results": [*self._task.poll_results, entry],
            "poll_count": self._task.poll_count + 1,
        }
        if entry.get("progress") is not None:
            fields["progress"] = entry["progress"]
        await self._store.update(self._task, fields)

    async def poll(
        self,
        probe: Probe,
        *,
        max_attempts: int | None = None,
        interval_seconds: float | None = None,
    ) -> Any:
        """Wait on *probe* via the Polling Engine, recording every attempt.

        Raises:
            PollInProgressError: If this task already has an active poll loop.
        """
        self._ensure_open("poll")
        if self._polling:
            raise PollInProgressError(
                f"Task {self._task.id} already has an active poll loop",
                context={"task_id": self._task.id},
            )
        self._polling = True
        try:
            return await poll_until(
                probe,
                max_attempts=max_attempts or self._settings.max_poll_times,
                interval_seconds=(
                    interval_seconds if interval_seconds is not None else self._settings.poll_interval_seconds
                ),
                record=self._record_poll,
            )
        finally:
            self._polling = False

    async def suspend(self, context: Mapping[str, Any] | None = None) -> Suspended:
        """Move the task to ``waiting`` with *context* and return :data:`SUSPENDED`.

        The handler should return the sentinel directly.
        """
        self._ensure_open("suspend")
        await self._store.reload(self._task)
        await transition(
            self._store,
            self._task,
            TaskStatus.WAITING,
            context=dict(context or {}),
            resumed_at=None,
        )
        logger.info("task.suspended", task_id=self._task.id)
        return SUSPENDED


__all__ = ["SUSPENDED", "ExecutionContext", "Suspended"]
