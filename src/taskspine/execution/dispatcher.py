"""Dispatcher — claim, resolve, run and settle one task.

Every step of a single task's processing is fenced here, so a failing
handler, callback or resolution ends as a persisted ``failed`` record
and never escapes into the caller's loop.

ARCHITECTURE
────────────
::

    prepare(task)                     ─ pending → running, resolve handler
      └─ resolution error             → failed (same call)
    execute(task, handler)
      ├─ handler(host, settings, ctx)
      ├─ returns SUSPENDED            → nothing (already waiting)
      ├─ returns result               → completion callback → success
      │    └─ callback raises         → failed
      └─ raises                       → failed (sanitized trace)

    Settlement re-reads the record first, and every status write is
    conditional on the status that was read.  A task that is no longer
    ``running`` (canceled meanwhile) is left as it is.

Tags:
    task-spine, execution, dispatcher

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any

from taskspine.core.errors import InvalidTransitionError, error_payload, redact_paths
from taskspine.core.logging import get_logger, task_log_context
from taskspine.core.settings import TaskSpineSettings

from ._helpers import call_maybe_async
from .context import ExecutionContext, Suspended
from .models import TaskRecord, TaskStatus, utcnow
from .registry import Handler, HandlerRegistry
from .store import TaskStore, transition

logger = get_logger(__name__)


class Dispatcher:
    """Runs tasks through the handler protocol."""

    def __init__(self, store: TaskStore, registry: HandlerRegistry, settings: TaskSpineSettings) -> None:
        self._store = store
        self._registry = registry
        self._settings = settings

    async def prepare(self, task: TaskRecord) -> Handler | None:
        """Move *task* to ``running`` and resolve its handler.

        Returns ``None`` when resolution failed; the task is then already
        ``failed``.

        Raises:
            InvalidTransitionError: If *task* is not ``pending``, including when
                it left ``pending`` after it was read.
        """
        await transition(
            self._store,
            task,
            TaskStatus.RUNNING,
            progress=0,
            error=None,
            output=None,
            poll_results=[],
            poll_count=0,
        )
        try:
            return self._registry.resolve(task.type, task.script_name)
        except Exception as exc:
            logger.warning(
                "task.resolution_failed",
                task_id=task.id,
                task_type=task.type,
                script_name=task.script_name or self._registry.default_script_name,
                error=str(exc),
            )
            await self.settle_failed(task, exc)
            return None

    async def execute(self, task: TaskRecord, handler: Handler) -> None:
        """Run *handler* for a ``running`` task and settle the outcome."""
        ctx = ExecutionContext(self._store, task, self._settings)
        with task_log_context(task.id, task.type):
            logger.info("task.started")
            try:
                result = await call_maybe_async(handler, task, self._settings, ctx)
            except Exception as exc:
                logger.warning("task.handler_failed", error=str(exc))
                await self.settle_failed(task, exc)
                return
            finally:
                ctx.close()

            if isinstance(result, Suspended):
                logger.info("task.waiting")
                return
            await self.settle_success(task, result)

    async def dispatch(self, task: TaskRecord) -> None:
        """Prepare and execute in one call (the manual "run now" path)."""
        handler = await self.prepare(task)
        if handler is not None:
            await self.execute(task, handler)

    async def _still_running(self, task: TaskRecord) -> bool:
        await self._store.reload(task)
        if task.status != TaskStatus.RUNNING:
            logger.info("task.settle_skipped", task_id=task.id, status=task.status.value)
            return False
        return True

    async def settle_success(self, task: TaskRecord, result: Any) -> None:
        """Invoke the completion callback, then mark ``success``.

        A task canceled while the callback ran stays ``canceled``.
        """
        if not await self._still_running(task):
            return
        try:
            callback = self._registry.completion_for(task.type)
            await call_maybe_async(callback, task, result, task.context)
        except Exception as exc:
            logger.warning("task.callback_failed", task_id=task.id, error=str(exc))
            await self._fail(task, exc)
            return
        try:
            await transition(
                self._store,
                task,
                TaskStatus.SUCCESS,
                output=result,
                progress=100,
                completed_at=utcnow(),
            )
        except InvalidTransitionError:
            logger.info("task.settle_skipped", task_id=task.id, status=task.status.value)
            return
        logger.info("task.succeeded", task_id=task.id)

    async def settle_failed(self, task: TaskRecord, exc: BaseException) -> None:
        """Mark ``failed`` with a sanitized error payload."""
        if not await self._still_running(task):
            return
        await self._fail(task, exc)

    async def _fail(self, task: TaskRecord, exc: BaseException) -> None:
        try:
            await transition(
                self._store,
                task,
                TaskStatus.FAILED,
                error=error_payload(exc),
                msg=redact_paths(str(exc)),
                completed_at=utcnow(),
            )
        except InvalidTransitionError:
            logger.info("task.settle_skipped", task_id=task.id, status=task.status.value)
            return
        logger.info("task.failed", task_id=task.id, error_type=type(exc).__name__)


__all__ = ["Dispatcher"]
