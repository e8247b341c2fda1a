"""Lifecycle Service — operator-facing task operations.

Everything an API layer needs maps 1:1 onto a method here.  Malformed
requests (unknown id, illegal transition, missing selector) raise to the
caller without touching the store.

ARCHITECTURE
────────────
::

    TaskService
      ├── create(type, target_id, target_type, ...)   → TaskRecord (pending)
      ├── detail(id)                                  → TaskRecord
      ├── list(filter, per_page, current_page, sort)  → Page
      ├── cancel(id | target triple)                  → affected count
      ├── complete(id, status, ...)                   → TaskRecord
      ├── retry(id | task_ids)                        → TaskRecord | RetryReport
      ├── run(id)                                     → TaskRecord (settled)
      ├── resume(id, signature, result)               → TaskRecord
      └── reset_all()                                 → affected count

Tags:
    task-spine, execution, lifecycle, service

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from taskspine.core.errors import (
    InvalidRequestError,
    InvalidTransitionError,
    TaskNotFoundError,
    TaskSpineError,
    error_payload,
)
from taskspine.core.logging import get_logger
from taskspine.core.settings import TaskSpineSettings

from ._helpers import call_maybe_async
from .continuation import ContinuationResolver
from .dispatcher import Dispatcher
from .models import (
    CANCELABLE_STATUSES,
    Page,
    RunnerType,
    TaskRecord,
    TaskStatus,
    retry_sources,
    utcnow,
)
from .registry import HandlerRegistry
from .store import TaskStore, between, gte, in_, like, lte, transition

logger = get_logger(__name__)

EXACT_FILTERS = ("id", "target_id", "target_type", "type", "status", "runner_type")
DATE_FILTERS = ("created_at", "completed_at")
SORTABLE_FIELDS = frozenset({
    "created_at",
    "updated_at",
    "start_time",
    "completed_at",
    "status",
    "type",
    "progress",
})
DEFAULT_ORDER = [("created_at", "desc")]


@dataclass
class RetryReport:
    """Outcome of a batch retry."""

    retried: list[str] = field(default_factory=list)
    failed: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class TaskService:
    """Create, cancel, complete, retry and query tasks."""

    def __init__(
        self,
        store: TaskStore,
        registry: HandlerRegistry,
        settings: TaskSpineSettings,
        dispatcher: Dispatcher | None = None,
        resolver: ContinuationResolver | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._settings = settings
        self._dispatcher = dispatcher or Dispatcher(store, registry, settings)
        self._resolver = resolver or ContinuationResolver(store, registry)
        self._retry_from = retry_sources(settings.retry_from)

    @property
    def retry_from(self) -> frozenset[TaskStatus]:
        return self._retry_from

    # -- create / read -------------------------------------------------------------

    async def create(
        self,
        type: str,
        target_id: str,
        target_type: str,
        runner_type: RunnerType | str = RunnerType.MANUAL,
        input: Any = None,
        options: Any = None,
        delay: float | timedelta = 0,
        script_name: str | None = None,
        user_id: str | None = None,
    ) -> TaskRecord:
        """Persist a new ``pending`` task.

        ``delay`` (seconds or a ``timedelta``) pushes ``start_time`` into
        the future; the scheduler skips the task until then.

        Raises:
            UnknownTaskTypeError: Before any write, if *type* has no
                registered completion callback.
        """
        self._registry.completion_for(type)
        seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay or 0)
        now = utcnow()
        task = await self._store.create({
            "type": type,
            "target_id": str(target_id),
            "target_type": target_type,
            "runner_type": RunnerType(runner_type),
            "input": input,
            "options": options,
            "script_name": script_name,
            "user_id": user_id,
            "status": TaskStatus.PENDING,
            "start_time": now + timedelta(seconds=seconds) if seconds > 0 else now,
        })
        logger.info(
            "task.created",
            task_id=task.id,
            task_type=type,
            runner_type=task.runner_type.value,
            delay=seconds,
        )
        return task

    async def detail(self, task_id: str) -> TaskRecord:
        task = await self._store.find_by_pk(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list(
        self,
        filter: Mapping[str, Any] | None = None,
        per_page: int = 20,
        current_page: int = 1,
        sort: tuple[str, str] | None = None,
    ) -> Page:
        """Return one page of tasks matching *filter*.

        Filter keys:
            ``id``, ``target_id``, ``target_type``, ``type``, ``status``,
            ``runner_type`` match exactly (a list means "any of").
            ``input`` maps a dotted path inside the input payload to a
            substring, e.g. ``{"input": {"customer.name": "acme"}}``.
            ``created_at`` / ``completed_at`` take ``{"start": dt, "end": dt}``
            with either bound optional.

        ``sort`` is one ``(field, "asc" | "desc")`` pair; the default is
        newest first.
        """
        if per_page < 1 or current_page < 1:
            raise InvalidRequestError(
                "per_page and current_page must be >= 1",
                context={"per_page": per_page, "current_page": current_page},
            )
        where = self._list_where(filter or {})
        rows, total = await self._store.find_and_count_all(
            where,
            offset=per_page * (current_page - 1),
            limit=per_page,
            order=self._list_order(sort),
        )
        return Page(page_data=rows, total_count=total, current_page=current_page, per_page=per_page)

    @staticmethod
    def _list_where(filter: Mapping[str, Any]) -> dict[str, Any]:
        unknown = set(filter) - {*EXACT_FILTERS, *DATE_FILTERS, "input"}
        if unknown:
            raise InvalidRequestError(f"Unsupported filter keys: {sorted(unknown)}")

        where: dict[str, Any] = {}
        for key in EXACT_FILTERS:
            value = filter.get(key)
            if value is None or value == "":
                continue
            if isinstance(value, (list, tuple, set, frozenset)):
                where[key] = in_(value)
            else:
                where[key] = value

        for path, text in (filter.get("input") or {}).items():
            if text is None or text == "":
                continue
            where[f"input.{path}"] = like(f"%{text}%")

        for key in DATE_FILTERS:
            window = filter.get(key)
            if not window:
                continue
            start, end = window.get("start"), window.get("end")
            if start is not None and end is not None:
                where[key] = between(start, end)
            elif start is not None:
                where[key] = gte(start)
            elif end is not None:
                where[key] = lte(end)
        return where

    @staticmethod
    def _list_order(sort: tuple[str, str] | None) -> list[tuple[str, str]]:
        if sort is None:
            return list(DEFAULT_ORDER)
        name, direction = sort
        if name not in SORTABLE_FIELDS or direction.lower() not in ("asc", "desc"):
            raise InvalidRequestError(f"Unsupported sort: {name} {direction}", context={"sort": [name, direction]})
        return [(name, direction.lower())]

    # -- cancel ----------------------------------------------------------------

    async def cancel(
        self,
        id: str | None = None,
        target_id: str | None = None,
        target_type: str | None = None,
        type: str | None = None,
    ) -> int:
        """Cancel by *id* or by the ``(target_id, target_type, type)`` triple.

        Only ``pending``/``running`` tasks change.  Cancelling a task in any
        other status is a no-op.  An in-flight handler is not interrupted;
        its settlement is discarded.

        Returns:
            Number of tasks canceled.
        """
        if target_id and target_type and type:
            count = await self._store.update_where(
                {
                    "target_id": str(target_id),
                    "target_type": target_type,
                    "type": type,
                    "status": in_(CANCELABLE_STATUSES),
                },
                {"status": TaskStatus.CANCELED},
            )
            logger.info("task.canceled_by_target", target_id=target_id, target_type=target_type, count=count)
            return count
        if id:
            task = await self.detail(id)
            if task.status not in CANCELABLE_STATUSES:
                logger.info("task.cancel_ignored", task_id=id, status=task.status.value)
                return 0
            await transition(self._store, task, TaskStatus.CANCELED)
            logger.info("task.canceled", task_id=id)
            return 1
        raise InvalidRequestError("cancel requires an id or target_id, target_type and type")

    # -- complete ----------------------------------------------------------------

    async def complete(
        self,
        id: str,
        status: TaskStatus | str,
        output: Any = None,
        error: Any = None,
        msg: str | None = None,
        user_id: str | None = None,
    ) -> TaskRecord:
        """Resolve a ``pending`` or ``running`` task by hand.

        ``status="success"`` runs the completion callback with *output*
        first; if it raises the task is marked ``failed`` and the error
        propagates.  Any other status marks the task ``failed`` with the
        supplied fields.
        """
        try:
            target = TaskStatus(status)
        except ValueError as exc:
            raise InvalidRequestError(
                f"Unknown completion status: {status!r}",
                context={"task_id": id, "status": str(status)},
                cause=exc,
            ) from exc
        task = await self.detail(id)
        final = TaskStatus.SUCCESS if target == TaskStatus.SUCCESS else TaskStatus.FAILED
        if task.status not in CANCELABLE_STATUSES:
            raise InvalidTransitionError(task.status.value, final.value, task.id)
        if task.status == TaskStatus.PENDING:
            await transition(self._store, task, TaskStatus.RUNNING)

        now = utcnow()
        if final == TaskStatus.SUCCESS:
            try:
                await call_maybe_async(self._registry.completion_for(task.type), task, output, task.context)
            except Exception as exc:
                await transition(
                    self._store,
                    task,
                    TaskStatus.FAILED,
                    error=error_payload(exc),
                    completed_at=now,
                    completed_user_id=user_id,
                )
                logger.warning("task.complete_callback_failed", task_id=id, error=str(exc))
                raise
            await transition(
                self._store,
                task,
                TaskStatus.SUCCESS,
                output=output,
                msg=msg,
                progress=100,
                completed_at=now,
                completed_user_id=user_id,
            )
        else:
            await transition(
                self._store,
                task,
                TaskStatus.FAILED,
                output=output,
                error=error,
                msg=msg,
                completed_at=now,
                completed_user_id=user_id,
            )
        logger.info("task.completed_manually", task_id=id, status=task.status.value, user_id=user_id)
        return task

    # -- retry -------------------------------------------------------------------

    async def retry(
        self,
        id: str | None = None,
        task_ids: Iterable[str] | None = None,
    ) -> TaskRecord | RetryReport:
        """Return a ``failed``/``canceled`` task to ``pending``.

        With *task_ids* every id is retried independently and a
        :class:`RetryReport` lists what succeeded and what was refused.
        """
        if task_ids is not None:
            report = RetryReport()
            for task_id in task_ids:
                try:
                    await self._retry_one(task_id)
                except TaskSpineError as exc:
                    report.failed[task_id] = exc.to_dict()
                else:
                    report.retried.append(task_id)
            logger.info("task.retry_batch", retried=len(report.retried), refused=len(report.failed))
            return report
        if id:
            return await self._retry_one(id)
        raise InvalidRequestError("retry requires an id or task_ids")

    async def _retry_one(self, task_id: str) -> TaskRecord:
        task = await self.detail(task_id)
        if task.status not in self._retry_from:
            raise InvalidTransitionError(task.status.value, TaskStatus.PENDING.value, task.id)
        await transition(self._store, task, TaskStatus.PENDING, completed_at=None, completed_user_id=None)
        logger.info("task.retried", task_id=task_id)
        return task

    # -- execution entry points --------------------------------------------------------

    async def run(self, id: str) -> TaskRecord:
        """Dispatch a ``pending`` task now and wait for it to settle.

        Works for manual and system tasks alike and ignores ``start_time``.
        """
        task = await self.detail(id)
        await self._dispatcher.dispatch(task)
        return task

    async def resume(self, id: str, signature: str | None, result: str) -> TaskRecord:
        """Apply a continuation callback; see :class:`ContinuationResolver`."""
        return await self._resolver.resume(id, signature, result)

    async def reset_all(self) -> int:
        """Put every ``running`` task back to ``pending`` (startup recovery).

        Bypasses the transition graph.  Running it again with nothing
        ``running`` changes nothing.
        """
        count = await self._store.update_where({"status": TaskStatus.RUNNING}, {"status": TaskStatus.PENDING})
        logger.info("task.reset_all", count=count)
        return count


__all__ = ["RetryReport", "TaskService"]
