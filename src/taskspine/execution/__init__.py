"""Task execution: state machine, stores, handlers, scheduling and lifecycle.

Quick start::

    from taskspine.execution import MemoryTaskStore, TaskEngine

    async def on_export(task, result, context):
        ...

    engine = TaskEngine({"export": on_export}, store=MemoryTaskStore())

    @engine.registry.handler("export")
    async def export(host, settings, ctx):
        await ctx.report_progress(50)
        return {"ok": True}

    await engine.startup()
    task = await engine.service.create("export", "42", "report", runner_type="system")
    await engine.tick()
    await engine.drain()
"""

from .context import SUSPENDED, ExecutionContext, Suspended
from .continuation import ContinuationPayload, ContinuationResolver
from .dispatcher import Dispatcher
from .engine import TaskEngine
from .models import (
    CANCELABLE_STATUSES,
    TASK_VALID_TRANSITIONS,
    Page,
    RunnerType,
    TaskRecord,
    TaskStatus,
    validate_task_transition,
)
from .polling import PollOutcome, poll_until
from .registry import HandlerRegistry
from .scheduler import Scheduler
from .service import RetryReport, TaskService
from .sql_store import SqlAlchemyTaskStore
from .store import MemoryTaskStore, TaskStore, between, gte, in_, like, lte, transition

__all__ = [
    "CANCELABLE_STATUSES",
    "SUSPENDED",
    "TASK_VALID_TRANSITIONS",
    "ContinuationPayload",
    "ContinuationResolver",
    "Dispatcher",
    "ExecutionContext",
    "HandlerRegistry",
    "MemoryTaskStore",
    "Page",
    "PollOutcome",
    "RetryReport",
    "RunnerType",
    "Scheduler",
    "SqlAlchemyTaskStore",
    "Suspended",
    "TaskEngine",
    "TaskRecord",
    "TaskService",
    "TaskStatus",
    "TaskStore",
    "between",
    "gte",
    "in_",
    "like",
    "lte",
    "poll_until",
    "transition",
    "validate_task_transition",
]
