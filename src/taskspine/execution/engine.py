"""TaskEngine — composition root and bundled tick loop.

Wires settings, store, registry, dispatcher, scheduler, continuation
resolver and lifecycle service together.  Applications that own their
own periodic trigger call :meth:`TaskEngine.tick`; others run
:meth:`TaskEngine.serve` as a background task.

Example:
    >>> engine = TaskEngine({"export": on_export}, settings=TaskSpineSettings(limit=4))
    >>> engine.registry.register("export", run_export)
    >>> await engine.startup()                 # running → pending recovery
    >>> stop = asyncio.Event()
    >>> loop_task = asyncio.create_task(engine.serve(stop))
    >>> task = await engine.service.create("export", "42", "report", runner_type="system")
    ...
    >>> stop.set(); await loop_task; await engine.drain()

Tags:
    task-spine, execution, engine, lifecycle

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping

from taskspine.core.errors import ConfigError
from taskspine.core.logging import configure_logging, get_logger
from taskspine.core.settings import TaskSpineSettings

from .continuation import ContinuationResolver
from .dispatcher import Dispatcher
from .registry import CompletionCallback, HandlerRegistry
from .scheduler import Scheduler
from .service import TaskService
from .sql_store import SqlAlchemyTaskStore
from .store import TaskStore

logger = get_logger(__name__)


class TaskEngine:
    """Owns one set of engine components."""

    def __init__(
        self,
        callbacks: Mapping[str, CompletionCallback] | None = None,
        *,
        registry: HandlerRegistry | None = None,
        settings: TaskSpineSettings | None = None,
        store: TaskStore | None = None,
    ) -> None:
        self.settings = settings or TaskSpineSettings()
        if registry is None:
            if callbacks is None:
                raise ConfigError("TaskEngine needs completion callbacks or a HandlerRegistry")
            registry = HandlerRegistry(
                callbacks,
                default_script_name=self.settings.script_name,
                package=self.settings.handler_package,
            )
        self.registry = registry
        self.store: TaskStore = store or SqlAlchemyTaskStore.from_url(self.settings.database_url)
        self.dispatcher = Dispatcher(self.store, self.registry, self.settings)
        self.scheduler = Scheduler(self.store, self.dispatcher, self.settings)
        self.resolver = ContinuationResolver(self.store, self.registry)
        self.service = TaskService(
            self.store,
            self.registry,
            self.settings,
            dispatcher=self.dispatcher,
            resolver=self.resolver,
        )

    def configure_logging(self) -> None:
        """Apply the logging fields of :attr:`settings`."""
        configure_logging(
            level=self.settings.log_level,
            json_format=self.settings.log_json,
            service=self.settings.service_name,
        )

    async def startup(self) -> int:
        """One-time start hook: create tables if needed, then reset running tasks."""
        if isinstance(self.store, SqlAlchemyTaskStore):
            await asyncio.to_thread(self.store.create_all)
        count = await self.service.reset_all()
        logger.info("engine.started", recovered=count, limit=self.settings.limit)
        return count

    async def tick(self) -> list[str]:
        return await self.scheduler.tick()

    async def serve(self, stop_event: asyncio.Event | None = None) -> None:
        """Tick every ``tick_interval_seconds`` until *stop_event* is set.

        A failing tick is logged and the loop continues.
        """
        stop = stop_event or asyncio.Event()
        interval = self.settings.tick_interval_seconds
        logger.info("engine.serving", tick_interval_seconds=interval)
        while not stop.is_set():
            try:
                await self.scheduler.tick()
            except Exception as exc:
                logger.error("engine.tick_failed", error=str(exc), exc_info=exc)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=interval)
        logger.info("engine.stopped")

    async def drain(self) -> None:
        """Wait for every dispatched task to settle."""
        await self.scheduler.drain()


__all__ = ["TaskEngine"]
