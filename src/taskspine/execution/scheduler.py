"""Scheduler — one tick of capacity-bounded dispatch.

Each tick re-counts running ``system`` tasks, selects up to the free
slots among due ``pending`` tasks and hands each to the dispatcher as
an independent asyncio task.  The tick returns once all selected tasks
are claimed; it never waits for handlers to finish.

The cap is best-effort: two overlapping ticks, or a ``run now`` call
between ticks, can push the running count above ``limit`` briefly.

ARCHITECTURE
────────────
::

    tick()
      running   = count(system, running)
      available = limit - running            ≤ 0 → log, return
      selected  = find_all(system, pending, start_time ≤ now,
                           limit=available, order=created_at asc)
      for task in selected:
          handler = await dispatcher.prepare(task)   (claim + resolve)
          create_task(dispatcher.execute(task, handler))

    drain()  ─ await every in-flight dispatch

Tags:
    task-spine, execution, scheduler, concurrency

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio

from taskspine.core.errors import InvalidTransitionError
from taskspine.core.logging import get_logger
from taskspine.core.settings import TaskSpineSettings

from .dispatcher import Dispatcher
from .models import RunnerType, TaskStatus, utcnow
from .store import TaskStore, lte

logger = get_logger(__name__)


class Scheduler:
    """Selects eligible system tasks and dispatches them concurrently."""

    def __init__(self, store: TaskStore, dispatcher: Dispatcher, settings: TaskSpineSettings) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._settings = settings
        self._in_flight: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def tick(self) -> list[str]:
        """Dispatch due system tasks up to the free capacity.

        Returns:
            Ids of the tasks claimed in this tick (including ones whose
            handler could not be resolved).
        """
        running = await self._store.count({"runner_type": RunnerType.SYSTEM, "status": TaskStatus.RUNNING})
        available = self._settings.limit - running
        if available <= 0:
            logger.info("scheduler.at_capacity", running=running, limit=self._settings.limit)
            return []

        where = {
            "runner_type": RunnerType.SYSTEM,
            "status": TaskStatus.PENDING,
            "start_time": lte(utcnow()),
        }
        selected = await self._store.find_all(where, limit=available, order=[("created_at", "asc")])
        if not selected:
            logger.debug("scheduler.idle", running=running)
            return []
        eligible = await self._store.count(where)
        logger.info("scheduler.dispatching", selected=len(selected), eligible=eligible, running=running)

        claimed: list[str] = []
        for task in selected:
            try:
                handler = await self._dispatcher.prepare(task)
            except InvalidTransitionError as exc:
                logger.info("scheduler.claim_lost", task_id=task.id, status=exc.current)
                continue
            except Exception as exc:
                logger.error("scheduler.claim_failed", task_id=task.id, error=str(exc))
                continue
            claimed.append(task.id)
            if handler is None:
                continue
            job = asyncio.create_task(self._dispatcher.execute(task, handler), name=f"task-{task.id}")
            self._in_flight.add(job)
            job.add_done_callback(self._on_done)
        return claimed

    def _on_done(self, job: asyncio.Task[None]) -> None:
        self._in_flight.discard(job)
        if job.cancelled():
            logger.warning("scheduler.dispatch_cancelled", job=job.get_name())
            return
        exc = job.exception()
        if exc is not None:
            logger.error("scheduler.dispatch_crashed", job=job.get_name(), error=str(exc), exc_info=exc)

    async def drain(self) -> None:
        """Wait until every dispatched task has settled."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)


__all__ = ["Scheduler"]
