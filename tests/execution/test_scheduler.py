"""Tests for Scheduler.tick — capacity, eligibility and isolation."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from taskspine.execution import Dispatcher, MemoryTaskStore, RunnerType, Scheduler, TaskStatus
from taskspine.execution.models import utcnow


async def _system(store, **overrides):
    fields = {
        "type": "export",
        "target_id": "42",
        "target_type": "report",
        "runner_type": RunnerType.SYSTEM,
    }
    fields.update(overrides)
    task = await store.create(fields)
    await asyncio.sleep(0.001)
    return task


class CancelAfterSelectStore(MemoryTaskStore):
    """Cancels one task right after the scheduler has selected it."""

    def __init__(self) -> None:
        super().__init__()
        self.victim: str | None = None

    async def find_all(self, where, limit=None, order=None):
        rows = await super().find_all(where, limit, order)
        if self.victim is not None:
            await self.update_where({"id": self.victim}, {"status": TaskStatus.CANCELED})
            self.victim = None
        return rows


def _scheduler(store, registry, settings, limit):
    capped = settings.model_copy(update={"limit": limit})
    return Scheduler(store, Dispatcher(store, registry, capped), capped)


class TestExportScenario:
    """Create → tick → handler result → callback → success."""

    @pytest.mark.asyncio
    async def test_single_task_end_to_end(self, store, registry, settings, service, completions):
        @registry.handler("export")
        async def run(host, settings, ctx):
            return {"ok": True}

        task = await service.create("export", "42", "report", runner_type="system", delay=0)
        assert task.status == TaskStatus.PENDING
        assert task.start_time <= utcnow()

        scheduler = _scheduler(store, registry, settings, limit=1)
        assert await scheduler.tick() == [task.id]

        claimed = await store.find_by_pk(task.id)
        assert claimed.status == TaskStatus.RUNNING
        assert claimed.progress == 0

        await scheduler.drain()

        done = await store.find_by_pk(task.id)
        assert completions.calls == [(task.id, {"ok": True}, {})]
        assert done.status == TaskStatus.SUCCESS
        assert done.progress == 100
        assert done.output == {"ok": True}


class TestCapacity:
    """Never more than limit - running per tick."""

    @pytest.mark.asyncio
    async def test_respects_free_slots(self, store, registry, settings):
        registry.register("export", lambda host, settings, ctx: 1)
        await _system(store, status=TaskStatus.RUNNING)
        pending = [await _system(store) for _ in range(3)]

        scheduler = _scheduler(store, registry, settings, limit=2)
        claimed = await scheduler.tick()

        assert claimed == [pending[0].id]
        await scheduler.drain()
        assert (await store.find_by_pk(pending[1].id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_at_capacity_dispatches_nothing(self, store, registry, settings):
        registry.register("export", lambda host, settings, ctx: 1)
        await _system(store, status=TaskStatus.RUNNING)
        await _system(store, status=TaskStatus.RUNNING)
        waiting = await _system(store)

        scheduler = _scheduler(store, registry, settings, limit=2)
        assert await scheduler.tick() == []
        assert (await store.find_by_pk(waiting.id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_manual_running_tasks_do_not_count(self, store, registry, settings):
        registry.register("export", lambda host, settings, ctx: 1)
        await _system(store, status=TaskStatus.RUNNING, runner_type=RunnerType.MANUAL)
        task = await _system(store)

        scheduler = _scheduler(store, registry, settings, limit=1)
        assert await scheduler.tick() == [task.id]
        await scheduler.drain()

    @pytest.mark.asyncio
    async def test_oldest_first(self, store, registry, settings):
        registry.register("export", lambda host, settings, ctx: 1)
        first = await _system(store)
        await _system(store)

        scheduler = _scheduler(store, registry, settings, limit=1)
        assert await scheduler.tick() == [first.id]
        await scheduler.drain()


class TestEligibility:
    """Only due, pending, system tasks are selected."""

    @pytest.mark.asyncio
    async def test_no_eligible_tasks(self, scheduler):
        assert await scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_future_start_time_skipped(self, store, registry, settings):
        registry.register("export", lambda host, settings, ctx: 1)
        later = await _system(store, start_time=utcnow() + timedelta(hours=1))

        scheduler = _scheduler(store, registry, settings, limit=5)
        assert await scheduler.tick() == []
        assert (await store.find_by_pk(later.id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_manual_tasks_skipped(self, store, registry, settings):
        registry.register("export", lambda host, settings, ctx: 1)
        manual = await _system(store, runner_type=RunnerType.MANUAL)

        scheduler = _scheduler(store, registry, settings, limit=5)
        assert await scheduler.tick() == []
        assert (await store.find_by_pk(manual.id)).status == TaskStatus.PENDING


class TestIsolation:
    """One task's failure never affects its siblings."""

    @pytest.mark.asyncio
    async def test_resolution_failure_uses_slot_and_fails_in_tick(self, store, registry, settings):
        registry.register("export", lambda host, settings, ctx: "ok")
        broken = await _system(store, script_name="missing")
        good = await _system(store)
        spare = await _system(store)

        scheduler = _scheduler(store, registry, settings, limit=2)
        claimed = await scheduler.tick()

        assert claimed == [broken.id, good.id]
        assert (await store.find_by_pk(broken.id)).status == TaskStatus.FAILED
        await scheduler.drain()
        assert (await store.find_by_pk(good.id)).status == TaskStatus.SUCCESS
        assert (await store.find_by_pk(spare.id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_affect_sibling(self, store, registry, settings):
        @registry.handler("export")
        async def run(host, settings, ctx):
            if host.target_id == "bad":
                raise RuntimeError("boom")
            await asyncio.sleep(0.01)
            return "fine"

        bad = await _system(store, target_id="bad")
        good = await _system(store, target_id="good")

        scheduler = _scheduler(store, registry, settings, limit=2)
        await scheduler.tick()
        await scheduler.drain()

        assert (await store.find_by_pk(bad.id)).status == TaskStatus.FAILED
        assert (await store.find_by_pk(good.id)).status == TaskStatus.SUCCESS
        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    async def test_tick_does_not_wait_for_handlers(self, store, registry, settings):
        release = asyncio.Event()

        @registry.handler("export")
        async def run(host, settings, ctx):
            await release.wait()
            return 1

        task = await _system(store)
        scheduler = _scheduler(store, registry, settings, limit=1)

        await asyncio.wait_for(scheduler.tick(), timeout=1)
        assert scheduler.in_flight == 1
        assert await scheduler.tick() == []

        release.set()
        await scheduler.drain()
        assert (await store.find_by_pk(task.id)).status == TaskStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_task_canceled_after_selection_is_not_claimed(self, registry, settings, completions):
        registry.register("export", lambda host, settings, ctx: "ok")
        store = CancelAfterSelectStore()
        first = await _system(store)
        second = await _system(store)
        store.victim = second.id

        scheduler = _scheduler(store, registry, settings, limit=2)
        claimed = await scheduler.tick()
        await scheduler.drain()

        assert claimed == [first.id]
        assert (await store.find_by_pk(first.id)).status == TaskStatus.SUCCESS
        stored = await store.find_by_pk(second.id)
        assert stored.status == TaskStatus.CANCELED
        assert [call[0] for call in completions.calls] == [first.id]
