"""Tests for ContinuationResolver — signed resume of waiting tasks."""

from __future__ import annotations

import asyncio
import json

import pytest

from taskspine.core.errors import (
    ContinuationPayloadError,
    InvalidTransitionError,
    SignatureMismatchError,
    TaskNotFoundError,
)
from taskspine.core.hashing import sign_continuation
from taskspine.execution import (
    ContinuationResolver,
    HandlerRegistry,
    MemoryTaskStore,
    RunnerType,
    SqlAlchemyTaskStore,
    TaskStatus,
)
from taskspine.execution.models import utcnow

PAYLOAD = json.dumps({"code": 0, "data": {"n": 1}})


async def _waiting(store, context=None):
    return await store.create({
        "type": "export",
        "target_id": "42",
        "target_type": "report",
        "status": TaskStatus.WAITING,
        "context": context if context is not None else {"secret": "s1"},
    })


class TestSuspendResumeScenario:
    """Handler suspends, external system resumes with a valid signature."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, store, registry, service, scheduler, completions):
        @registry.handler("export")
        async def run(host, settings, ctx):
            return await ctx.suspend({"secret": "s1"})

        task = await service.create("export", "42", "report", runner_type=RunnerType.SYSTEM)
        await scheduler.tick()
        await scheduler.drain()

        waiting = await store.find_by_pk(task.id)
        assert waiting.status == TaskStatus.WAITING
        assert waiting.context == {"secret": "s1"}

        signature = sign_continuation("s1", task.id, PAYLOAD)
        resumed = await service.resume(task.id, signature, PAYLOAD)

        assert resumed.status == TaskStatus.SUCCESS
        stored = await store.find_by_pk(task.id)
        assert stored.status == TaskStatus.SUCCESS
        assert stored.output == {"code": 0, "data": {"n": 1}}
        assert stored.progress == 100
        assert completions.calls == [(task.id, {"n": 1}, {"secret": "s1"})]


class TestSignature:
    """Signature checks run before any write."""

    @pytest.mark.asyncio
    async def test_wrong_signature(self, store, resolver, completions):
        task = await _waiting(store)
        with pytest.raises(SignatureMismatchError):
            await resolver.resume(task.id, sign_continuation("other", task.id, PAYLOAD), PAYLOAD)
        assert (await store.find_by_pk(task.id)).status == TaskStatus.WAITING
        assert completions.calls == []

    @pytest.mark.asyncio
    async def test_missing_signature(self, store, resolver):
        task = await _waiting(store)
        with pytest.raises(SignatureMismatchError):
            await resolver.resume(task.id, None, PAYLOAD)

    @pytest.mark.asyncio
    async def test_signature_bound_to_payload(self, store, resolver):
        task = await _waiting(store)
        signature = sign_continuation("s1", task.id, PAYLOAD)
        with pytest.raises(SignatureMismatchError):
            await resolver.resume(task.id, signature, json.dumps({"code": 0, "data": {"n": 2}}))

    @pytest.mark.asyncio
    async def test_no_secret_skips_verification(self, store, resolver):
        task = await _waiting(store, context={})
        resumed = await resolver.resume(task.id, None, PAYLOAD)
        assert resumed.status == TaskStatus.SUCCESS


class TestPayload:
    """Decoding and applying the result payload."""

    @pytest.mark.asyncio
    async def test_nonzero_code_fails(self, store, resolver, completions):
        task = await _waiting(store)
        payload = json.dumps({"code": 3, "message": "rejected by reviewer"})

        resumed = await resolver.resume(task.id, sign_continuation("s1", task.id, payload), payload)

        assert resumed.status == TaskStatus.FAILED
        stored = await store.find_by_pk(task.id)
        assert stored.error == {"code": 3, "message": "rejected by reviewer"}
        assert stored.completed_at is not None
        assert completions.calls == []

    @pytest.mark.asyncio
    async def test_missing_code_is_success(self, store, resolver, completions):
        task = await _waiting(store, context={})
        await resolver.resume(task.id, None, json.dumps({"data": [1, 2]}))
        assert (await store.find_by_pk(task.id)).status == TaskStatus.SUCCESS
        assert completions.calls == [(task.id, [1, 2], {})]

    @pytest.mark.asyncio
    async def test_invalid_json(self, store, resolver):
        task = await _waiting(store, context={})
        with pytest.raises(ContinuationPayloadError):
            await resolver.resume(task.id, None, "{not json")
        assert (await store.find_by_pk(task.id)).status == TaskStatus.WAITING

    @pytest.mark.asyncio
    async def test_callback_failure_marks_failed_and_raises(self, store, resolver, completions):
        task = await _waiting(store, context={})
        completions.fail_with = RuntimeError("ledger locked")

        with pytest.raises(RuntimeError, match="ledger locked"):
            await resolver.resume(task.id, None, PAYLOAD)

        stored = await store.find_by_pk(task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error["message"] == "ledger locked"


class TestState:
    """Only waiting tasks can be resumed."""

    @pytest.mark.asyncio
    async def test_unknown_task(self, resolver):
        with pytest.raises(TaskNotFoundError):
            await resolver.resume("missing", None, PAYLOAD)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.SUCCESS])
    async def test_not_waiting(self, store, resolver, status):
        task = await store.create({
            "type": "export",
            "target_id": "42",
            "target_type": "report",
            "status": status,
        })
        with pytest.raises(InvalidTransitionError):
            await resolver.resume(task.id, None, PAYLOAD)
        assert (await store.find_by_pk(task.id)).status == status


class TestRedelivery:
    """A continuation delivered more than once settles the task once."""

    @pytest.mark.asyncio
    async def test_concurrent_resumes_run_callback_once(self, store):
        calls = []

        async def on_export(task, result, context):
            calls.append(result)
            await asyncio.sleep(0)

        resolver = ContinuationResolver(store, HandlerRegistry({"export": on_export}))
        task = await _waiting(store, context={})

        results = await asyncio.gather(
            resolver.resume(task.id, None, PAYLOAD),
            resolver.resume(task.id, None, PAYLOAD),
            return_exceptions=True,
        )

        settled = [r for r in results if not isinstance(r, BaseException)]
        rejected = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(settled) == 1
        assert len(rejected) == 1
        assert settled[0].status == TaskStatus.SUCCESS
        assert calls == [{"n": 1}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    async def test_claimed_task_rejects_second_resume(self, registry, completions, backend):
        if backend == "memory":
            store = MemoryTaskStore()
        else:
            store = SqlAlchemyTaskStore.from_url("sqlite://")
            store.create_all()
        task = await _waiting(store, context={})
        await store.update_where({"id": task.id}, {"resumed_at": utcnow()})

        with pytest.raises(InvalidTransitionError):
            await ContinuationResolver(store, registry).resume(task.id, None, PAYLOAD)

        assert (await store.find_by_pk(task.id)).status == TaskStatus.WAITING
        assert completions.calls == []

    @pytest.mark.asyncio
    async def test_suspend_clears_claim(self, store, registry, service, completions):
        @registry.handler("export")
        async def run(host, settings, ctx):
            return await ctx.suspend({})

        task = await service.create("export", "42", "report")
        await store.update_where({"id": task.id}, {"resumed_at": utcnow()})
        await service.run(task.id)
        assert (await store.find_by_pk(task.id)).resumed_at is None

        resumed = await service.resume(task.id, None, PAYLOAD)

        assert resumed.status == TaskStatus.SUCCESS
        assert resumed.resumed_at is not None
        assert completions.calls == [(task.id, {"n": 1}, {})]
